import json
import unittest

from services.deploy_engine.errors import OutputParseError
from services.deploy_engine.outputs import flatten_outputs


class TestFlattenOutputs(unittest.TestCase):
    def test_flattens_value_entries(self) -> None:
        raw = json.dumps(
            {
                "bucket": {"value": "b-1", "type": "string", "sensitive": False},
                "ips": {"value": ["10.0.0.1", "10.0.0.2"], "type": ["list", "string"]},
                "nested": {"value": {"a": 1}},
            }
        )
        self.assertEqual(
            flatten_outputs(raw),
            {"bucket": "b-1", "ips": ["10.0.0.1", "10.0.0.2"], "nested": {"a": 1}},
        )

    def test_entries_without_value_are_kept_as_is(self) -> None:
        self.assertEqual(flatten_outputs('{"plain": 3}'), {"plain": 3})

    def test_empty_object(self) -> None:
        self.assertEqual(flatten_outputs("{}"), {})

    def test_same_input_same_result(self) -> None:
        raw = '{"z": {"value": 1}, "a": {"value": 2}}'
        first = flatten_outputs(raw)
        second = flatten_outputs(raw)
        self.assertEqual(first, second)
        self.assertEqual(list(first), ["a", "z"])

    def test_invalid_json_raises(self) -> None:
        with self.assertRaises(OutputParseError):
            flatten_outputs("not json")

    def test_non_object_raises(self) -> None:
        with self.assertRaises(OutputParseError):
            flatten_outputs("[1, 2]")
