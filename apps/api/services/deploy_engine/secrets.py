from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

MASK = "[REDACTED]"

# Environment variables whose values must never reach a log line.
SENSITIVE_ENV_KEYS = (
    "AWS_SECRET_ACCESS_KEY",
    "AWS_SESSION_TOKEN",
    "GOOGLE_OAUTH_ACCESS_TOKEN",
    "ARM_CLIENT_SECRET",
    "ARM_ACCESS_TOKEN",
    "TF_VAR_azure_client_secret",
)

_SECRET_KEYWORDS = (
    "password",
    "passwd",
    "secret",
    "token",
    "private_key",
    "apikey",
    "api_key",
    "access_key",
    "external_id",
)

_PRIVATE_KEY_BLOCK = re.compile(
    r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----",
    re.DOTALL,
)


class RedactionRegistry:
    """
    Set of (label, value) pairs checked against every log line before append.

    Values are regex-escaped and matched longest first so that a secret which
    contains another secret is replaced as a whole.
    """

    def __init__(self, entries: Iterable[Tuple[str, str]] = ()) -> None:
        self._entries: Dict[str, str] = {}
        self._pattern: Optional[re.Pattern[str]] = None
        for label, value in entries:
            self.add(label, value)

    @classmethod
    def from_env(cls, env_vars: Mapping[str, str]) -> "RedactionRegistry":
        return cls(
            (key, env_vars[key]) for key in SENSITIVE_ENV_KEYS if env_vars.get(key)
        )

    def add(self, label: str, value: Optional[str]) -> None:
        if not value:
            return
        self._entries[str(value)] = label
        self._pattern = None

    def extend(self, entries: Iterable[Tuple[str, str]]) -> None:
        for label, value in entries:
            self.add(label, value)

    def items(self) -> List[Tuple[str, str]]:
        return [(label, value) for value, label in self._entries.items()]

    def labels(self) -> List[str]:
        return sorted(set(self._entries.values()))

    def __len__(self) -> int:
        return len(self._entries)

    def _compiled(self) -> Optional[re.Pattern[str]]:
        if self._pattern is None and self._entries:
            values = sorted(self._entries, key=len, reverse=True)
            self._pattern = re.compile("|".join(re.escape(v) for v in values))
        return self._pattern

    def redact(self, text: str) -> str:
        if not text:
            return text
        redacted = text
        pattern = self._compiled()
        if pattern is not None:
            redacted = pattern.sub(MASK, redacted)
        if _PRIVATE_KEY_BLOCK.search(redacted):
            redacted = _PRIVATE_KEY_BLOCK.sub(MASK, redacted)
        return redacted


def sanitize_log(line: str, env_vars: Mapping[str, str]) -> str:
    return RedactionRegistry.from_env(env_vars).redact(line)


def _is_secret_key(key: str) -> bool:
    lowered = (key or "").lower()
    return any(k in lowered for k in _SECRET_KEYWORDS)


def collect_secrets(value: Any, *, min_length: int = 8) -> List[Tuple[str, str]]:
    """(key, value) pairs for string values stored under secret-looking keys."""
    found: List[Tuple[str, str]] = []

    def _walk(node: Any) -> None:
        if isinstance(node, Mapping):
            for k, v in node.items():
                if isinstance(v, str):
                    if _is_secret_key(str(k)) and len(v) >= min_length:
                        found.append((str(k), v))
                else:
                    _walk(v)
        elif isinstance(node, list):
            for item in node:
                _walk(item)

    _walk(value)
    return found


def mask_mapping(value: Any) -> Any:
    """Mask values stored under secret-looking keys, recursively."""
    if isinstance(value, dict):
        out: dict = {}
        for k, v in value.items():
            if _is_secret_key(str(k)):
                out[k] = MASK
            else:
                out[k] = mask_mapping(v)
        return out

    if isinstance(value, list):
        return [mask_mapping(item) for item in value]

    return value
