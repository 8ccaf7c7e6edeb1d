from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from .config import EngineSettings, load_settings
from .errors import CredentialError, ValidationError
from .oauth import refresh_azure_access_token
from .types import CredentialBundle
from .util import atomic_write_text, safe_mkdir

LOGGER = logging.getLogger(__name__)

ASSUME_ROLE_DURATION_SECONDS = 3600
GCP_CREDENTIALS_FILENAME = "gcp-credentials.json"

_REGION_MISSING_HYPHEN = re.compile(r"^([a-z]+)-([a-z]+)(\d)$")

ResolveFn = Callable[[Mapping[str, Any], Path], Awaitable[Optional[CredentialBundle]]]


@dataclass(frozen=True)
class CredentialStrategy:
    """One named way of turning a connection record into credentials.

    ``try_resolve`` returns None when the strategy does not apply so the
    next one in the chain is tried; it raises CredentialError when the
    connection is unusable and no later strategy could help.
    """

    name: str
    try_resolve: ResolveFn


def _section(conn: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = conn.get(key)
    return value if isinstance(value, Mapping) else {}


def _first(mapping: Mapping[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = mapping.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def normalize_aws_region(raw: Optional[str], default: str = "ap-south-1") -> str:
    region = (raw or "").strip().lower()
    if not region:
        return default
    m = _REGION_MISSING_HYPHEN.match(region)
    if m:
        return f"{m.group(1)}-{m.group(2)}-{m.group(3)}"
    return region


def trusted_role_arn(
    role_arn: Optional[str], account_id: Optional[str], role_name: str
) -> str:
    """
    Rebuild the role ARN from the account ID and the fixed deploy role name.

    The stored ARN is only used to recover the account ID when none is stored.
    """
    account = (account_id or "").strip()
    if not account and role_arn:
        parts = role_arn.split(":")
        if len(parts) >= 5:
            account = parts[4].strip()
    if not account:
        if not role_arn:
            raise CredentialError("AWS connection missing role_arn or external_id")
        return role_arn
    if not account.isdigit():
        raise ValidationError(f"invalid AWS account id: {account!r}")
    return f"arn:aws:iam::{account}:role/{role_name}"


def _default_sts_client(region: str):
    return boto3.client("sts", region_name=region)


class CredentialProvider:
    """
    Resolve per-provider environment variables from a stored connection.

    AWS:   cached session credentials, else STS AssumeRole.
    GCP:   OAuth access token, plus an authorized_user file when a refresh
           token is stored.
    Azure: service principal, else refreshed user token, else stored user
           token. The platform's own identity is never used for a user's
           subscription.
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        *,
        sts_client_factory: Optional[Callable[[str], Any]] = None,
        http_client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ) -> None:
        self._settings = settings or load_settings()
        self._sts_client_factory = sts_client_factory or _default_sts_client
        self._http_client_factory = http_client_factory or (
            lambda: httpx.AsyncClient(timeout=self._settings.http_timeout_seconds)
        )
        self._chains: Dict[str, List[CredentialStrategy]] = {
            "aws": [
                CredentialStrategy("cached-session", self._aws_cached_session),
                CredentialStrategy("assume-role", self._aws_assume_role),
            ],
            "gcp": [
                CredentialStrategy("oauth-token", self._gcp_oauth_token),
            ],
            "azure": [
                CredentialStrategy("service-principal", self._azure_service_principal),
                CredentialStrategy("refresh-token", self._azure_refresh_token),
                CredentialStrategy("access-token", self._azure_access_token),
            ],
        }

    def strategies(self, provider: str) -> List[CredentialStrategy]:
        key = (provider or "").strip().lower()
        if key not in self._chains:
            raise CredentialError(f"Unsupported provider: {provider}")
        return list(self._chains[key])

    async def resolve(
        self, provider: str, connection: Mapping[str, Any], work_dir: Path
    ) -> CredentialBundle:
        conn = connection if isinstance(connection, Mapping) else {}
        key = (provider or "").strip().lower()
        for strategy in self.strategies(key):
            bundle = await strategy.try_resolve(conn, Path(work_dir))
            if bundle is not None:
                bundle.strategy = strategy.name
                LOGGER.info("%s credentials resolved via %s", key, strategy.name)
                return bundle

        if key == "azure":
            raise CredentialError(
                "No Azure credentials available for this subscription. "
                "Please reconnect your Azure account."
            )
        raise CredentialError(f"No usable {key.upper()} credentials in connection")

    def cleanup(self, credential_files: Iterable[str]) -> List[str]:
        """Delete credential files; failures are returned and logged, never raised."""
        warnings: List[str] = []
        for raw in credential_files or []:
            path = Path(raw)
            try:
                path.unlink()
                LOGGER.info("removed credential file %s", path)
            except FileNotFoundError:
                continue
            except OSError as exc:
                msg = f"Cleanup warning: could not remove {path}: {exc}"
                LOGGER.warning(msg)
                warnings.append(msg)
        return warnings

    # AWS

    async def _aws_cached_session(
        self, conn: Mapping[str, Any], work_dir: Path
    ) -> Optional[CredentialBundle]:
        creds = _section(conn, "credentials")
        access_key = _first(creds, "accessKeyId", "access_key_id")
        secret_key = _first(creds, "secretAccessKey", "secret_access_key")
        if not access_key or not secret_key:
            return None
        region = normalize_aws_region(
            _first(conn, "region"), self._settings.aws_default_region
        )
        return CredentialBundle(
            env_vars={
                "AWS_ACCESS_KEY_ID": access_key,
                "AWS_SECRET_ACCESS_KEY": secret_key,
                "AWS_SESSION_TOKEN": _first(creds, "sessionToken", "session_token")
                or "",
                "AWS_DEFAULT_REGION": region,
                "AWS_REGION": region,
            }
        )

    async def _aws_assume_role(
        self, conn: Mapping[str, Any], work_dir: Path
    ) -> Optional[CredentialBundle]:
        role_arn = _first(conn, "role_arn")
        external_id = _first(conn, "external_id")
        if not role_arn or not external_id:
            raise CredentialError("AWS connection missing role_arn or external_id")

        region = normalize_aws_region(
            _first(conn, "region"), self._settings.aws_default_region
        )
        arn = trusted_role_arn(
            role_arn, _first(conn, "account_id"), self._settings.aws_role_name
        )
        LOGGER.info("assuming %s in %s", arn, region)

        def _call() -> Dict[str, Any]:
            client = self._sts_client_factory(region)
            return client.assume_role(
                RoleArn=arn,
                RoleSessionName=f"InfraDeploy-{int(time.time() * 1000)}",
                ExternalId=external_id,
                DurationSeconds=ASSUME_ROLE_DURATION_SECONDS,
            )

        try:
            assumed = await asyncio.to_thread(_call)
        except (BotoCoreError, ClientError) as exc:
            raise CredentialError(f"AWS AssumeRole failed: {exc}") from exc

        creds = assumed.get("Credentials") or {}
        if not creds.get("AccessKeyId") or not creds.get("SecretAccessKey"):
            raise CredentialError("AWS AssumeRole returned no credentials")

        return CredentialBundle(
            env_vars={
                "AWS_ACCESS_KEY_ID": creds["AccessKeyId"],
                "AWS_SECRET_ACCESS_KEY": creds["SecretAccessKey"],
                "AWS_SESSION_TOKEN": creds.get("SessionToken") or "",
                "AWS_DEFAULT_REGION": region,
                "AWS_REGION": region,
                "TF_VAR_role_arn": arn,
                "TF_VAR_external_id": external_id,
                "TF_VAR_region": region,
            }
        )

    # GCP

    async def _gcp_oauth_token(
        self, conn: Mapping[str, Any], work_dir: Path
    ) -> Optional[CredentialBundle]:
        tokens = _section(conn, "tokens")
        access_token = _first(tokens, "access_token", "accessToken")
        if not access_token:
            raise CredentialError("GCP connection missing OAuth access token")

        region = _first(conn, "region") or self._settings.gcp_default_region
        env: Dict[str, str] = {
            "GOOGLE_OAUTH_ACCESS_TOKEN": access_token,
            "GOOGLE_REGION": region,
            "GOOGLE_ZONE": f"{region}-a",
        }
        project_id = _first(conn, "project_id")
        if project_id:
            env["GOOGLE_PROJECT"] = project_id
            env["GCLOUD_PROJECT"] = project_id

        files: List[str] = []
        refresh_token = _first(tokens, "refresh_token", "refreshToken")
        if refresh_token:
            safe_mkdir(work_dir)
            cred_path = work_dir / GCP_CREDENTIALS_FILENAME
            content = {
                "type": "authorized_user",
                "client_id": self._settings.gcp_client_id,
                "client_secret": self._settings.gcp_client_secret,
                "refresh_token": refresh_token,
            }
            atomic_write_text(cred_path, json.dumps(content, indent=2))
            cred_path.chmod(0o600)
            env["GOOGLE_APPLICATION_CREDENTIALS"] = str(cred_path)
            files.append(str(cred_path))

        return CredentialBundle(env_vars=env, credential_files=files)

    # Azure

    def _azure_base_env(
        self, conn: Mapping[str, Any], creds: Mapping[str, Any]
    ) -> Dict[str, str]:
        env = {"ARM_USE_CLI": "false", "ARM_USE_OIDC": "false"}
        tenant = _first(creds, "tenant_id") or _first(conn, "tenant_id")
        subscription = _first(creds, "subscription_id", "subscriptionId") or _first(
            conn, "subscription_id"
        )
        if tenant:
            env["ARM_TENANT_ID"] = tenant
        if subscription:
            env["ARM_SUBSCRIPTION_ID"] = subscription
        else:
            LOGGER.warning("Azure connection has no subscription_id")
        return env

    @staticmethod
    def _with_token(env: Dict[str, str], token: str) -> CredentialBundle:
        env["ARM_ACCESS_TOKEN"] = token
        env.pop("ARM_CLIENT_SECRET", None)
        return CredentialBundle(env_vars=env)

    async def _azure_service_principal(
        self, conn: Mapping[str, Any], work_dir: Path
    ) -> Optional[CredentialBundle]:
        creds = _section(conn, "credentials")
        client_id = _first(creds, "client_id", "clientId")
        client_secret = _first(creds, "client_secret", "clientSecret")
        if not client_id or not client_secret:
            return None
        env = self._azure_base_env(conn, creds)
        env["ARM_CLIENT_ID"] = client_id
        env["ARM_CLIENT_SECRET"] = client_secret
        env.pop("ARM_ACCESS_TOKEN", None)
        return CredentialBundle(env_vars=env)

    async def _azure_refresh_token(
        self, conn: Mapping[str, Any], work_dir: Path
    ) -> Optional[CredentialBundle]:
        tokens = _section(conn, "tokens")
        refresh_token = _first(tokens, "refreshToken", "refresh_token")
        if not refresh_token:
            return None

        env = self._azure_base_env(conn, {})
        try:
            async with self._http_client_factory() as client:
                token = await refresh_azure_access_token(
                    client,
                    refresh_token,
                    client_id=self._settings.azure_client_id,
                    client_secret=self._settings.azure_client_secret,
                    authority=self._settings.azure_authority,
                    tenant_id=env.get("ARM_TENANT_ID"),
                )
        except CredentialError as exc:
            LOGGER.warning("%s; trying the stored access token", exc)
            stored = _first(tokens, "accessToken", "access_token")
            if not stored:
                return None
            return self._with_token(env, stored)

        return self._with_token(env, token)

    async def _azure_access_token(
        self, conn: Mapping[str, Any], work_dir: Path
    ) -> Optional[CredentialBundle]:
        tokens = _section(conn, "tokens")
        stored = _first(tokens, "accessToken", "access_token")
        if not stored:
            return None
        return self._with_token(self._azure_base_env(conn, {}), stored)


def project_azure_tf_vars(env_vars: Dict[str, str]) -> List[str]:
    """Copy ARM_* values into the TF_VAR_azure_* names the templates declare."""
    mapping = {
        "ARM_SUBSCRIPTION_ID": "TF_VAR_azure_subscription_id",
        "ARM_TENANT_ID": "TF_VAR_azure_tenant_id",
        "ARM_CLIENT_ID": "TF_VAR_azure_client_id",
        "ARM_CLIENT_SECRET": "TF_VAR_azure_client_secret",
    }
    projected: List[str] = []
    for source, target in mapping.items():
        value = env_vars.get(source)
        if value:
            env_vars[target] = value
            projected.append(target)
        else:
            env_vars.pop(target, None)
    return projected
