from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, Mapping, Optional

import httpx

from .errors import PreflightError
from .types import Severity

LOGGER = logging.getLogger(__name__)

CLOUD_BILLING_URL = "https://cloudbilling.googleapis.com/v1/projects/{project}/billingInfo"
BILLING_CONSOLE_URL = "https://console.cloud.google.com/billing"

LogFn = Callable[[str, Severity], None]
CheckFn = Callable[[Mapping[str, str], LogFn], Awaitable[None]]


class PreflightService:
    """Account sanity checks run after credentials and before any terraform call."""

    def __init__(
        self,
        *,
        http_client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._http_client_factory = http_client_factory or (
            lambda: httpx.AsyncClient(timeout=timeout_seconds)
        )
        self._checks: Dict[str, CheckFn] = {"gcp": self.check_gcp_billing}

    def supports(self, provider: str) -> bool:
        return (provider or "").lower() in self._checks

    async def run(self, provider: str, env_vars: Mapping[str, str], log: LogFn) -> None:
        check = self._checks.get((provider or "").lower())
        if check is None:
            return
        await check(env_vars, log)

    async def check_gcp_billing(self, env_vars: Mapping[str, str], log: LogFn) -> None:
        project_id = env_vars.get("GOOGLE_PROJECT") or env_vars.get("GCLOUD_PROJECT")
        if not project_id:
            log("Skipping Billing Check: No GCP Project ID found.", "WARN")
            return

        token = env_vars.get("GOOGLE_OAUTH_ACCESS_TOKEN")
        if not token:
            raise PreflightError(
                "Billing Verification Failed: No GCP credentials available for billing check"
            )

        log(f"Verifying GCP Billing for project: {project_id}...", "CMD")
        try:
            async with self._http_client_factory() as client:
                resp = await client.get(
                    CLOUD_BILLING_URL.format(project=project_id),
                    headers={
                        "Authorization": f"Bearer {token}",
                        "Accept": "application/json",
                    },
                )
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as exc:
            raise PreflightError(
                f"Billing Verification Failed: HTTP {exc.response.status_code} "
                f"from Cloud Billing API for project '{project_id}'"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise PreflightError(f"Billing Verification Failed: {exc}") from exc

        if not isinstance(data, dict) or not data.get("billingEnabled"):
            raise PreflightError(
                f"Billing Verification Failed: Billing is NOT enabled for project "
                f"'{project_id}'. Please enable it in the Google Cloud Console: "
                f"{BILLING_CONSOLE_URL}"
            )

        account = data.get("billingAccountName") or "Linked"
        LOGGER.info("billing enabled for %s (%s)", project_id, account)
        log(f"Billing check passed: Account '{account}'", "SUCCESS")
