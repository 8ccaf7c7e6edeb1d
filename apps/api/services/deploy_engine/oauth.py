from __future__ import annotations

import logging
from typing import Optional

import httpx

from .errors import CredentialError

LOGGER = logging.getLogger(__name__)

AZURE_MANAGEMENT_SCOPES = (
    "https://management.azure.com/user_impersonation",
    "offline_access",
)


def azure_token_url(authority: str, tenant_id: Optional[str]) -> str:
    return f"{authority.rstrip('/')}/{(tenant_id or '').strip() or 'common'}/oauth2/v2.0/token"


async def refresh_azure_access_token(
    client: httpx.AsyncClient,
    refresh_token: str,
    *,
    client_id: Optional[str],
    client_secret: Optional[str],
    authority: str,
    tenant_id: Optional[str] = None,
) -> str:
    """
    Redeem a user's refresh token for a fresh ARM access token.

    The platform OAuth app only identifies the caller to the token endpoint;
    the token that comes back is scoped to the user who granted consent.
    """
    if not client_id or not client_secret:
        raise CredentialError(
            "Azure token refresh is not configured (AZURE_CLIENT_ID/AZURE_CLIENT_SECRET)"
        )

    data = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": client_id,
        "client_secret": client_secret,
        "scope": " ".join(AZURE_MANAGEMENT_SCOPES),
    }
    try:
        resp = await client.post(
            azure_token_url(authority, tenant_id),
            data=data,
            headers={"Accept": "application/json"},
        )
        resp.raise_for_status()
        payload = resp.json()
    except httpx.HTTPStatusError as exc:
        raise CredentialError(
            f"Azure token refresh failed: HTTP {exc.response.status_code}"
        ) from exc
    except (httpx.HTTPError, ValueError) as exc:
        raise CredentialError(f"Azure token refresh failed: {exc}") from exc

    token = payload.get("access_token") if isinstance(payload, dict) else None
    if not token:
        raise CredentialError("Azure token refresh failed: no access token in response")
    return str(token)
