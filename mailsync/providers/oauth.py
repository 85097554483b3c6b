"""
OAuth 2.0 client helpers for the REST providers.

Authorization URLs, code exchange and refresh-token grants against the
Google and Microsoft identity endpoints.
"""

import logging
from datetime import timedelta
from typing import Optional
from urllib.parse import urlencode

import httpx

from mailsync.core.config import SyncSettings
from mailsync.core.exceptions import AuthError, TransientProviderError
from mailsync.models.accounts import utcnow
from mailsync.providers.base import ProviderType, OAuthTokens

logger = logging.getLogger(__name__)

GMAIL_SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.send",
    "https://www.googleapis.com/auth/gmail.compose",
    "https://www.googleapis.com/auth/userinfo.email",
]

OUTLOOK_SCOPES = [
    "Mail.ReadWrite",
    "Mail.Send",
    "User.Read",
    "offline_access",
]

OAUTH_CONFIGS = {
    ProviderType.GMAIL: {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scopes": GMAIL_SCOPES,
    },
    ProviderType.OUTLOOK: {
        "auth_url": "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/authorize",
        "token_url": "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token",
        "userinfo_url": "https://graph.microsoft.com/v1.0/me",
        "scopes": OUTLOOK_SCOPES,
    },
}


def get_oauth_config(provider: ProviderType, settings: SyncSettings) -> dict:
    """Resolve endpoints and client credentials for a provider."""
    if provider not in OAUTH_CONFIGS:
        raise ValueError(f"OAuth not supported for provider: {provider.value}")

    config = dict(OAUTH_CONFIGS[provider])
    if provider == ProviderType.GMAIL:
        config["client_id"] = settings.google_client_id
        config["client_secret"] = settings.google_client_secret
    else:
        tenant = settings.microsoft_tenant
        config["auth_url"] = config["auth_url"].format(tenant=tenant)
        config["token_url"] = config["token_url"].format(tenant=tenant)
        config["client_id"] = settings.microsoft_client_id
        config["client_secret"] = settings.microsoft_client_secret
    return config


def build_authorization_url(config: dict, redirect_uri: str, state: str) -> str:
    """Consent URL requesting offline access so a refresh token is issued."""
    params = {
        "client_id": config["client_id"],
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "state": state,
        "access_type": "offline",
        "prompt": "consent",
        "scope": " ".join(config["scopes"]),
    }
    return f"{config['auth_url']}?{urlencode(params)}"


def _tokens_from_response(data: dict, previous_refresh_token: Optional[str] = None) -> OAuthTokens:
    expires_at = None
    if data.get("expires_in"):
        expires_at = utcnow() + timedelta(seconds=int(data["expires_in"]))
    return OAuthTokens(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token") or previous_refresh_token,
        expires_at=expires_at,
        token_type=data.get("token_type", "Bearer"),
        scope=data.get("scope"),
    )


async def _post_token_request(config: dict, data: dict, timeout: float) -> dict:
    async with httpx.AsyncClient(timeout=timeout) as client:
        try:
            response = await client.post(
                config["token_url"],
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            raise TransientProviderError(f"Token endpoint unreachable: {e}")

    if response.status_code >= 500:
        raise TransientProviderError(f"Token endpoint returned {response.status_code}")
    if response.status_code != 200:
        error_data = {}
        if response.headers.get("content-type", "").startswith("application/json"):
            error_data = response.json()
        raise AuthError(
            error_data.get("error_description")
            or error_data.get("error")
            or f"Token request failed with status {response.status_code}"
        )
    return response.json()


async def exchange_code_for_tokens(
    config: dict,
    code: str,
    redirect_uri: str,
    timeout: float = 30.0,
) -> OAuthTokens:
    """Exchange an authorization code for access/refresh tokens."""
    data = {
        "client_id": config["client_id"],
        "client_secret": config["client_secret"],
        "code": code,
        "redirect_uri": redirect_uri,
        "grant_type": "authorization_code",
    }
    return _tokens_from_response(await _post_token_request(config, data, timeout))


async def refresh_access_token(
    config: dict,
    refresh_token: str,
    timeout: float = 30.0,
) -> OAuthTokens:
    """
    Run a refresh-token grant.

    The returned ``refresh_token`` is None when the provider kept the old one.
    """
    data = {
        "client_id": config["client_id"],
        "client_secret": config["client_secret"],
        "refresh_token": refresh_token,
        "grant_type": "refresh_token",
        "scope": " ".join(config["scopes"]),
    }
    return _tokens_from_response(await _post_token_request(config, data, timeout))


async def get_oauth_user_info(provider: ProviderType, config: dict, access_token: str) -> dict:
    """Fetch the mailbox owner's address and display name."""
    async with httpx.AsyncClient() as client:
        response = await client.get(
            config["userinfo_url"],
            headers={"Authorization": f"Bearer {access_token}"},
        )
    if response.status_code != 200:
        return {}
    data = response.json()
    if provider == ProviderType.GMAIL:
        return {"email": data.get("email"), "name": data.get("name")}
    return {
        "email": data.get("mail") or data.get("userPrincipalName"),
        "name": data.get("displayName"),
    }
