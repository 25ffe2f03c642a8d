"""Token acquisition for the directory API.

Two ways to authenticate the tool itself:
- client credentials of a management app (default, suited to automation)
- interactive: the signed-in Azure CLI account, falling back to a browser login

A third, scoped flow mints a token *as the blueprint* from the blueprint's
appId and freshly created secret. Agent identity creation must run as the
blueprint, so that token is never installed as the run's ambient token.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from azure.core.exceptions import ClientAuthenticationError
from azure.identity import (
    AzureCliCredential,
    ClientSecretCredential,
    CredentialUnavailableError,
    InteractiveBrowserCredential,
)

from .config import GRAPH_SCOPE, AuthSettings
from .errors import AuthenticationFailure

logger = logging.getLogger(__name__)


class TokenProvider(Protocol):
    """Anything that can hand out a Graph bearer token."""

    async def get_token(self) -> str: ...


class ClientSecretTokenProvider:
    """Client-credential exchange for an app registration.

    The synchronous credential runs in a worker thread.
    """

    def __init__(self, tenant_id: str, client_id: str, client_secret: str) -> None:
        self.tenant_id = tenant_id
        self.client_id = client_id
        self._client_secret = client_secret

    def credential(self) -> ClientSecretCredential:
        return ClientSecretCredential(self.tenant_id, self.client_id, self._client_secret)

    async def get_token(self) -> str:
        logger.info(
            "Acquiring token with client credentials",
            extra={"client_id": _short(self.client_id)},
        )
        return await asyncio.to_thread(self._acquire)

    def _acquire(self) -> str:
        credential = self.credential()
        try:
            return credential.get_token(GRAPH_SCOPE).token
        except ClientAuthenticationError as e:
            raise AuthenticationFailure(f"Failed to acquire access token: {e.message}") from e
        finally:
            credential.close()


class InteractiveTokenProvider:
    """Azure CLI session first, interactive browser login second."""

    def __init__(self, tenant_id: str, client_app_id: str | None = None) -> None:
        self.tenant_id = tenant_id
        self.client_app_id = client_app_id

    async def get_token(self) -> str:
        token = await asyncio.to_thread(self._via_azure_cli)
        if token:
            return token

        logger.info("Azure CLI session unavailable, opening browser login")
        try:
            return await asyncio.to_thread(self._via_browser)
        except ClientAuthenticationError as e:
            raise AuthenticationFailure(
                f"Interactive authentication failed: {e.message}",
                (
                    "Run 'az login --tenant <tenant-id>' and retry",
                    "Or pass --client-id/--client-secret for a management app",
                ),
            ) from e

    def _via_azure_cli(self) -> str | None:
        credential = AzureCliCredential(tenant_id=self.tenant_id)
        try:
            access_token = credential.get_token(GRAPH_SCOPE)
        except CredentialUnavailableError as e:
            logger.debug("Azure CLI credential not available", extra={"error": str(e)})
            return None
        except ClientAuthenticationError as e:
            logger.debug("Azure CLI authentication failed", extra={"error": str(e)})
            return None
        finally:
            credential.close()
        logger.info("Token acquired via Azure CLI")
        return access_token.token

    def _via_browser(self) -> str:
        if self.client_app_id:
            credential = InteractiveBrowserCredential(
                tenant_id=self.tenant_id, client_id=self.client_app_id
            )
        else:
            credential = InteractiveBrowserCredential(tenant_id=self.tenant_id)
        return credential.get_token(GRAPH_SCOPE).token


def token_provider_for(auth: AuthSettings) -> TokenProvider:
    """Pick the provider matching the configured authentication mode."""
    if auth.interactive:
        return InteractiveTokenProvider(auth.tenant_id, auth.client_app_id)
    client_id, client_secret = auth.client_credentials()
    return ClientSecretTokenProvider(auth.tenant_id, client_id, client_secret)


async def acquire_blueprint_token(tenant_id: str, app_id: str, secret: str) -> str:
    """Exchange blueprint credentials for a token scoped to that blueprint."""
    if not secret:
        raise AuthenticationFailure("Blueprint secret is empty; cannot authenticate as the blueprint")
    return await ClientSecretTokenProvider(tenant_id, app_id, secret).get_token()


def _short(value: str) -> str:
    return value[:8] + "..." if len(value) > 8 else value
