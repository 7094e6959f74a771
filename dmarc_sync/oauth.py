"""OAuth token endpoints for Google and Microsoft identity platforms."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import msal
from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials as GoogleCredentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build

from .config import Settings
from .exceptions import AuthenticationError, TokenRefreshError
from .models import Provider
from .utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class TokenGrant:
    """Result of an authorization or refresh call."""

    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[datetime]
    scopes: list[str] = field(default_factory=list)
    email: Optional[str] = None
    account_id: Optional[str] = None


class GoogleTokenClient:
    provider = Provider.GMAIL

    def __init__(
        self,
        settings: Settings,
        flow_factory: Callable[..., InstalledAppFlow] = InstalledAppFlow.from_client_config,
    ) -> None:
        self.settings = settings
        self.flow_factory = flow_factory

    def refresh(self, refresh_token: str, scopes: list[str]) -> TokenGrant:
        creds = GoogleCredentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=self.settings.google_token_uri,
            client_id=self.settings.google_client_id,
            client_secret=self.settings.google_client_secret,
            scopes=scopes or None,
        )
        try:
            creds.refresh(Request())
        except RefreshError as exc:
            raise TokenRefreshError(f"Google token refresh failed: {exc}", reason="expired") from exc
        return TokenGrant(
            access_token=creds.token,
            refresh_token=creds.refresh_token,
            expires_at=ensure_utc(creds.expiry) if creds.expiry else None,
            scopes=list(creds.granted_scopes or creds.scopes or scopes),
        )

    def authorize(self, scopes: list[str], login_hint: str | None = None) -> TokenGrant:
        """Run the installed-app consent flow in a local browser."""
        if not self.settings.google_client_id:
            raise AuthenticationError("GOOGLE_CLIENT_ID is not configured")
        flow = self.flow_factory(self._client_config(), scopes=scopes)
        extra = {"login_hint": login_hint} if login_hint else {}
        creds = flow.run_local_server(port=0, access_type="offline", prompt="consent", **extra)
        service = build("gmail", "v1", credentials=creds, cache_discovery=False)
        profile = service.users().getProfile(userId="me").execute()
        email = profile["emailAddress"]
        logger.info("Authorized Gmail mailbox %s", email)
        return TokenGrant(
            access_token=creds.token,
            refresh_token=creds.refresh_token,
            expires_at=ensure_utc(creds.expiry) if creds.expiry else None,
            scopes=list(creds.granted_scopes or creds.scopes or scopes),
            email=email,
            account_id=email,
        )

    def _client_config(self) -> dict[str, Any]:
        return {
            "installed": {
                "client_id": self.settings.google_client_id,
                "client_secret": self.settings.google_client_secret,
                "auth_uri": self.settings.google_auth_uri,
                "token_uri": self.settings.google_token_uri,
                "redirect_uris": ["http://localhost"],
            }
        }


class MicrosoftTokenClient:
    provider = Provider.MICROSOFT

    def __init__(self, settings: Settings, app: msal.ClientApplication | None = None) -> None:
        self.settings = settings
        if app is not None:
            self.app = app
        elif settings.graph_client_secret:
            self.app = msal.ConfidentialClientApplication(
                client_id=settings.graph_client_id,
                client_credential=settings.graph_client_secret,
                authority=settings.authority_url,
            )
        else:
            self.app = msal.PublicClientApplication(
                client_id=settings.graph_client_id,
                authority=settings.authority_url,
            )

    def refresh(self, refresh_token: str, scopes: list[str]) -> TokenGrant:
        result = self.app.acquire_token_by_refresh_token(refresh_token, scopes=self._request_scopes(scopes))
        if "access_token" not in result:
            raise TokenRefreshError(
                f"Microsoft token refresh failed: {result.get('error_description') or result.get('error')}",
                reason="expired",
            )
        return self._to_grant(result, scopes)

    def authorize(self, scopes: list[str], login_hint: str | None = None) -> TokenGrant:
        """Device code sign-in; the user completes it in any browser."""
        if not isinstance(self.app, msal.PublicClientApplication):
            raise AuthenticationError(
                "Device code sign-in needs a public client; unset GRAPH_CLIENT_SECRET to connect."
            )
        flow = self.app.initiate_device_flow(scopes=self._request_scopes(scopes))
        if "user_code" not in flow:
            raise AuthenticationError(f"Unable to start device code flow: {flow}")
        logger.info(flow.get("message"))
        result = self.app.acquire_token_by_device_flow(flow)
        if "access_token" not in result:
            raise AuthenticationError(
                f"Unable to obtain Graph token: {result.get('error_description')}"
            )
        grant = self._to_grant(result, scopes)
        claims = result.get("id_token_claims") or {}
        grant.email = claims.get("preferred_username") or claims.get("email") or login_hint
        grant.account_id = claims.get("oid")
        logger.info("Authorized Microsoft mailbox %s", grant.email)
        return grant

    @staticmethod
    def _request_scopes(scopes: list[str]) -> list[str]:
        # MSAL adds these itself and rejects them when passed explicitly.
        reserved = {"openid", "profile", "offline_access"}
        return [scope for scope in scopes if scope.lower() not in reserved]

    @staticmethod
    def _to_grant(result: dict[str, Any], scopes: list[str]) -> TokenGrant:
        expires_in = int(result.get("expires_in") or 3600)
        granted = (result.get("scope") or "").split() or list(scopes)
        return TokenGrant(
            access_token=result["access_token"],
            refresh_token=result.get("refresh_token"),
            expires_at=utcnow() + timedelta(seconds=expires_in),
            scopes=granted,
        )


def default_token_clients(settings: Settings) -> dict[Provider, Any]:
    clients: dict[Provider, Any] = {}
    if settings.google_client_id:
        clients[Provider.GMAIL] = GoogleTokenClient(settings)
    if settings.graph_client_id:
        clients[Provider.MICROSOFT] = MicrosoftTokenClient(settings)
    return clients
