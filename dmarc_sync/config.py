"""Configuration management for the DMARC mailbox sync pipeline."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Sequence

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import Provider

# Pick up a local .env before Settings reads the environment.
load_dotenv()

GOOGLE_READ_SCOPE = "https://www.googleapis.com/auth/gmail.readonly"
GOOGLE_MODIFY_SCOPE = "https://www.googleapis.com/auth/gmail.modify"


def _split_scopes(value: str | None, default: list[str]) -> list[str]:
    """Scopes may be separated by spaces, commas or semicolons in the env."""
    scopes = [item for item in re.split(r"[;,\s]+", value or "") if item]
    return scopes or list(default)


def _scope_name(scope: str) -> str:
    # "https://graph.microsoft.com/Mail.ReadWrite" and "Mail.ReadWrite" are the same grant
    return scope.rstrip("/").rsplit("/", 1)[-1].lower()


class Settings(BaseSettings):
    """Sync pipeline settings read from the environment or a .env file."""

    database_path: Path = Field(Path("data/dmarc_sync.db"), alias="DMARC_SYNC_DB")
    token_encryption_key: str = Field(..., alias="TOKEN_ENCRYPTION_KEY")
    default_user_id: str = Field("local", alias="DMARC_SYNC_USER")

    google_client_id: str | None = Field(None, alias="GOOGLE_CLIENT_ID")
    google_client_secret: str | None = Field(None, alias="GOOGLE_CLIENT_SECRET")
    google_token_uri: str = Field("https://oauth2.googleapis.com/token", alias="GOOGLE_TOKEN_URI")
    google_auth_uri: str = Field(
        "https://accounts.google.com/o/oauth2/auth", alias="GOOGLE_AUTH_URI"
    )
    google_read_scopes_raw: str = Field(GOOGLE_READ_SCOPE, alias="GOOGLE_READ_SCOPES")
    google_modify_scopes_raw: str = Field(GOOGLE_MODIFY_SCOPE, alias="GOOGLE_MODIFY_SCOPES")

    graph_client_id: str | None = Field(None, alias="GRAPH_CLIENT_ID")
    graph_client_secret: str | None = Field(None, alias="GRAPH_CLIENT_SECRET")
    graph_tenant_id: str | None = Field(None, alias="GRAPH_TENANT_ID")
    graph_authority: str | None = Field(None, alias="GRAPH_AUTHORITY")
    graph_read_scopes_raw: str = Field("Mail.Read;User.Read", alias="GRAPH_READ_SCOPES")
    graph_modify_scopes_raw: str = Field("Mail.ReadWrite;User.Read", alias="GRAPH_MODIFY_SCOPES")
    graph_page_size: int = Field(25, alias="GRAPH_PAGE_SIZE")

    search_max_results: int = Field(100, alias="SEARCH_MAX_RESULTS")
    attachment_delay_seconds: float = Field(0.1, alias="ATTACHMENT_DELAY_SECONDS")
    deletion_delay_seconds: float = Field(0.5, alias="DELETION_DELAY_SECONDS")
    token_expiry_buffer_seconds: int = Field(300, alias="TOKEN_EXPIRY_BUFFER_SECONDS")
    rate_limit_retries: int = Field(2, alias="RATE_LIMIT_RETRIES")
    request_timeout: int = Field(30, alias="REQUEST_TIMEOUT")
    sync_lease_seconds: int = Field(1800, alias="SYNC_LEASE_SECONDS")
    message_tracking_enabled: bool = Field(True, alias="MESSAGE_TRACKING_ENABLED")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator(
        "google_client_id",
        "google_client_secret",
        "graph_client_id",
        "graph_client_secret",
        "graph_tenant_id",
        "graph_authority",
        mode="before",
    )
    @classmethod
    def _empty_str_to_none(cls, value):
        if isinstance(value, str) and value.strip() == "":
            return None
        return value

    @field_validator("graph_page_size", "search_max_results")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @model_validator(mode="after")
    def _validate_providers(self):
        if self.google_client_id and not self.google_client_secret:
            raise ValueError("GOOGLE_CLIENT_SECRET is required when GOOGLE_CLIENT_ID is set.")
        return self

    @property
    def authority_url(self) -> str:
        if self.graph_authority:
            return self.graph_authority.rstrip("/")
        if self.graph_tenant_id:
            return f"https://login.microsoftonline.com/{self.graph_tenant_id}"
        return "https://login.microsoftonline.com/common"

    @property
    def google_read_scopes(self) -> list[str]:
        return _split_scopes(self.google_read_scopes_raw, [GOOGLE_READ_SCOPE])

    @property
    def google_modify_scopes(self) -> list[str]:
        return _split_scopes(self.google_modify_scopes_raw, [GOOGLE_MODIFY_SCOPE])

    @property
    def graph_read_scopes(self) -> list[str]:
        return _split_scopes(self.graph_read_scopes_raw, ["Mail.Read", "User.Read"])

    @property
    def graph_modify_scopes(self) -> list[str]:
        return _split_scopes(self.graph_modify_scopes_raw, ["Mail.ReadWrite", "User.Read"])

    def read_scopes(self, provider: Provider) -> list[str]:
        if provider is Provider.GMAIL:
            return self.google_read_scopes
        return self.graph_read_scopes

    def modify_scopes(self, provider: Provider) -> list[str]:
        if provider is Provider.GMAIL:
            return self.google_modify_scopes
        return self.graph_modify_scopes

    def grants_modify(self, provider: Provider, granted: Sequence[str]) -> bool:
        """True when ``granted`` covers the mail-modify scope for ``provider``."""
        granted_names = {_scope_name(scope) for scope in granted}
        if provider is Provider.GMAIL and "mail.google.com" in granted_names:
            return True
        required = {
            _scope_name(scope)
            for scope in self.modify_scopes(provider)
            if _scope_name(scope) != "user.read"
        }
        return bool(required) and required <= granted_names
