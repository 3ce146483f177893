"""Application configuration loaded from environment variables."""

from __future__ import annotations

import json

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from botbridge.exceptions import ConfigurationError


class Settings(BaseSettings):
    """Botbridge application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    secret_key: str = "change-me-in-production"
    debug: bool = False
    expose_docs: bool = False
    admin_token: str = ""
    public_base_url: str = "http://localhost:8000"
    http_timeout_seconds: float = Field(default=30.0, gt=0)

    # Database
    database_url: str = "sqlite+aiosqlite:///data/db/botbridge.db"

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)

    # Host chatbot platform
    platform_api_url: str = "https://api.botpress.cloud"
    platform_token: str = ""
    platform_bot_id: str = ""
    platform_integration_id: str = ""

    # SharePoint
    sharepoint_client_id: str = ""
    sharepoint_tenant_id: str = ""
    sharepoint_thumbprint: str = ""
    sharepoint_private_key: str = ""
    sharepoint_primary_domain: str = ""
    sharepoint_site_name: str = ""
    sharepoint_document_library_names: str = ""
    sharepoint_document_library_name: str = ""
    sharepoint_kb_id: str = ""
    sharepoint_folder_kb_map: str = ""

    # Tables (Excel import target)
    tables_api_url: str = "https://api.botpress.cloud/v1/tables"
    tables_personal_access_token: str = ""

    # Brevo
    brevo_api_key: str = ""
    brevo_agent_id: str = ""

    # HubSpot Inbox
    hubspot_inbox_developer_api_key: str = ""
    hubspot_inbox_refresh_token: str = ""
    hubspot_inbox_app_id: str = ""
    hubspot_inbox_client_id: str = ""
    hubspot_inbox_client_secret: str = ""
    hubspot_inbox_inbox_id: str = ""

    # HubSpot Help Desk
    hubspot_help_desk_developer_api_key: str = ""
    hubspot_help_desk_refresh_token: str = ""
    hubspot_help_desk_app_id: str = ""
    hubspot_help_desk_client_id: str = ""
    hubspot_help_desk_client_secret: str = ""
    hubspot_help_desk_help_desk_id: str = ""

    # Salesforce Messaging
    salesforce_endpoint: str = ""
    salesforce_organization_id: str = ""
    salesforce_developer_name: str = ""
    salesforce_transport_url: str = ""
    salesforce_transport_secret: str = ""
    salesforce_conversation_not_assigned_message: str = (
        "Conversation not assigned yet, please wait for an agent to join"
    )

    @property
    def state_scope_id(self) -> str:
        """Scope under which integration-wide state is stored."""
        return self.platform_integration_id or "default"

    def webhook_url(self, path: str) -> str:
        """Absolute URL under which vendors reach ``path`` on this service."""
        return f"{self.public_base_url.rstrip('/')}/{path.lstrip('/')}"

    def sharepoint_libraries(self) -> list[str]:
        """Return the document libraries to sync.

        Accepts a JSON array or a comma-separated list, and falls back to the
        legacy single-library setting.
        """
        raw = self.sharepoint_document_library_names.strip()
        if raw:
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                parsed = raw.split(",")
            if isinstance(parsed, str):
                parsed = [parsed]
            if not isinstance(parsed, list):
                msg = "SHAREPOINT_DOCUMENT_LIBRARY_NAMES must be a list of library names"
                raise ConfigurationError(msg)
            names = [str(name).strip() for name in parsed]
            return [name for name in names if name]
        legacy = self.sharepoint_document_library_name.strip()
        return [legacy] if legacy else []

    def sharepoint_kb_routes(self) -> dict[str, list[str]]:
        """Parse the folder routing map (``{"kbId": ["Folder", ...]}``)."""
        raw = self.sharepoint_folder_kb_map.strip()
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            msg = f"SHAREPOINT_FOLDER_KB_MAP is not valid JSON: {exc}"
            raise ConfigurationError(msg) from exc
        if not isinstance(parsed, dict):
            msg = "SHAREPOINT_FOLDER_KB_MAP must map kbId to a list of folder prefixes"
            raise ConfigurationError(msg)

        routes: dict[str, list[str]] = {}
        for kb_id, prefixes in parsed.items():
            if isinstance(prefixes, str):
                prefixes = [prefixes]
            if not isinstance(prefixes, list) or not all(isinstance(p, str) for p in prefixes):
                msg = f"Folder prefixes for KB {kb_id!r} must be a list of strings"
                raise ConfigurationError(msg)
            routes[str(kb_id)] = prefixes
        return routes

    def validate_runtime_security(self) -> None:
        """Validate security-critical production settings."""
        if self.debug:
            return

        violations: list[str] = []
        if self.secret_key == "change-me-in-production" or len(self.secret_key) < 32:
            violations.append(
                "SECRET_KEY must be overridden with a high-entropy value (>=32 chars)"
            )
        if len(self.admin_token) < 16:
            violations.append("ADMIN_TOKEN must be set to a strong value (>=16 chars)")

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Insecure production configuration: {joined}")
