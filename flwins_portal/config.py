"""Configuration loading utilities for the FLWINS portal."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

import yaml


ENV_CONFIG_PATH = "FLWINS_CONFIG"
DEFAULT_REDIRECT_PATH = "/school-readiness"
DEFAULT_ODBC_DRIVER = "ODBC Driver 18 for SQL Server"
PROVISIONING_MODES = ("create", "invite", "off")

# Environment variable spellings, first match wins.
_ENV_ALIASES: Dict[str, tuple[str, ...]] = {
    "database.connection_string": ("SQL_CONNECTION_STRING",),
    "database.server": ("SQL_SERVER",),
    "database.database": ("SQL_DATABASE",),
    "database.odbc_driver": ("SQL_ODBC_DRIVER",),
    "graph.tenant_id": ("AZ_TENANT_ID", "TENANT_ID", "tenantId"),
    "graph.client_id": ("AZ_CLIENT_ID", "CLIENT_ID", "clientId"),
    "graph.client_secret": ("AZ_CLIENT_SECRET", "CLIENT_SECRET", "secret"),
    "graph.upn_domain": ("UPN_DOMAIN",),
    "efsmod.tenant_id": ("EFSMOD_TENANT_ID", "B_TENANT_ID"),
    "efsmod.client_id": ("EFSMOD_CLIENT_ID", "B_GRAPH_CLIENT_ID"),
    "efsmod.client_secret": ("EFSMOD_CLIENT_SECRET", "B_GRAPH_CLIENT_SECRET"),
    "efsmod.base_url": ("EFSMOD_BASE_URL", "B_BASE_URL"),
    "efsmod.redirect_path": ("EFSMOD_REDIRECT_PATH",),
    "provisioning.mode": ("ACCOUNT_PROVISIONING_MODE",),
    "server.auth_endpoint_base": ("AUTH_ENDPOINT_BASE",),
    "server.website_hostname": ("WEBSITE_HOSTNAME",),
    "server.host": ("HOST",),
    "server.port": ("PORT",),
    "server.environment": ("NODE_ENV", "FLASK_ENV"),
}


@dataclass
class DatabaseConfig:
    """Settings for the intake store."""

    connection_string: Optional[str] = None
    server: Optional[str] = None
    database: Optional[str] = None
    odbc_driver: str = DEFAULT_ODBC_DRIVER

    @property
    def uses_managed_identity(self) -> bool:
        return bool(self.server and self.database and not self.connection_string)

    @property
    def is_configured(self) -> bool:
        return bool(self.connection_string) or self.uses_managed_identity


@dataclass
class GraphConfig:
    """Client-credential settings for the primary tenant's Microsoft Graph access."""

    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    upn_domain: Optional[str] = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)

    @property
    def missing_fields(self) -> Dict[str, bool]:
        return {
            "tenant_id": bool(self.tenant_id),
            "client_id": bool(self.client_id),
            "client_secret": bool(self.client_secret),
        }


@dataclass
class InvitationConfig:
    """Settings for invitations into the secondary (EFSMOD) tenant."""

    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    base_url: Optional[str] = None
    redirect_path: str = DEFAULT_REDIRECT_PATH

    @property
    def has_credentials(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)

    @property
    def is_configured(self) -> bool:
        return self.has_credentials and bool(self.base_url)

    @property
    def normalized_redirect_path(self) -> str:
        path = self.redirect_path or DEFAULT_REDIRECT_PATH
        return path if path.startswith("/") else f"/{path}"

    @property
    def redirect_url(self) -> str:
        base = (self.base_url or "").rstrip("/")
        return f"{base}{self.normalized_redirect_path}"


@dataclass
class ProvisioningConfig:
    """How intake submissions provision accounts in the primary tenant."""

    mode: str = "create"


@dataclass
class ServerConfig:
    """HTTP server settings."""

    host: str = "0.0.0.0"
    port: int = 3000
    environment: str = "development"
    auth_endpoint_base: Optional[str] = None
    website_hostname: Optional[str] = None

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"

    @property
    def public_base_url(self) -> Optional[str]:
        """Base URL of the site and its platform auth endpoints.

        Only ever taken from configuration, never from the incoming request.
        ``None`` when neither ``AUTH_ENDPOINT_BASE`` nor ``WEBSITE_HOSTNAME``
        is set.
        """

        if self.auth_endpoint_base:
            return self.auth_endpoint_base.rstrip("/")
        if self.website_hostname:
            return f"https://{self.website_hostname.strip('/')}"
        return None


@dataclass
class AppConfig:
    """Aggregate configuration for the application."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    graph: GraphConfig = field(default_factory=GraphConfig)
    efsmod: InvitationConfig = field(default_factory=InvitationConfig)
    provisioning: ProvisioningConfig = field(default_factory=ProvisioningConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


class ConfigurationError(RuntimeError):
    """Raised when required settings are absent or the configuration file is invalid."""

    def __init__(self, message: str, details: Optional[Dict[str, bool]] = None) -> None:
        super().__init__(message)
        self.details = details or {}


def _load_from_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Configuration file '{path}' does not exist.")
    try:
        with path.open("r", encoding="utf-8") as file:
            payload = yaml.safe_load(file) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Unable to read configuration file '{path}': {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Configuration file '{path}' must contain a mapping.")
    return payload


def _apply_environment_overrides(
    config_dict: Dict[str, Any], environ: Mapping[str, str]
) -> Dict[str, Any]:
    """Override configuration values with the recognised environment variables."""

    result = {key: dict(value) if isinstance(value, dict) else value for key, value in config_dict.items()}
    for dotted, names in _ENV_ALIASES.items():
        value = _first_env(environ, names)
        if value is None:
            continue
        section, key = dotted.split(".", 1)
        node = result.setdefault(section, {})
        if not isinstance(node, dict):
            raise ConfigurationError(f"Configuration section '{section}' must be a mapping.")
        node[key] = value
    return result


def _first_env(environ: Mapping[str, str], names: Iterable[str]) -> Optional[str]:
    for name in names:
        value = _optional_str(environ.get(name))
        if value is not None:
            return value
    return None


def _resolve_config_path(path: Optional[Path], environ: Mapping[str, str]) -> Optional[Path]:
    if path is not None:
        return Path(path)
    env_path = _optional_str(environ.get(ENV_CONFIG_PATH))
    if env_path:
        return Path(env_path)
    return None


def _section(config_dict: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = config_dict.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"Configuration section '{key}' must be a mapping.")
    return value


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value.strip())
    return int(value)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def load_config(
    path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None
) -> AppConfig:
    """Load application configuration from an optional YAML file and the environment."""

    env = os.environ if environ is None else environ
    resolved_path = _resolve_config_path(path, env)
    config_dict = _load_from_file(resolved_path) if resolved_path else {}
    config_dict = _apply_environment_overrides(config_dict, env)

    database_section = _section(config_dict, "database")
    database = DatabaseConfig(
        connection_string=_optional_str(database_section.get("connection_string")),
        server=_optional_str(database_section.get("server")),
        database=_optional_str(database_section.get("database")),
        odbc_driver=_optional_str(database_section.get("odbc_driver")) or DEFAULT_ODBC_DRIVER,
    )

    graph_section = _section(config_dict, "graph")
    graph = GraphConfig(
        tenant_id=_optional_str(graph_section.get("tenant_id")),
        client_id=_optional_str(graph_section.get("client_id")),
        client_secret=_optional_str(graph_section.get("client_secret")),
        upn_domain=_optional_str(graph_section.get("upn_domain")),
    )

    efsmod_section = _section(config_dict, "efsmod")
    efsmod = InvitationConfig(
        tenant_id=_optional_str(efsmod_section.get("tenant_id")),
        client_id=_optional_str(efsmod_section.get("client_id")),
        client_secret=_optional_str(efsmod_section.get("client_secret")),
        base_url=_optional_str(efsmod_section.get("base_url")),
        redirect_path=_optional_str(efsmod_section.get("redirect_path")) or DEFAULT_REDIRECT_PATH,
    )

    provisioning_section = _section(config_dict, "provisioning")
    raw_mode = provisioning_section.get("mode")
    if raw_mode is False:
        # YAML 1.1 reads a bare ``off`` as a boolean.
        raw_mode = "off"
    mode = (_optional_str(raw_mode) or "create").lower()
    if mode not in PROVISIONING_MODES:
        raise ConfigurationError(
            f"Unknown account provisioning mode '{mode}'. "
            f"Expected one of: {', '.join(PROVISIONING_MODES)}."
        )

    server_section = _section(config_dict, "server")
    default_server = ServerConfig()
    try:
        port = _to_int(server_section.get("port", default_server.port))
    except ValueError as exc:
        raise ConfigurationError(f"PORT must be a whole number: {exc}") from exc
    server = ServerConfig(
        host=_optional_str(server_section.get("host")) or default_server.host,
        port=port,
        environment=_optional_str(server_section.get("environment")) or default_server.environment,
        auth_endpoint_base=_optional_str(server_section.get("auth_endpoint_base")),
        website_hostname=_optional_str(server_section.get("website_hostname")),
    )

    return AppConfig(
        database=database,
        graph=graph,
        efsmod=efsmod,
        provisioning=ProvisioningConfig(mode=mode),
        server=server,
    )


def describe_config(config: AppConfig) -> Dict[str, Any]:
    """Summarise the configuration without exposing secrets."""

    return {
        "database": {
            "configured": config.database.is_configured,
            "mode": (
                "connection_string"
                if config.database.connection_string
                else "managed_identity" if config.database.uses_managed_identity else None
            ),
            "server": config.database.server,
            "database": config.database.database,
        },
        "graph": {
            "configured": config.graph.has_credentials,
            "tenant_id": config.graph.tenant_id,
            "client_id": config.graph.client_id,
            "has_secret": bool(config.graph.client_secret),
            "upn_domain": config.graph.upn_domain,
        },
        "efsmod": {
            "configured": config.efsmod.is_configured,
            "tenant_id": config.efsmod.tenant_id,
            "client_id": config.efsmod.client_id,
            "has_secret": bool(config.efsmod.client_secret),
            "redirect_url": config.efsmod.redirect_url if config.efsmod.base_url else None,
        },
        "provisioning": {"mode": config.provisioning.mode},
        "server": {
            "host": config.server.host,
            "port": config.server.port,
            "environment": config.server.environment,
            "public_base_url": config.server.public_base_url,
        },
    }


__all__ = [
    "AppConfig",
    "ConfigurationError",
    "DatabaseConfig",
    "GraphConfig",
    "InvitationConfig",
    "ProvisioningConfig",
    "ServerConfig",
    "describe_config",
    "load_config",
]
