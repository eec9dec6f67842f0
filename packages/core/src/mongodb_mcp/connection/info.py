"""Connection string parsing and classification.

Classification (auth type, host type) feeds diagnostics, telemetry and the
choice of OIDC flow. It never changes how a non-OIDC connection behaves.
"""

from __future__ import annotations

import hashlib
import re
import urllib.parse
import uuid
from dataclasses import dataclass, field
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Literal

from mongodb_mcp_models import AtlasClusterConnectionInfo
from pymongo import uri_parser
from pymongo.errors import ConfigurationError as PyMongoConfigurationError

from mongodb_mcp import __version__
from mongodb_mcp.errors import ConfigurationError

if TYPE_CHECKING:
    from mongodb_mcp.config import Settings

AuthType = Literal["scram", "ldap", "kerberos", "x.509", "oidc-auth-flow", "oidc-device-flow"]
HostType = Literal["atlas", "unknown"]

MCP_SERVER_NAME = "MongoDB MCP Server"
MONGODB_SCHEMES = ("mongodb", "mongodb+srv")
LOOPBACK_HOSTS = ("127.0.0.1", "localhost")

_ATLAS_HOST = re.compile(r"\.mongodb(-dev|-qa|-stage)?\.net$", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class ParsedConnectionString:
    scheme: str
    hosts: tuple[str, ...]
    options: tuple[tuple[str, Any], ...] = ()

    def option(self, name: str) -> Any:
        """Look up a URI option; option names are case-insensitive."""
        lowered = name.lower()
        for key, value in self.options:
            if key.lower() == lowered:
                return value
        return None


@dataclass(frozen=True, slots=True)
class ConnectionStringInfo:
    auth_type: AuthType = "scram"
    host_type: HostType = "unknown"

    @property
    def is_oidc(self) -> bool:
        return self.auth_type.startswith("oidc")


@dataclass(frozen=True, slots=True)
class ConnectionSettings:
    """Target of a ``connect`` call."""

    connection_string: str
    atlas: AtlasClusterConnectionInfo | None = None
    driver_options: dict[str, Any] | None = field(default=None, hash=False, compare=False)


def _split_authority(rest: str) -> tuple[str, str]:
    cut = len(rest)
    for sep in ("/", "?"):
        idx = rest.find(sep)
        if idx != -1:
            cut = min(cut, idx)
    return rest[:cut], rest[cut:]


def parse_connection_string(connection_string: str) -> ParsedConnectionString:
    """Parse a ``mongodb://`` or ``mongodb+srv://`` connection string.

    Hosts and options are validated with the driver's own URI parser, without
    the DNS lookups a ``mongodb+srv`` string would need to be resolved.

    Raises:
        ConfigurationError: If the scheme, host list or options are invalid.
    """
    scheme, sep, rest = connection_string.strip().partition("://")
    if not sep or scheme.lower() not in MONGODB_SCHEMES:
        raise ConfigurationError(
            'Invalid scheme, expected connection string to start with "mongodb://" or "mongodb+srv://"'
        )

    authority, tail = _split_authority(rest)
    host_part = authority.rpartition("@")[2]
    srv = scheme.lower() == "mongodb+srv"
    try:
        nodes = uri_parser.split_hosts(host_part, default_port=None)
    except (ValueError, PyMongoConfigurationError) as e:
        raise ConfigurationError(f"Unable to parse {host_part} with URL: {e}") from e
    if srv and len(nodes) != 1:
        raise ConfigurationError("Unable to parse connection string: mongodb+srv requires exactly one host")
    if srv and nodes[0][1] is not None:
        raise ConfigurationError(f"Unable to parse {host_part} with URL: mongodb+srv does not accept a port")

    query = tail.partition("?")[2].strip("&;")
    options: tuple[tuple[str, Any], ...] = ()
    if query:
        try:
            parsed_options = uri_parser.split_options(query, validate=False, normalize=False)
        except PyMongoConfigurationError as e:
            raise ConfigurationError(f"Unable to parse connection string options: {e}") from e
        options = tuple(parsed_options.items())
    return ParsedConnectionString(
        scheme=scheme.lower(), hosts=tuple(host_part.split(",")), options=options
    )


def _hostname(host: str) -> str:
    return uri_parser.parse_host(host, default_port=None)[0]


def get_host_type(connection_string: str) -> HostType:
    parsed = parse_connection_string(connection_string)
    if all(_ATLAS_HOST.search(_hostname(h)) for h in parsed.hosts):
        return "atlas"
    return "unknown"


def get_auth_type(settings: Settings, connection_string: str) -> AuthType:
    """Infer the authentication type from the connection string and settings."""
    parsed = parse_connection_string(connection_string)
    mechanism = (parsed.option("authMechanism") or "").upper()

    if mechanism == "MONGODB-OIDC":
        if settings.browser and (
            settings.transport == "stdio"
            or (settings.transport == "http" and settings.http_host in LOOPBACK_HOSTS)
        ):
            return "oidc-auth-flow"
        return "oidc-device-flow"
    if mechanism == "MONGODB-X509":
        return "x.509"
    if mechanism == "GSSAPI":
        return "kerberos"
    if mechanism == "PLAIN" and parsed.option("authSource") == "$external":
        return "ldap"
    return "scram"


def get_connection_string_info(
    connection_string: str,
    settings: Settings,
    atlas: AtlasClusterConnectionInfo | None = None,
) -> ConnectionStringInfo:
    return ConnectionStringInfo(
        auth_type=get_auth_type(settings, connection_string),
        host_type="atlas" if atlas is not None else get_host_type(connection_string),
    )


@lru_cache(maxsize=1)
def get_device_id() -> str:
    """Stable, anonymous identifier for this machine."""
    return hashlib.sha256(f"mongodb-mcp:{uuid.getnode()}".encode()).hexdigest()[:32]


def set_app_name_if_missing(
    connection_string: str,
    device_id: str | None = None,
    client_name: str = "unknown",
) -> str:
    """Append an ``appName`` identifying this server unless one is already set."""
    parsed = parse_connection_string(connection_string)
    if parsed.option("appName") is not None:
        return connection_string

    app_name = f"{MCP_SERVER_NAME} {__version__}--{device_id or get_device_id()}--{client_name}"
    param = urllib.parse.urlencode({"appName": app_name})

    if "?" in connection_string:
        joiner = "" if connection_string.endswith(("?", "&")) else "&"
        return f"{connection_string}{joiner}{param}"
    _, _, rest = connection_string.partition("://")
    _, tail = _split_authority(rest)
    if tail.startswith("/"):
        return f"{connection_string}?{param}"
    return f"{connection_string}/?{param}"


def connection_string_credentials(connection_string: str) -> tuple[str | None, str | None]:
    """Return the (username, password) embedded in a connection string, if any."""
    _, sep, rest = connection_string.partition("://")
    if not sep:
        return None, None
    authority, _ = _split_authority(rest)
    if "@" not in authority:
        return None, None
    userinfo = authority.rsplit("@", 1)[0]
    username, has_password, password = userinfo.partition(":")
    return (
        urllib.parse.unquote(username) or None,
        urllib.parse.unquote(password) if has_password else None,
    )
