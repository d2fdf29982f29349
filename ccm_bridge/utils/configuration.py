"""Bridge configuration.

Defaults are taken from environment variables, so the same test suite can be pointed at
a different engine version or a remote CCM host without code changes.
"""

import dataclasses
import enum
import ipaddress
import os
import typing as tp

from ccm_bridge import exceptions
from ccm_bridge.utils import versions

# Maximum number of nodes in a single cluster
NODE_LIMIT: tp.Final[int] = 6

NumT = tp.TypeVar("NumT", int, float)


class DeploymentType(enum.StrEnum):
    LOCAL = "local"
    REMOTE = "remote"


class AuthenticationType(enum.StrEnum):
    USERNAME_PASSWORD = "username_password"
    PUBLIC_KEY = "public_key"


class DseCredentialsType(enum.StrEnum):
    USERNAME_PASSWORD = "username_password"
    INI_FILE = "ini_file"


def _env_bool(name: str) -> bool:
    return (os.environ.get(name) or "").lower() in ("1", "true", "yes")


def get_env_number(name: str, default: NumT, convert: tp.Callable[[str], NumT] = int) -> NumT:
    """Return number from the environment variable, or the default when the variable is unset."""
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return convert(value)
    except ValueError as exc:
        msg = f"Invalid value of `{name}`: '{value}'"
        raise exceptions.ConfigurationError(msg) from exc


CASSANDRA_VERSION = os.environ.get("CCM_CASSANDRA_VERSION") or "3.4"
DSE_VERSION = os.environ.get("CCM_DSE_VERSION") or "4.8.5"
USE_GIT = _env_bool("CCM_USE_GIT")
USE_DSE = _env_bool("CCM_USE_DSE")
CLUSTER_PREFIX = os.environ.get("CCM_CLUSTER_PREFIX") or "cpp-driver"
DSE_CREDENTIALS = os.environ.get("CCM_DSE_CREDENTIALS") or DseCredentialsType.USERNAME_PASSWORD
DSE_USERNAME = os.environ.get("CCM_DSE_USERNAME") or ""
DSE_PASSWORD = os.environ.get("CCM_DSE_PASSWORD") or ""

# Execute CCM commands locally or on a remote host over SSH
DEPLOYMENT = os.environ.get("CCM_DEPLOYMENT") or DeploymentType.LOCAL
AUTHENTICATION = os.environ.get("CCM_AUTHENTICATION") or AuthenticationType.USERNAME_PASSWORD
HOST = os.environ.get("CCM_HOST") or "127.0.0.1"
PORT = get_env_number("CCM_PORT", 22)
USERNAME = os.environ.get("CCM_USERNAME") or "vagrant"
PASSWORD = os.environ.get("CCM_PASSWORD") or "vagrant"
PUBLIC_KEY = os.environ.get("CCM_PUBLIC_KEY") or ""
PRIVATE_KEY = os.environ.get("CCM_PRIVATE_KEY") or ""
CONNECT_TIMEOUT = get_env_number("CCM_CONNECT_TIMEOUT", 30.0, float)

CCM_EXECUTABLE = os.environ.get("CCM_EXECUTABLE") or "ccm"
SSL_PATH = os.environ.get("CCM_SSL_PATH") or "ssl"

# Readiness polling: number of status queries and delay between them
RETRIES = get_env_number("CCM_RETRIES", 100)
NAP_MS = get_env_number("CCM_NAP_MS", 100)

# Nodes are considered ready when their native transport port accepts connections
NATIVE_TRANSPORT_PORT = get_env_number("CCM_NATIVE_TRANSPORT_PORT", 9042)
NODE_CHECK_TIMEOUT = get_env_number("CCM_NODE_CHECK_TIMEOUT", 1.0, float)

# Serialize `ccm` invocations of multiple processes sharing the same host
LOCK_FILE = os.environ.get("CCM_BRIDGE_LOCK_FILE") or ""

FRAMEWORK_LOG = os.environ.get("CCM_BRIDGE_FRAMEWORK_LOG") or ""


def _to_enum(enum_cls: type[enum.StrEnum], value: tp.Any, field_name: str) -> tp.Any:
    try:
        return enum_cls(str(value).lower())
    except ValueError as exc:
        allowed = ", ".join(m.value for m in enum_cls)
        msg = f"Invalid {field_name}: '{value}' (allowed: {allowed})"
        raise exceptions.ConfigurationError(msg) from exc


@dataclasses.dataclass(frozen=True)
class BridgeConfig:
    """Construction-time settings of the bridge."""

    cassandra_version: str = CASSANDRA_VERSION
    dse_version: str = DSE_VERSION
    use_git: bool = USE_GIT
    use_dse: bool = USE_DSE
    cluster_prefix: str = CLUSTER_PREFIX
    dse_credentials_type: DseCredentialsType | str = DSE_CREDENTIALS
    dse_username: str = DSE_USERNAME
    dse_password: str = DSE_PASSWORD
    deployment_type: DeploymentType | str = DEPLOYMENT
    authentication_type: AuthenticationType | str = AUTHENTICATION
    host: str = HOST
    port: int = PORT
    username: str = USERNAME
    password: str = PASSWORD
    public_key: str = PUBLIC_KEY
    private_key: str = PRIVATE_KEY
    connect_timeout: float = CONNECT_TIMEOUT
    ccm_executable: str = CCM_EXECUTABLE
    ssl_path: str = SSL_PATH
    retries: int = RETRIES
    nap_ms: int = NAP_MS
    native_transport_port: int = NATIVE_TRANSPORT_PORT
    node_check_timeout: float = NODE_CHECK_TIMEOUT
    lock_file: str = LOCK_FILE

    def __post_init__(self) -> None:
        # Frozen dataclass, normalize the enum fields through `object.__setattr__`
        object.__setattr__(
            self,
            "dse_credentials_type",
            _to_enum(DseCredentialsType, self.dse_credentials_type, "DSE credentials type"),
        )
        object.__setattr__(
            self,
            "deployment_type",
            _to_enum(DeploymentType, self.deployment_type, "deployment type"),
        )
        object.__setattr__(
            self,
            "authentication_type",
            _to_enum(AuthenticationType, self.authentication_type, "authentication type"),
        )
        self._validate()

    def _validate(self) -> None:
        if not self.cluster_prefix or any(c.isspace() for c in self.cluster_prefix):
            msg = f"Invalid cluster prefix: '{self.cluster_prefix}'"
            raise exceptions.ConfigurationError(msg)

        try:
            ipaddress.IPv4Address(self.host)
        except ValueError as exc:
            msg = f"Invalid host, IPv4 address expected: '{self.host}'"
            raise exceptions.ConfigurationError(msg) from exc

        if not 0 < self.port < 65536:
            msg = f"Invalid port: {self.port}"
            raise exceptions.ConfigurationError(msg)

        if not 0 < self.native_transport_port < 65536:
            msg = f"Invalid native transport port: {self.native_transport_port}"
            raise exceptions.ConfigurationError(msg)

        if self.retries < 1:
            msg = f"Invalid number of retries: {self.retries}"
            raise exceptions.ConfigurationError(msg)

        if self.nap_ms < 0:
            msg = f"Invalid nap time: {self.nap_ms}"
            raise exceptions.ConfigurationError(msg)

        if not self.ccm_executable:
            msg = "The `ccm` executable is not set."
            raise exceptions.ConfigurationError(msg)

        if (
            self.deployment_type == DeploymentType.REMOTE
            and self.authentication_type == AuthenticationType.PUBLIC_KEY
            and not self.private_key
        ):
            msg = "Private key is required for public key authentication."
            raise exceptions.ConfigurationError(msg)

        for version_str in (self.cassandra_version, self.dse_version):
            try:
                versions.EngineVersion(version_str)
            except exceptions.VersionParseError as exc:
                raise exceptions.ConfigurationError(str(exc)) from exc

    @property
    def is_remote(self) -> bool:
        return self.deployment_type == DeploymentType.REMOTE

    def replace(self, **changes: tp.Any) -> "BridgeConfig":
        """Return copy of the configuration with the given fields replaced."""
        try:
            return dataclasses.replace(self, **changes)
        except TypeError as exc:
            msg = f"Unknown configuration option: {exc}"
            raise exceptions.ConfigurationError(msg) from exc
