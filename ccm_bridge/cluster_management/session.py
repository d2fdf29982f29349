"""SSH session used for executing `ccm` commands on a remote host.

The session is established lazily on the first command and kept open for the lifetime of the
bridge. Every command runs on its own channel; the channel is drained of both stdout and stderr
before the command output is returned.
"""

import io
import logging
import pathlib as pl
import select
import threading
import typing as tp

import paramiko

from ccm_bridge import exceptions
from ccm_bridge.utils import configuration

LOGGER = logging.getLogger(__name__)

RECV_BUFFER_SIZE = 4096
# Seconds to wait for the channel to become readable before checking the exit status again
SELECT_TIMEOUT = 1.0

_KEY_CLASSES: tuple[type[paramiko.PKey], ...] = (
    paramiko.RSAKey,
    paramiko.Ed25519Key,
    paramiko.ECDSAKey,
)


def load_private_key(private_key: str, *, passphrase: str = "") -> paramiko.PKey:
    """Load private key from a key file or from the key text itself."""
    is_file = "\n" not in private_key and pl.Path(private_key).expanduser().is_file()

    for key_cls in _KEY_CLASSES:
        try:
            if is_file:
                return key_cls.from_private_key_file(
                    str(pl.Path(private_key).expanduser()), password=passphrase or None
                )
            return key_cls.from_private_key(io.StringIO(private_key), password=passphrase or None)
        except paramiko.SSHException:
            continue

    msg = "Unable to load the private key, unsupported key type or wrong passphrase."
    raise exceptions.TransportError(msg)


class SessionManager:
    """Owner of the authenticated SSH session to the remote CCM host."""

    def __init__(
        self,
        *,
        host: str,
        port: int = 22,
        username: str = "",
        password: str = "",
        authentication_type: configuration.AuthenticationType = (
            configuration.AuthenticationType.USERNAME_PASSWORD
        ),
        public_key: str = "",
        private_key: str = "",
        connect_timeout: float = configuration.CONNECT_TIMEOUT,
        client_factory: tp.Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.authentication_type = authentication_type
        self.public_key = public_key
        self.private_key = private_key
        self.connect_timeout = connect_timeout
        self._client_factory = client_factory

        self._client: paramiko.SSHClient | None = None
        # The channel doesn't support multiplexing, only one command can be executed at a time
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: configuration.BridgeConfig) -> "SessionManager":
        return cls(
            host=config.host,
            port=config.port,
            username=config.username,
            password=config.password,
            authentication_type=tp.cast(
                configuration.AuthenticationType, config.authentication_type
            ),
            public_key=config.public_key,
            private_key=config.private_key,
            connect_timeout=config.connect_timeout,
        )

    @property
    def is_established(self) -> bool:
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return bool(transport and transport.is_active())

    def _connect_kwargs(self) -> dict[str, tp.Any]:
        kwargs: dict[str, tp.Any] = {
            "hostname": self.host,
            "port": self.port,
            "username": self.username,
            "timeout": self.connect_timeout,
            "allow_agent": False,
            "look_for_keys": False,
        }
        if self.authentication_type == configuration.AuthenticationType.PUBLIC_KEY:
            # The public part is derived from the private key by paramiko
            kwargs["pkey"] = load_private_key(self.private_key, passphrase=self.password)
        else:
            kwargs["password"] = self.password
        return kwargs

    def establish(self) -> None:
        """Establish the SSH session, if not established already."""
        if self.is_established:
            return

        self.close()
        LOGGER.info(f"Establishing SSH session to '{self.username}@{self.host}:{self.port}'.")

        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(**self._connect_kwargs())
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            msg = f"Failed to establish SSH session to '{self.host}:{self.port}': {exc}"
            raise exceptions.TransportError(msg) from exc

        self._client = client

    def _read_channel(self, channel: paramiko.Channel) -> str:
        """Read stdout and stderr of the channel until the remote command finishes.

        The order of stdout and stderr chunks is not guaranteed.
        """
        chunks: list[bytes] = []
        while True:
            select.select([channel], [], [], SELECT_TIMEOUT)

            while channel.recv_ready():
                chunks.append(channel.recv(RECV_BUFFER_SIZE))
            while channel.recv_stderr_ready():
                chunks.append(channel.recv_stderr(RECV_BUFFER_SIZE))

            if (
                channel.exit_status_ready()
                and not channel.recv_ready()
                and not channel.recv_stderr_ready()
            ):
                break

        return b"".join(chunks).decode(errors="replace")

    def execute(self, command: str) -> str:
        """Execute command on the remote host and return its combined output."""
        with self._lock:
            self.establish()
            assert self._client is not None
            transport = self._client.get_transport()
            if transport is None:
                msg = f"SSH session to '{self.host}' is not available."
                raise exceptions.TransportError(msg)

            LOGGER.debug("Running `%s` on '%s'", command, self.host)
            try:
                channel = transport.open_session()
                try:
                    channel.exec_command(command)
                    output = self._read_channel(channel)
                    retcode = channel.recv_exit_status()
                finally:
                    channel.close()
            except (paramiko.SSHException, EOFError, OSError) as exc:
                # The session is not usable anymore, it will be re-established on next command
                self.close()
                msg = f"SSH session to '{self.host}' failed while running `{command}`: {exc}"
                raise exceptions.TransportError(msg) from exc

            # Channel closed without exit status, the output may be truncated
            if retcode == -1 or not transport.is_active():
                self.close()
                msg = f"SSH session to '{self.host}' was lost while running `{command}`."
                raise exceptions.TransportError(msg)

        LOGGER.debug("Command `%s` finished with return code %s", command, retcode)
        return output

    def close(self) -> None:
        """Tear down the SSH session."""
        if self._client is None:
            return
        LOGGER.debug(f"Closing SSH session to '{self.host}'.")
        client, self._client = self._client, None
        client.close()

    def __enter__(self) -> "SessionManager":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
