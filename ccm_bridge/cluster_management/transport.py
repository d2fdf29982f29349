"""Transports for executing `ccm` commands locally or on a remote host."""

import abc
import logging
import shlex

from ccm_bridge.cluster_management import session
from ccm_bridge.utils import configuration
from ccm_bridge.utils import helpers
from ccm_bridge.utils import types as ttypes

LOGGER = logging.getLogger(__name__)


class CommandTransport(abc.ABC):
    """Executes argument vector and returns captured combined output."""

    @abc.abstractmethod
    def execute(self, argv: ttypes.ArgvType) -> str:
        """Execute command (`argv[0]` is the command, the rest are its arguments)."""

    def close(self) -> None:
        """Release resources held by the transport."""

    def __enter__(self) -> "CommandTransport":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


class LocalTransport(CommandTransport):
    """Executes commands as child processes on the local machine."""

    def __init__(self, *, workdir: ttypes.FileType = "") -> None:
        self.workdir = workdir

    def execute(self, argv: ttypes.ArgvType) -> str:
        return helpers.run_command(argv, workdir=self.workdir)


class RemoteTransport(CommandTransport):
    """Executes commands on a remote host over a persistent SSH session."""

    def __init__(self, session_manager: session.SessionManager) -> None:
        self.session_manager = session_manager

    def execute(self, argv: ttypes.ArgvType) -> str:
        if not argv:
            msg = "No command to run."
            raise ValueError(msg)
        # Quote every argument so it is passed to the remote command as a single token
        return self.session_manager.execute(shlex.join(str(a) for a in argv))

    def close(self) -> None:
        self.session_manager.close()


def get_transport(config: configuration.BridgeConfig) -> CommandTransport:
    """Return transport for the deployment type indicated by configuration."""
    if config.is_remote:
        LOGGER.debug(f"Using remote deployment on '{config.host}'.")
        return RemoteTransport(session.SessionManager.from_config(config))
    return LocalTransport()
