"""Errors raised by the CCM bridge."""

import typing as tp


class BridgeError(Exception):
    """Base class for all bridge errors."""


class ConfigurationError(BridgeError):
    """Invalid bridge configuration."""


class TransportError(BridgeError):
    """Command could not be executed (process spawn failure, SSH session failure)."""


class ToolReportedFailure(BridgeError):
    """Command was executed, but `ccm` reported a failure in its output."""

    def __init__(self, msg: str, *, argv: tp.Sequence[str] = (), output: str = "") -> None:
        super().__init__(msg)
        self.argv = list(argv)
        self.output = output


class CapacityError(BridgeError):
    """No free node slot is left in the active cluster."""


class NoActiveClusterError(BridgeError):
    """Operation requires an active cluster, but there is none."""


class ParseError(BridgeError):
    """Output of `ccm` couldn't be parsed."""


class StatusParseError(ParseError):
    """Output of `ccm status` violates the expected shape."""


class VersionParseError(ParseError):
    """Engine version couldn't be determined."""


class NotReadyTimeout(BridgeError):
    """Node or cluster didn't reach the expected state within the configured retries.

    Most readiness checks report this as `False`; it is raised only where a boolean result
    can't be returned.
    """
