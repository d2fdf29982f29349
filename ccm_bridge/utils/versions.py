"""Cassandra and DSE engine versions."""

import functools
import re
import typing as tp

from packaging import version

from ccm_bridge import exceptions

# Prefixes used when referring to a version built from ASF/GitHub sources
_SOURCE_PREFIXES = ("git:", "cassandra-", "dse-")

_VERSION_RE = re.compile(r"\d+(\.\d+){1,3}([-.~]?[A-Za-z]+[-.]?\d*)?(-SNAPSHOT)?")

# Markers preceding the version in outputs of the version reporting commands
RELEASE_VERSION_MARKER = "ReleaseVersion:"
DSE_VERSION_MARKER = "DSE version:"


@functools.total_ordering
class EngineVersion:
    """Version of the database engine.

    The version text is kept so it can be passed verbatim to `ccm`, comparisons are done
    on the parsed (major, minor, patch, ...) value.
    """

    def __init__(self, text: str) -> None:
        self.text = text.strip()

        stripped = self.text
        for prefix in _SOURCE_PREFIXES:
            stripped = stripped.removeprefix(prefix)
        stripped = stripped.removesuffix("-SNAPSHOT")

        try:
            self.parsed = version.Version(stripped)
        except version.InvalidVersion as exc:
            msg = f"Invalid engine version: '{text}'"
            raise exceptions.VersionParseError(msg) from exc

    @property
    def major(self) -> int:
        return self.parsed.major

    @property
    def minor(self) -> int:
        return self.parsed.minor

    @property
    def patch(self) -> int:
        return self.parsed.micro

    def _coerce(self, other: tp.Any) -> version.Version | None:
        if isinstance(other, EngineVersion):
            return other.parsed
        if isinstance(other, str):
            return EngineVersion(other).parsed
        if isinstance(other, version.Version):
            return other
        return None

    def __eq__(self, other: object) -> bool:
        parsed = self._coerce(other)
        if parsed is None:
            return NotImplemented
        return self.parsed == parsed

    def __lt__(self, other: tp.Any) -> bool:
        parsed = self._coerce(other)
        if parsed is None:
            return NotImplemented
        return self.parsed < parsed

    def __hash__(self) -> int:
        return hash(self.parsed)

    def __str__(self) -> str:
        return self.text

    def __repr__(self) -> str:
        return f"<EngineVersion: {self.text}>"


# DSE major.minor -> version of the bundled Cassandra
DSE_CASSANDRA_MAP: tp.Final[dict[tuple[int, int], str]] = {
    (4, 5): "2.0",
    (4, 6): "2.0",
    (4, 7): "2.1",
    (4, 8): "2.1",
    (5, 0): "3.0",
    (5, 1): "3.11",
    (6, 0): "4.0",
    (6, 7): "4.0",
    (6, 8): "4.0",
}


def get_dse_cassandra_version(dse_version: EngineVersion) -> EngineVersion:
    """Return version of Cassandra bundled with the given DSE version."""
    cass_version = DSE_CASSANDRA_MAP.get((dse_version.major, dse_version.minor))
    if cass_version:
        return EngineVersion(cass_version)

    # Use the closest older known DSE release
    known = sorted(k for k in DSE_CASSANDRA_MAP if k <= (dse_version.major, dse_version.minor))
    if not known:
        msg = f"Unsupported DSE version: '{dse_version}'"
        raise exceptions.VersionParseError(msg)
    return EngineVersion(DSE_CASSANDRA_MAP[known[-1]])


def parse_version_output(output: str, *, markers: tp.Iterable[str] = ()) -> EngineVersion:
    """Parse engine version from output of a version reporting command.

    The version is searched after any of the `markers`; when no marker is present, the first
    version-like token in the output is used.
    """
    for marker in markers:
        marker_idx = output.find(marker)
        if marker_idx == -1:
            continue
        remainder = output[marker_idx + len(marker) :].strip()
        version_str = remainder.split()[0] if remainder else ""
        if version_str:
            return EngineVersion(version_str)

    match = _VERSION_RE.search(output)
    if not match:
        msg = f"Unable to find version information in output: {output.strip()!r}"
        raise exceptions.VersionParseError(msg)

    return EngineVersion(match.group(0))
