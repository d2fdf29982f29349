import contextlib
import logging
import typing as tp

from filelock import FileLock

from ccm_bridge.utils import types as ttypes

# Suppress messages from filelock
logging.getLogger("filelock").setLevel(logging.WARNING)


def ccm_lock(lock_file: ttypes.FileType) -> tp.ContextManager:
    """Return lock serializing `ccm` invocations.

    `ccm` keeps the active cluster in a file shared by all processes on the host, so commands of
    several bridges running on the same host need to be serialized. Use dummy locking when no
    lock file is configured.
    """
    if not lock_file:
        return contextlib.nullcontext()
    return FileLock(str(lock_file))
