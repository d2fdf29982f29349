import functools
import logging
import time

from ccm_bridge.utils import configuration


@functools.cache
def framework_logger() -> logging.Logger:
    """Get logger for the lifecycle events log file.

    It can be used for logging (and later reporting) events like creating or removing a cluster,
    or a failure to bring a cluster up. The file is written only when `CCM_BRIDGE_FRAMEWORK_LOG`
    is set.
    """

    class UTCFormatter(logging.Formatter):
        converter = time.gmtime  # type: ignore[assignment]

    logger = logging.getLogger("ccm_bridge.framework")
    logger.setLevel(logging.INFO)

    if configuration.FRAMEWORK_LOG:
        formatter = UTCFormatter("%(asctime)s %(levelname)s %(message)s")
        handler = logging.FileHandler(configuration.FRAMEWORK_LOG)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger
