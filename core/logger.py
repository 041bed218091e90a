import logging
import sys

from config.settings import LOG_FILE, LOG_LEVEL, LOG_TO_STDOUT

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

handlers = [logging.FileHandler(LOG_FILE, encoding="utf-8")]
if LOG_TO_STDOUT:
    # containers usually collect stdout rather than files
    handlers.append(logging.StreamHandler(sys.stdout))

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format=LOG_FORMAT,
    handlers=handlers,
)

logger = logging.getLogger("xen-gateway")


def log_event(message: str, level: int = logging.INFO) -> None:
    """
    Record one gateway event, tagged like "[vm] ..." or "[xen] ...",
    in xen-gateway.log (and on stdout when LOG_TO_STDOUT is set).
    """
    logger.log(level, message)
