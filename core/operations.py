import logging
from contextlib import contextmanager
from typing import Any, Iterator

import XenAPI

from core.errors import NotFound, UpstreamError, XenServerError
from core.logger import log_event
from core.metrics import record_operation

# XenAPI error codes meaning "no object with that uuid / reference"
NOT_FOUND_CODES = {"UUID_INVALID", "HANDLE_INVALID"}


def translate_failure(operation: str, description: str, error: BaseException) -> UpstreamError:
    if isinstance(error, XenAPI.Failure) and error.details and error.details[0] in NOT_FOUND_CODES:
        return NotFound(f"Not found while {description}: {error.details}", operation, error)
    return UpstreamError(f"Error {description}: {error}", operation, error)


@contextmanager
def xen_operation(sessions, operation: str, description: str, tag: str = "xen") -> Iterator[Any]:
    """
    Run one gateway operation inside a session taken from ``sessions``.

    Yields the XenAPI proxy. The session is released on every path; errors
    are logged with ``description`` and re-raised as XenServerError
    subclasses (remote failures wrapped in UpstreamError / NotFound).
    """
    try:
        with sessions.session() as xen:
            yield xen.api
    except XenServerError as e:
        record_operation(operation, "error")
        log_event(f"[{tag}] Error {description}: {e}", logging.ERROR)
        raise
    except Exception as e:  # noqa: BLE001
        record_operation(operation, "error")
        log_event(f"[{tag}] Error {description}: {e}", logging.ERROR)
        raise translate_failure(operation, description, e) from e
    else:
        record_operation(operation, "success")
