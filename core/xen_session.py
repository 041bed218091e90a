import errno
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, List, Optional

import XenAPI

from core.errors import (
    ConfigError,
    ConnectionFailure,
    SessionPoolExhausted,
    XenConnectionError,
    XenServerError,
)
from core.logger import log_event
from core.metrics import (
    record_session_closed,
    record_session_failure,
    record_session_opened,
)


API_VERSION = "1.0"
ORIGINATOR = "xen-gateway"

REQUIRED_FIELDS = ("host", "username", "password")


@dataclass(frozen=True)
class XenServerConfig:
    host: str
    username: str
    password: str
    verify_ssl: bool = True

    @property
    def url(self) -> str:
        if "://" in self.host:
            return self.host
        return f"https://{self.host}"


class XenSession:
    """
    Handle to one logged-in XenAPI session.

    Created per operation (or per pool slot) and passed explicitly; there
    is no process-wide session reference.
    """

    def __init__(self, config: XenServerConfig, handle: Any = None) -> None:
        self.host = config.host
        self.username = config.username
        self._handle = handle

    @property
    def connected(self) -> bool:
        return self._handle is not None

    @property
    def api(self) -> Any:
        if self._handle is None:
            raise XenConnectionError(f"No active XenAPI session for {self.host}")
        return self._handle.xenapi

    def __repr__(self) -> str:
        state = "connected" if self.connected else "disconnected"
        return f"<XenSession {self.username}@{self.host} {state}>"


def validate_server_config(config: XenServerConfig) -> None:
    for field in REQUIRED_FIELDS:
        if not getattr(config, field, None):
            raise ConfigError(f"Missing required field: {field}")


def classify_connection_failure(error: BaseException) -> ConnectionFailure:
    if isinstance(error, OSError) and error.errno == errno.ECONNREFUSED:
        return ConnectionFailure.REFUSED
    if isinstance(error, ConnectionRefusedError):
        return ConnectionFailure.REFUSED
    if isinstance(error, XenAPI.Failure) and error.details:
        if error.details[0] == "SESSION_AUTHENTICATION_FAILED":
            return ConnectionFailure.AUTH_FAILED
    if "authentication" in str(error).lower():
        return ConnectionFailure.AUTH_FAILED
    return ConnectionFailure.TRANSPORT


def _describe_failure(cause: ConnectionFailure, config: XenServerConfig, error: BaseException) -> str:
    if cause is ConnectionFailure.REFUSED:
        return f"Connection to {config.host} refused. Please check the host and network."
    if cause is ConnectionFailure.AUTH_FAILED:
        return f"Authentication as {config.username} failed. Please check your username and password."
    return f"Failed to connect to XenServer {config.host}: {error}"


def open_session(
    config: XenServerConfig,
    session_factory: Optional[Callable[..., Any]] = None,
) -> XenSession:
    """
    Validate ``config`` and log in to the XenAPI endpoint.

    Raises ConfigError before any network activity when host, username or
    password is missing, and XenConnectionError (with a classified cause)
    when the login itself fails.
    """
    try:
        validate_server_config(config)
    except ConfigError as e:
        log_event(f"[xen] Configuration error: {e}", logging.ERROR)
        raise

    factory = session_factory or XenAPI.Session
    try:
        handle = factory(config.url, ignore_ssl=not config.verify_ssl)
        handle.xenapi.login_with_password(config.username, config.password, API_VERSION, ORIGINATOR)
    except Exception as e:  # noqa: BLE001
        cause = classify_connection_failure(e)
        record_session_failure(cause.value)
        log_event(f"[xen] {_describe_failure(cause, config, e)}", logging.ERROR)
        raise XenConnectionError(f"Connection failed: {e}", cause=cause) from e

    record_session_opened()
    log_event(f"[xen] Connected to XenServer {config.host} as {config.username}")
    return XenSession(config, handle)


def close_session(session: Optional[XenSession]) -> None:
    """
    Log out of ``session``. Logout failures are logged, never raised, and
    the handle is cleared whatever happens.
    """
    if session is None or not session.connected:
        return
    try:
        session._handle.xenapi.session.logout()
        log_event(f"[xen] Disconnected from XenServer {session.host}")
    except Exception as e:  # noqa: BLE001
        log_event(f"[xen] Error disconnecting from XenServer {session.host}: {e}", logging.WARNING)
    finally:
        session._handle = None
        record_session_closed()


def _is_reusable_after(error: BaseException) -> bool:
    if isinstance(error, XenAPI.Failure):
        return not (error.details and error.details[0] == "SESSION_INVALID")
    return isinstance(error, XenServerError)


class SessionManager:
    """
    Opens a brand new session for every operation and logs it out again
    when the operation finishes.
    """

    def __init__(
        self,
        config: XenServerConfig,
        session_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.config = config
        self.session_factory = session_factory

    @contextmanager
    def session(self) -> Iterator[XenSession]:
        xen = open_session(self.config, self.session_factory)
        try:
            yield xen
        finally:
            close_session(xen)

    def close(self) -> None:
        """Nothing to release: every session is logged out when its operation ends."""


class SessionPool:
    """
    Keeps up to ``size`` logged-in sessions and hands them out with
    explicit checkout/checkin.

    - Idle sessions are reused most-recently-returned first.
    - New sessions are opened lazily while fewer than ``size`` exist.
    - When every session is busy, checkout waits up to ``checkout_timeout``
      seconds for a session to come back or a slot to free up, then raises
      SessionPoolExhausted.
    - After close(), returned sessions are logged out instead of kept.
    """

    def __init__(
        self,
        config: XenServerConfig,
        size: int,
        checkout_timeout: float = 30.0,
        session_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        if size < 1:
            raise ValueError("SessionPool size must be at least 1")
        self.config = config
        self.size = size
        self.checkout_timeout = checkout_timeout
        self.session_factory = session_factory
        self._idle: List[XenSession] = []
        self._available = threading.Condition()
        self._created = 0
        self._closed = False

    @property
    def created(self) -> int:
        return self._created

    @property
    def idle(self) -> int:
        return len(self._idle)

    def _ready(self) -> bool:
        return bool(self._idle) or self._created < self.size

    def checkout(self) -> XenSession:
        with self._available:
            if not self._available.wait_for(self._ready, timeout=self.checkout_timeout):
                log_event(
                    f"[xen] No session available after {self.checkout_timeout}s (pool size={self.size})",
                    logging.WARNING,
                )
                raise SessionPoolExhausted("No XenAPI session available, try again later")
            if self._idle:
                return self._idle.pop()
            # reserve the slot before logging in outside the lock
            self._created += 1

        try:
            return open_session(self.config, self.session_factory)
        except Exception:
            with self._available:
                self._created -= 1
                self._available.notify()
            raise

    def checkin(self, session: XenSession, discard: bool = False) -> None:
        with self._available:
            keep = not (discard or self._closed or not session.connected)
            if keep:
                self._idle.append(session)
            else:
                self._created -= 1
            self._available.notify()

        if not keep:
            close_session(session)
            log_event(f"[xen] Discarded pooled session for {session.host}")

    @contextmanager
    def session(self) -> Iterator[XenSession]:
        xen = self.checkout()
        reusable = True
        try:
            yield xen
        except BaseException as e:
            reusable = _is_reusable_after(e)
            raise
        finally:
            self.checkin(xen, discard=not reusable)

    def close(self) -> None:
        with self._available:
            self._closed = True
            idle, self._idle = self._idle, []
            self._created -= len(idle)
            self._available.notify_all()
        for xen in idle:
            close_session(xen)
        log_event("[xen] Session pool closed")
