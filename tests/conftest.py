"""Shared fixtures: XenAPI doubles and session providers that never touch the network."""

from __future__ import annotations

import os
import tempfile

# keep test runs from writing into the project log directory
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="xen-gateway-tests-"))

from contextlib import contextmanager  # noqa: E402
from types import SimpleNamespace  # noqa: E402
from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402

from core.xen_session import XenServerConfig  # noqa: E402


class FakeSessions:
    """Session provider handing out one shared XenAPI double, counting acquire/release."""

    def __init__(self, api, error: Exception | None = None) -> None:
        self.api = api
        self.error = error
        self.opened = 0
        self.closed = 0

    @contextmanager
    def session(self):
        if self.error is not None:
            raise self.error
        self.opened += 1
        try:
            yield SimpleNamespace(api=self.api)
        finally:
            self.closed += 1

    def close(self) -> None:
        pass


def make_session_factory(login_error: Exception | None = None, logout_error: Exception | None = None):
    """Return (factory, handle) standing in for XenAPI.Session."""
    handle = MagicMock(name="XenAPI.Session()")
    if login_error is not None:
        handle.xenapi.login_with_password.side_effect = login_error
    if logout_error is not None:
        handle.xenapi.session.logout.side_effect = logout_error
    factory = MagicMock(name="XenAPI.Session", return_value=handle)
    return factory, handle


@pytest.fixture
def server_config() -> XenServerConfig:
    return XenServerConfig(host="xen.lab.local", username="root", password="hunter2")


@pytest.fixture
def xenapi() -> MagicMock:
    return MagicMock(name="xenapi")


@pytest.fixture
def sessions(xenapi) -> FakeSessions:
    return FakeSessions(xenapi)
