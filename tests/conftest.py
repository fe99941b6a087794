"""Shared fixtures."""

import pytest

from support import FakeTransport


@pytest.fixture
def fake_transport():
    return FakeTransport()
