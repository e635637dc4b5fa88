# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""configure unit tests."""

from datetime import datetime, timedelta, timezone

import pytest
from mocks import FakeStore  # pylint: disable=import-error

from mesh_trust.certificate import Certificate
from mesh_trust.k8s.mrc_client import MRCClient
from mesh_trust.providers.tresor import TresorIssuer, new_ca


@pytest.fixture(scope="session")
def ca() -> Certificate:
    """A root CA shared by the whole test session."""
    return new_ca(key_bit_size=2048)


@pytest.fixture(scope="session")
def other_ca() -> Certificate:
    """A second, unrelated root CA."""
    return new_ca(common_name="Other Mesh Authority", key_bit_size=2048)


@pytest.fixture
def tresor_issuer(ca):
    """Issuer signing with the session CA."""
    return TresorIssuer(ca, key_bit_size=2048)


@pytest.fixture
def store():
    """An empty in-memory store."""
    return FakeStore()


class TickingClock:
    """Clock advancing one second on every read."""

    def __init__(self, start: datetime):
        """Initialise the clock at start."""
        self.now = start

    def __call__(self) -> datetime:
        """Return the next instant."""
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def clock():
    """Monotonic clock used to stamp status transitions."""
    return TickingClock(datetime(2025, 1, 1, tzinfo=timezone.utc))


@pytest.fixture
def mrc_client(store, clock):
    """MRC client over the in-memory store."""
    return MRCClient(store, clock=clock)
