"""Pytest configuration and shared fixtures.

WHAT THIS FILE PROVIDES:
- config: SyncConfig with test defaults
- fleet: FakeFleet client factory
- sync: AlarmSync wired to a three-node fake fleet (node-a, node-b, node-c)
"""
import logging

import pytest

from alarmsync.client import AlarmSync
from fixtures import FakeFleet, make_config

logger = logging.getLogger(__name__)

ADDRS = ('node-a', 'node-b', 'node-c')


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def fleet():
    return FakeFleet()


@pytest.fixture
def sync(config, fleet):
    """Engine over three reachable fake nodes.
    """
    engine = AlarmSync(ADDRS, config=config, client_factory=fleet)
    yield engine
    engine.stop()
