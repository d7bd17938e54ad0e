from __future__ import annotations

import pytest

from capk.models.settings import ReconcilerSettings
from capk.tests.fakes import FakeKubeClient


@pytest.fixture
def client() -> FakeKubeClient:
    """Management cluster."""
    return FakeKubeClient()


@pytest.fixture
def workload() -> FakeKubeClient:
    """Workload cluster."""
    return FakeKubeClient()


@pytest.fixture
def settings() -> ReconcilerSettings:
    return ReconcilerSettings()
