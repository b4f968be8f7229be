from __future__ import annotations

import pytest

from fakes import FakeRuntime, make_loader
from model_manager import ModelManager


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def manager():
    mgr = ModelManager(loader=make_loader(), grace_seconds=0.0)
    yield mgr
    mgr.close()
