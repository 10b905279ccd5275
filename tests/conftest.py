from __future__ import annotations

import os

import pytest

from helpers import FakeBackend


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Keep tests deterministic and isolated from developer machine env.
    """
    for k in list(os.environ.keys()):
        if k.startswith("APPLYDESK_"):
            monkeypatch.delenv(k, raising=False)


@pytest.fixture
async def backend():
    fake = FakeBackend()
    await fake.start()
    yield fake
    await fake.close()
