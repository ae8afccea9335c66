"""Shared pytest fixtures."""

from __future__ import annotations

import os

import pytest

from streamrelay.orchestration.events import EventRecorder
from streamrelay.orchestration.profiles import ModelProfile


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def plain_profile() -> ModelProfile:
    return ModelProfile(model_id="gpt-4o-mini", provider="openai", vision=True)


@pytest.fixture(autouse=True)
def _isolate_streamrelay_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("STREAMRELAY_"):
            monkeypatch.delenv(name, raising=False)
