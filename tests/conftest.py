from __future__ import annotations

import os
from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _isolate_tasksync_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for key in list(os.environ):
        if key.startswith("TASKSYNC_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("TASKSYNC_CONFIG", str(tmp_path / "config.json"))
    monkeypatch.setenv("TASKSYNC_DATA_DIR", str(tmp_path / "data"))
