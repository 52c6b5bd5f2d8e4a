"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, List, Optional

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


class ScriptedEngine:
    """Engine that streams fixed fragments and records the history it saw."""

    def __init__(self, fragments: List[str], delay: float = 0.0, fail_after: Optional[int] = None):
        self.fragments = list(fragments)
        self.delay = delay
        self.fail_after = fail_after
        self.histories: List[List[dict]] = []

    async def invoke(self, history):
        self.histories.append([dict(m) for m in history])
        for i, fragment in enumerate(self.fragments):
            if self.fail_after is not None and i == self.fail_after:
                raise RuntimeError("calendar tool unavailable")
            if self.delay:
                await asyncio.sleep(self.delay)
            yield fragment


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for session files during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    monkeypatch.delenv("CHAT_RELAY_CONFIG", raising=False)
    for var in list(os.environ):
        if var.startswith("CHAT_RELAY__"):
            monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture(scope="function")
def missing_config(tmp_path: Path, clean_env) -> str:
    """A config path that does not exist, so built-in defaults apply."""
    return str(tmp_path / "absent.yaml")


def collect_turn(ws: Any, limit: int = 50) -> List[dict]:
    """Receive frames until (and including) the next done or error frame."""
    frames: List[dict] = []
    for _ in range(limit):
        frame = ws.receive_json()
        frames.append(frame)
        if frame["type"] in ("done", "error"):
            return frames
    raise AssertionError(f"no terminal frame within {limit} frames: {frames}")
