"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


class SpyModel:
    """Chat model stub that records every message list it receives."""

    provider = "spy"

    def __init__(self, reply: str = "ok"):
        self.reply = reply
        self.calls: List[List[Dict[str, str]]] = []

    def chat(self, messages: List[Dict[str, str]]) -> str:
        self.calls.append([dict(m) for m in messages])
        return self.reply

    @property
    def last_messages(self) -> Optional[List[Dict[str, str]]]:
        return self.calls[-1] if self.calls else None


@pytest.fixture(scope="function")
def spy_model() -> SpyModel:
    return SpyModel(reply="Hello from the assistant")


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for conversation files during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function", autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""

    for var in list(os.environ):
        if var.startswith("ASSISTANT_SERVER"):
            monkeypatch.delenv(var, raising=False)
    for var in ["CLOUDFLARE_ACCOUNT_ID", "CLOUDFLARE_API_TOKEN", "OPENAI_API_KEY"]:
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture(scope="function")
def config_file(tmp_path: Path, tmp_data_dir: Path) -> Path:
    """A config pointing storage at the temporary data dir."""
    path = tmp_path / "config.yaml"
    path.write_text(f"memory:\n  data_dir: {tmp_data_dir.as_posix()}\n", encoding="utf-8")
    return path
