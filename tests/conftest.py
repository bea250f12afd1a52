"""Shared fixtures: every test runs in an empty directory with no PM_ variables."""

import os
import sys

import pytest

# Ensure project root is on path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))


@pytest.fixture(autouse=True)
def isolated_workdir(monkeypatch, tmp_path):
    for name in list(os.environ):
        if name.startswith("PM_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def write_config(tmp_path):
    """Write a settings file relative to the working directory."""

    def _write(text: str, name: str = "configs/config.yaml"):
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path

    return _write
