"""Shared fixtures for anisync tests."""

from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture()
def base_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Redirect all anisync runtime files to a temporary directory.

    Patches ``anisync.config.get_base_dir`` so that nothing touches the real
    ``~/.anisync/``.
    """
    fake_base = tmp_path / ".anisync"
    fake_base.mkdir()
    (fake_base / "logs").mkdir()

    monkeypatch.setattr("anisync.config.get_base_dir", lambda: fake_base)

    return fake_base
