from __future__ import annotations

import pytest
from pydantic import ValidationError

from dashsync.core.config import Settings, get_settings


def test_realtime_invalidate_mode_rejects_unknown_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REALTIME_INVALIDATE_MODE", "mark-stale")
    with pytest.raises(ValidationError):
        Settings()


def test_realtime_invalidate_mode_accepts_mark_stale(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REALTIME_INVALIDATE_MODE", "mark_stale")
    assert get_settings().realtime_invalidate_mode == "mark_stale"
    assert Settings(realtime_invalidate_mode="remove").realtime_invalidate_mode == "remove"
