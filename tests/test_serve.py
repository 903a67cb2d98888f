from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from backend.serveai.scripts import serve


def _capture_run(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, dict[str, Any]]]:
    calls: list[tuple[str, dict[str, Any]]] = []

    def _run(app: str, **kwargs: Any) -> None:
        calls.append((app, kwargs))

    monkeypatch.setattr(serve.uvicorn, "run", _run)
    return calls


def test_serve_uses_configured_bind_address(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("SHIMMYSERVE_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("SHIMMYSERVE_HOST", "0.0.0.0")
    monkeypatch.setenv("SHIMMYSERVE_PORT", "8088")
    calls = _capture_run(monkeypatch)

    serve.main([])

    assert calls == [
        (
            "backend.serveai.main:app",
            {"host": "0.0.0.0", "port": 8088, "reload": False, "log_config": None},
        )
    ]


def test_serve_flags_override_settings(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("SHIMMYSERVE_DATA_DIR", str(tmp_path))
    calls = _capture_run(monkeypatch)

    serve.main(["--host", "::1", "--port", "9000", "--reload"])

    _, options = calls[0]
    assert options["host"] == "::1"
    assert options["port"] == 9000
    assert options["reload"] is True
