"""Tests for gunicorn configuration."""
from __future__ import annotations

import importlib.util
import os
from unittest.mock import patch


def _load(name: str = "gunicorn_conf"):
    spec = importlib.util.spec_from_file_location(name, "gunicorn.conf.py")
    assert spec is not None
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)  # type: ignore[union-attr]
    return mod


class TestGunicornConfig:
    def test_config_loads(self) -> None:
        mod = _load()
        for attr in ("bind", "workers", "worker_class", "timeout", "max_requests"):
            assert hasattr(mod, attr)

    def test_default_bind(self) -> None:
        assert "8001" in _load().bind

    def test_worker_class_is_uvicorn(self) -> None:
        assert "uvicorn" in _load().worker_class

    def test_env_override_workers(self) -> None:
        with patch.dict(os.environ, {"GUNICORN_WORKERS": "4"}):
            assert _load("gunicorn_conf_custom").workers == 4

    def test_proc_name(self) -> None:
        assert _load().proc_name == "billing_engine"
