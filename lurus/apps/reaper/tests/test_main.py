"""Reaper entry point: node gating and database URL resolution."""

import pytest

from lurus_reaper import main as reaper_main


@pytest.fixture
def ready_file(tmp_path, monkeypatch):
    path = tmp_path / "reaper-ready"
    path.write_text("stale\n")
    monkeypatch.setattr(reaper_main, "READY_FILE", path)
    return path


def test_slave_node_exits_without_database(monkeypatch, ready_file):
    monkeypatch.setenv("NODE_TYPE", "slave")

    def no_engine(*args, **kwargs):
        raise AssertionError("slave must not connect")

    monkeypatch.setattr(reaper_main, "build_engine", no_engine)

    assert reaper_main.main() is None
    assert not ready_file.exists()


def test_database_url_from_env(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db:5432/lurus")

    assert reaper_main.resolve_database_url() == "postgresql://u:p@db:5432/lurus"


def test_database_url_required_in_production(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("LURUS_ENV", "prod")

    with pytest.raises(RuntimeError):
        reaper_main.resolve_database_url()


def test_database_url_default_outside_production(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("LURUS_ENV", "dev")

    assert reaper_main.resolve_database_url().startswith("postgresql://")
