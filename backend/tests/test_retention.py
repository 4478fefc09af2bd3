"""Retention purge: never touches the visibility window, supports dry-run."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from conftest import T0
from database import build_engine, build_session_factory, init_schema
from modules.report_store import ReportStore
from modules.retention import purge_expired, retention_cutoff
from schemas import Location, ReportDraft

import config
import purge


def _insert(store, created_at):
    return store.insert(
        ReportDraft(
            location=Location(latitude=4.711, longitude=-74.0721),
            created_at=created_at,
            author_token="device-alpha",
        )
    )


def test_cutoff_never_inside_visibility_window(manager) -> None:
    assert retention_cutoff(manager, timedelta(minutes=30), T0) == T0 - timedelta(hours=2)
    assert retention_cutoff(manager, timedelta(hours=24), T0) == T0 - timedelta(hours=24)


def test_dry_run_counts_without_deleting(manager, store) -> None:
    _insert(store, T0 - timedelta(days=3))
    _insert(store, T0 - timedelta(hours=1))
    assert purge_expired(manager, timedelta(hours=24), T0, dry_run=True) == 1
    assert store.count_created_before(T0) == 2


def test_purge_removes_only_old_reports(manager, store) -> None:
    _insert(store, T0 - timedelta(days=3))
    recent = _insert(store, T0 - timedelta(hours=3))
    assert purge_expired(manager, timedelta(hours=24), T0) == 1
    assert [r.id for r in store.query_range(T0 - timedelta(days=30))] == [recent]


def test_cli_purges_configured_database(tmp_path, monkeypatch, capsys) -> None:
    db_url = f"sqlite:///{tmp_path / 'retenes.db'}"
    engine = build_engine(db_url)
    init_schema(engine)
    store = ReportStore(build_session_factory(engine))
    now = datetime.now(timezone.utc)
    _insert(store, now - timedelta(days=3))
    _insert(store, now - timedelta(minutes=5))

    monkeypatch.setenv("DATABASE_URL", db_url)
    config.get_settings.cache_clear()
    try:
        assert purge.main(["--hours", "24", "--dry-run"]) == 0
        assert "Would purge 1 reports" in capsys.readouterr().out
        assert purge.main(["--hours", "24"]) == 0
        assert "Purged 1 reports" in capsys.readouterr().out
    finally:
        config.get_settings.cache_clear()

    assert store.count_created_before(now + timedelta(minutes=1)) == 1
    engine.dispose()
