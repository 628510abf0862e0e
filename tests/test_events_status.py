import os

import pytest

from deployctl.events import EventTypes, emit_event, get_last_event, get_status_from_events, read_events
from deployctl.ids import new_run_id
from deployctl.state import (
    create_run_dir, get_deployctl_home, list_runs, read_run_json, write_run_json,
)


def test_status_progression_basic(tmp_path, monkeypatch):
    monkeypatch.setenv('DEPLOYCTL_HOME', str(tmp_path))
    run_id = new_run_id()
    create_run_dir(run_id)

    assert get_status_from_events(run_id) == "unknown"
    emit_event(run_id, EventTypes.RUN_START, {})
    assert get_status_from_events(run_id) == "queued"
    emit_event(run_id, EventTypes.PHASE_START, {"phase": "Deploying"})
    assert get_status_from_events(run_id) == "running"
    emit_event(run_id, EventTypes.HEALTH_ATTEMPT, {"attempt": 1})
    assert get_status_from_events(run_id) == "verifying"
    emit_event(run_id, EventTypes.ROLLBACK_START, {})
    assert get_status_from_events(run_id) == "rolling_back"
    emit_event(run_id, EventTypes.RUN_DONE, {"outcome": "rolled_back"})
    assert get_status_from_events(run_id) == "rolled_back"

    assert len(read_events(run_id)) == 5
    assert get_last_event(run_id)["type"] == EventTypes.RUN_DONE


def test_malformed_lines_skipped(tmp_path):
    run_id = new_run_id()
    emit_event(run_id, EventTypes.RUN_START, {}, home=str(tmp_path))
    with open(tmp_path / run_id / "logs.ndjson", "a") as f:
        f.write("not json\n")

    assert [e["type"] for e in read_events(run_id, home=str(tmp_path))] == [EventTypes.RUN_START]


def test_run_state_roundtrip(tmp_path):
    home = str(tmp_path)
    run_id = new_run_id()

    with pytest.raises(FileNotFoundError):
        read_run_json(run_id, home)
    write_run_json(run_id, {"id": run_id, "outcome": "success"}, home)
    assert read_run_json(run_id, home)["outcome"] == "success"
    assert list_runs(home) == [run_id]


def test_list_runs_ignores_other_dirs(tmp_path):
    (tmp_path / "r-20240101-000000-aaaa").mkdir()
    (tmp_path / "r-20240102-000000-bbbb").mkdir()
    (tmp_path / "scratch").mkdir()

    assert list_runs(str(tmp_path)) == ["r-20240102-000000-bbbb", "r-20240101-000000-aaaa"]


def test_home_override_wins(tmp_path, monkeypatch):
    monkeypatch.setenv('DEPLOYCTL_HOME', str(tmp_path / "env"))
    assert get_deployctl_home(str(tmp_path / "explicit")) == (tmp_path / "explicit").resolve()
    assert get_deployctl_home() == (tmp_path / "env").resolve()
    assert os.path.basename(get_deployctl_home()) == "env"
