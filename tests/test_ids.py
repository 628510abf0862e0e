from datetime import datetime, timezone

from deployctl.ids import (
    is_valid_backup_id, is_valid_run_id, new_backup_id, new_run_id, parse_backup_id,
)


def test_run_id_format():
    run_id = new_run_id()
    assert run_id.startswith("r-")
    assert is_valid_run_id(run_id)


def test_invalid_run_ids():
    assert not is_valid_run_id("d-20240101-000000-abcd")
    assert not is_valid_run_id("r-2024-000000-abcd")
    assert not is_valid_run_id("r-20240101-000000-ab")
    assert not is_valid_run_id("../../etc")


def test_backup_id_encodes_time():
    now = datetime(2024, 3, 5, 14, 30, 15, 123456, tzinfo=timezone.utc)
    backup_id = new_backup_id(now=now)
    assert backup_id == "20240305_143015_123456"
    assert parse_backup_id(backup_id) == now


def test_legacy_backup_ids_are_accepted():
    assert is_valid_backup_id("20240305_143015")
    assert parse_backup_id("20240305_143015") == datetime(2024, 3, 5, 14, 30, 15, tzinfo=timezone.utc)
    assert not is_valid_backup_id("latest")
    assert not is_valid_backup_id("manifest.json")


def test_backup_id_strictly_increases_within_same_microsecond():
    now = datetime(2024, 3, 5, 14, 30, 15, 123456, tzinfo=timezone.utc)
    first = new_backup_id(now=now)
    second = new_backup_id([first], now=now)
    assert second == "20240305_143015_123457"
    assert second > first


def test_backup_id_survives_clock_going_backwards():
    existing = ["20300101_000000_000000", "20240101_000000"]
    backup_id = new_backup_id(existing, now=datetime(2024, 1, 1, tzinfo=timezone.utc))
    assert backup_id == "20300101_000000_000001"


def test_backup_id_after_legacy_id_in_same_second():
    backup_id = new_backup_id(["20240305_143015"], now=datetime(2024, 3, 5, 14, 30, 15, tzinfo=timezone.utc))
    assert backup_id > "20240305_143015"
