from __future__ import annotations

import logging
import os
from pathlib import Path

import pytest

from conftest import add_device, lwt, point
from owntracks_recorder_exporter import (
    DeviceEnumerator,
    DirectoryLister,
    EntryKind,
    RecordFileParser,
    RecordKind,
    StatsAggregator,
    StorageDevice,
    StorageDeviceStats,
)


def test_record_kind_classifies_second_field() -> None:
    assert RecordKind.from_line("2024-01-01T00:00:00 * lat=1 lon=2") == RecordKind.POINT
    assert RecordKind.from_line("2024-01-01T00:00:02 lwt") == RecordKind.LWT
    assert RecordKind.from_line("2024-01-01T00:00:03 LWT") is None
    assert RecordKind.from_line("2024-01-01T00:00:03 msg {}") is None
    assert RecordKind.from_line("single") is None
    assert RecordKind.from_line("") is None
    assert RecordKind.from_line("* first-field-only") is None


def test_stats_addition_and_default() -> None:
    a = StorageDeviceStats(points_count_total=2, lwts_count_total=1)
    b = StorageDeviceStats(points_count_total=5)

    assert StorageDeviceStats() == StorageDeviceStats(0, 0)
    assert a + b == StorageDeviceStats(7, 1)
    assert a + b == b + a
    assert sum([a, b, a], StorageDeviceStats()) == StorageDeviceStats(9, 2)


def test_storage_device_is_compared_by_value() -> None:
    assert StorageDevice("alice", "phone") == StorageDevice("alice", "phone")
    assert StorageDevice("alice", "phone") != StorageDevice("Alice", "phone")
    assert len({StorageDevice("alice", "phone"), StorageDevice("alice", "phone")}) == 1


def test_parser_counts_points_and_lwts(tmp_path: Path, logger) -> None:
    (tmp_path / "2024-01.rec").write_text(
        "2024-01-01T00:00:00 * lat=1 lon=2\n"
        "2024-01-01T00:00:01 * lat=1 lon=2\n"
        "2024-01-01T00:00:02 lwt\n"
        "garbage line with one token\n",
        encoding="utf-8",
    )

    result = RecordFileParser(logger).parse(tmp_path, "2024-01.rec")

    assert result.success is True
    assert result.value == StorageDeviceStats(points_count_total=2, lwts_count_total=1)


def test_parser_empty_file_is_a_success(tmp_path: Path, logger) -> None:
    (tmp_path / "empty.rec").write_text("", encoding="utf-8")

    result = RecordFileParser(logger).parse(tmp_path, "empty.rec")

    assert result.success is True
    assert result.value == StorageDeviceStats()


def test_parser_missing_file_is_a_logged_failure(tmp_path: Path, logger, caplog) -> None:
    parser = RecordFileParser(logger)

    with caplog.at_level(logging.ERROR):
        result = parser.parse(tmp_path, "missing.rec")

    assert result.success is False
    assert result.error
    assert parser.errors == 1
    assert "missing.rec" in caplog.text


def test_parser_ignores_malformed_lines_silently(tmp_path: Path, logger, caplog) -> None:
    (tmp_path / "torn.rec").write_bytes(
        b"2024-01-01T00:00:00 * {}\n"
        b"\n"
        b"2024-01-01T00:00:01\xff\xfe\n"
        b"2024-01-01T00:00:02 * {\"_type\":\"loc"
    )
    parser = RecordFileParser(logger)

    with caplog.at_level(logging.DEBUG):
        result = parser.parse(tmp_path, "torn.rec")

    assert result.value == StorageDeviceStats(points_count_total=2)
    assert parser.errors == 0
    assert [r for r in caplog.records if r.levelno >= logging.INFO] == []


def test_parser_only_breaks_lines_on_newline(tmp_path: Path, logger) -> None:
    (tmp_path / "cr.rec").write_bytes(
        b"2024-01-01T00:00:00\r* lat=1\n"
        b"2024-01-01T00:00:01 lwt\rjunk\r\n"
    )

    result = RecordFileParser(logger).parse(tmp_path, "cr.rec")

    assert result.value == StorageDeviceStats(points_count_total=1, lwts_count_total=1)


def test_lister_selects_by_kind(tmp_path: Path, logger) -> None:
    (tmp_path / "dir_a").mkdir()
    (tmp_path / "dir_b").mkdir()
    (tmp_path / "file.rec").write_text("x\n", encoding="utf-8")
    lister = DirectoryLister(logger)

    assert sorted(lister.list_entries(tmp_path, EntryKind.DIRECTORY)) == ["dir_a", "dir_b"]
    assert lister.list_entries(tmp_path, EntryKind.FILE) == ["file.rec"]
    assert lister.errors == 0


def test_lister_follows_symlinks(tmp_path: Path, logger) -> None:
    (tmp_path / "real").mkdir()
    (tmp_path / "link").symlink_to(tmp_path / "real", target_is_directory=True)
    (tmp_path / "dangling").symlink_to(tmp_path / "nowhere")

    lister = DirectoryLister(logger)

    assert sorted(lister.list_entries(tmp_path, EntryKind.DIRECTORY)) == ["link", "real"]
    assert lister.list_entries(tmp_path, EntryKind.FILE) == []


def test_lister_missing_directory_is_empty_and_logged(tmp_path: Path, logger, caplog) -> None:
    lister = DirectoryLister(logger)

    with caplog.at_level(logging.ERROR):
        result = lister.scan(tmp_path / "nope", EntryKind.DIRECTORY)

    assert result.success is False
    assert result.value == []
    assert lister.list_entries(tmp_path / "nope", EntryKind.DIRECTORY) == []
    assert lister.errors == 2
    assert "nope" in caplog.text


def test_lister_file_path_is_not_a_directory(tmp_path: Path, logger) -> None:
    (tmp_path / "plain").write_text("", encoding="utf-8")
    lister = DirectoryLister(logger)

    assert lister.list_entries(tmp_path / "plain", EntryKind.FILE) == []
    assert lister.errors == 1


def test_lister_skips_undecodable_names(tmp_path: Path, logger) -> None:
    try:
        fd = os.open(os.path.join(os.fsencode(tmp_path), b"bad-\xff"), os.O_CREAT | os.O_WRONLY)
    except OSError:
        pytest.skip("filesystem rejects non UTF-8 names")
    os.close(fd)
    (tmp_path / "good").write_text("", encoding="utf-8")

    lister = DirectoryLister(logger)

    assert lister.list_entries(tmp_path, EntryKind.FILE) == ["good"]
    assert lister.errors == 0


def test_lister_skips_entries_that_cannot_be_inspected(tmp_path: Path, logger, caplog, monkeypatch) -> None:
    for name in ["a", "broken", "c"]:
        (tmp_path / name).mkdir()

    original = EntryKind.matches

    def flaky_matches(self, entry):
        if entry.name == "broken":
            raise PermissionError(13, "Permission denied", entry.path)
        return original(self, entry)

    monkeypatch.setattr(EntryKind, "matches", flaky_matches)
    lister = DirectoryLister(logger)

    with caplog.at_level(logging.ERROR):
        names = lister.list_entries(tmp_path, EntryKind.DIRECTORY)

    assert sorted(names) == ["a", "c"]
    assert lister.errors == 1
    assert "broken" in caplog.text


def test_enumerator_builds_cross_product(storage: Path, logger) -> None:
    for user, device in [("alice", "phone"), ("alice", "watch"), ("bob", "phone")]:
        (storage / "last" / user / device).mkdir(parents=True)
    (storage / "last" / "carol").mkdir()
    (storage / "last" / "alice" / "not-a-device.json").write_text("{}", encoding="utf-8")

    enumerator = DeviceEnumerator(storage, DirectoryLister(logger), logger)
    devices = enumerator.enumerate_devices()

    assert set(devices) == {
        StorageDevice("alice", "phone"),
        StorageDevice("alice", "watch"),
        StorageDevice("bob", "phone"),
    }
    assert len(devices) == 3
    assert enumerator.storage_available is True


def test_enumerator_without_last_directory(tmp_path: Path, logger) -> None:
    enumerator = DeviceEnumerator(tmp_path / "absent", DirectoryLister(logger), logger)

    assert enumerator.enumerate_devices() == []
    assert enumerator.storage_available is False


def test_aggregator_sums_all_files(storage: Path, logger) -> None:
    rec_dir = add_device(storage, "alice", "phone", {
        "2024-01.rec": [point(), point(), lwt()],
        "2024-02.rec": [point(), "garbage"],
    })
    (rec_dir / "subdir").mkdir()
    lister = DirectoryLister(logger)

    stats = StatsAggregator(lister, RecordFileParser(logger)).aggregate(rec_dir)

    assert stats == StorageDeviceStats(points_count_total=3, lwts_count_total=1)


def test_aggregator_skips_unreadable_file(storage: Path, logger, monkeypatch) -> None:
    rec_dir = add_device(storage, "alice", "phone", {
        "2024-01.rec": [point(), point()],
        "2024-02.rec": [point(), lwt(), lwt()],
        "2024-03.rec": [point()],
    })
    parser = RecordFileParser(logger)
    original_open = RecordFileParser._open

    def guarded_open(self, path):
        if Path(path).name == "2024-02.rec":
            raise PermissionError(13, "Permission denied", str(path))
        return original_open(self, path)

    monkeypatch.setattr(RecordFileParser, "_open", guarded_open)

    stats = StatsAggregator(DirectoryLister(logger), parser).aggregate(rec_dir)

    assert stats == StorageDeviceStats(points_count_total=3, lwts_count_total=0)
    assert parser.errors == 1


def test_aggregator_missing_rec_directory_is_zero(storage: Path, logger) -> None:
    lister = DirectoryLister(logger)

    stats = StatsAggregator(lister, RecordFileParser(logger)).aggregate(storage / "rec" / "ghost" / "phone")

    assert stats == StorageDeviceStats()
    assert lister.errors == 1
