"""Tests for histdb.importers.merge."""

import pytest

from histdb.core.errors import StorageUnavailable
from histdb.importers.merge import coerce_int, import_database, merge_sources
from histdb.storage.store import HistoryStore


class TestCoerceInt:
    def test_plain_values(self):
        assert coerce_int(42) == 42
        assert coerce_int(" 42 ") == 42
        assert coerce_int(3.0) == 3
        assert coerce_int(0) == 0

    def test_rejects(self):
        assert coerce_int(None) is None
        assert coerce_int(3.5) is None
        assert coerce_int("") is None
        assert coerce_int("abc def") is None
        assert coerce_int(b"12") is None
        assert coerce_int(True) is None

    def test_history_number_prefix(self):
        assert coerce_int("970* 1571608128 ssh host") == 970

    def test_falls_back_to_second_token(self):
        assert coerce_int("ssh 1571608128") == 1571608128


class TestImportDatabase:
    def test_merges_new_rows(self, tmp_path, store, make_entry):
        src = tmp_path / "other.sqlite"
        with HistoryStore.open(src) as other:
            other.append(make_entry(command="a"))
            other.append(make_entry(command="b"))
        report = import_database(store, src)
        assert (report.inserted, report.duplicates, report.malformed) == (2, 0, 0)
        assert store.count() == 2

    def test_reimport_is_deduplicated(self, tmp_path, store, make_entry):
        src = tmp_path / "other.sqlite"
        with HistoryStore.open(src) as other:
            other.append(make_entry(command="a"))
        store.append(make_entry(command="a"))
        report = import_database(store, src)
        assert report.inserted == 0
        assert report.duplicates == 1

    def test_ingested_entry_is_not_merged_twice(self, tmp_path, store, ingestor, make_entry):
        ingestor.log("make deploy", 1700000000, parent_pid=42, working_dir="/srv", salt=9)
        src = tmp_path / "laptop.sqlite"
        with HistoryStore.open(src) as other:
            other.append(
                make_entry(
                    command="make deploy",
                    executed_at=1700000000,
                    parent_pid=42,
                    working_dir="/srv",
                    salt=9,
                )
            )
        report = import_database(store, src)
        assert (report.inserted, report.duplicates) == (0, 1)
        assert store.count() == 1

    def test_corrupt_row_is_skipped(self, tmp_path, store, make_legacy_db):
        src = make_legacy_db(
            tmp_path / "legacy.sqlite",
            [
                (1, "good one", 100, 10, "/tmp", 5),
                (2, "bad epoch", "yesterday", 10, "/tmp", 5),
                (3, "good two", 200, 10, "/tmp", 5),
            ],
        )
        report = import_database(store, src)
        assert report.malformed == 1
        assert report.inserted == 2
        cmds = sorted(r["cmd"] for r in store.query("SELECT cmd FROM history"))
        assert cmds == ["good one", "good two"]

    def test_coerced_row_is_imported(self, tmp_path, store, make_legacy_db):
        src = make_legacy_db(
            tmp_path / "legacy.sqlite",
            [(None, "ssh host", "970* 1571608128", 10, "/tmp", 5)],
        )
        report = import_database(store, src)
        assert report.inserted == 1
        assert store.query("SELECT epoch FROM history")[0]["epoch"] == 970

    def test_null_command_is_malformed(self, tmp_path, store, make_legacy_db):
        src = make_legacy_db(tmp_path / "legacy.sqlite", [(None, None, 1, 1, "/", 1)])
        assert import_database(store, src).malformed == 1

    def test_self_merge_is_refused(self, store):
        with pytest.raises(StorageUnavailable):
            import_database(store, store.db_path)

    def test_missing_source(self, tmp_path, store):
        with pytest.raises(StorageUnavailable):
            import_database(store, tmp_path / "missing.sqlite")


class TestMergeSources:
    def test_failure_does_not_stop_others(self, tmp_path, store, make_entry):
        good = tmp_path / "good.sqlite"
        with HistoryStore.open(good) as other:
            other.append(make_entry(command="kept"))
        summary = merge_sources(store, [tmp_path / "missing.sqlite", good])
        assert summary.ok
        assert summary.inserted == 1
        assert str(tmp_path / "missing.sqlite") in summary.failures
        assert len(summary.reports) == 1

    def test_all_sources_failing(self, tmp_path, store):
        summary = merge_sources(store, [tmp_path / "a.sqlite", tmp_path / "b.sqlite"])
        assert not summary.ok
        assert len(summary.failures) == 2
