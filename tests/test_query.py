"""Tests for histdb.query (filters and engine)."""

import pytest

from histdb.core.errors import FilterConflict
from histdb.query.engine import (
    QueryEngine,
    command_from_selector_line,
    escape_command,
    format_local,
    unescape_command,
)
from histdb.query.filters import (
    HistoryFilter,
    LocationMode,
    LocationScope,
    VALID_EPOCH,
    SessionScope,
    escape_like,
)

T0 = 1700000000


@pytest.fixture
def populate(store, make_entry):
    def _populate(*rows):
        ids = []
        for row in rows:
            ids.append(store.append(make_entry(**row)))
        return ids

    return _populate


def _all(**kw):
    return HistoryFilter(unlimited=True, **kw)


class TestHistoryFilter:
    def test_empty_where(self):
        assert HistoryFilter().where() == (VALID_EPOCH, [])

    def test_both_time_bounds_conflict(self):
        with pytest.raises(FilterConflict):
            HistoryFilter(since_days=1, since_epoch=5).validated()

    def test_negative_limit_conflict(self):
        with pytest.raises(FilterConflict):
            HistoryFilter(limit=-1).validated()

    def test_incomplete_session_rejected(self):
        with pytest.raises(FilterConflict):
            HistoryFilter(session=SessionScope(salt=7)).validated("reject")

    def test_incomplete_session_ignored(self):
        filt = HistoryFilter(session=SessionScope(parent_pid=100)).validated("ignore")
        assert filt.session is None

    def test_zero_is_a_valid_session(self):
        assert SessionScope(salt=0, parent_pid=0).complete

    def test_since_days_uses_clock(self):
        filt = HistoryFilter(since_days=1, now=lambda: 100000.0)
        assert filt.lower_bound() == 100000 - 86400

    def test_limit_clause(self):
        assert HistoryFilter(limit=5, offset=2).limit_clause() == ("LIMIT ? OFFSET ?", [5, 2])
        assert HistoryFilter(unlimited=True).limit_clause() == ("", [])
        assert HistoryFilter(unlimited=True, offset=3).limit_clause() == (
            "LIMIT -1 OFFSET ?",
            [3],
        )

    def test_escape_like(self):
        assert escape_like("50%_off\\") == "50\\%\\_off\\\\"


class TestListing:
    def test_chronological_with_id_tiebreak(self, engine, populate):
        ids = populate(
            dict(command="late", executed_at=T0 + 300),
            dict(command="tie-1", executed_at=T0 + 100),
            dict(command="tie-2", executed_at=T0 + 100),
            dict(command="mid", executed_at=T0 + 200),
        )
        entries = engine.list_entries(_all())
        assert [e.command for e in entries] == ["tie-1", "tie-2", "mid", "late"]
        assert entries[0].id == ids[1]

    def test_limit_keeps_most_recent_oldest_first(self, engine, populate):
        populate(*[dict(command=f"c{i}", executed_at=T0 + i) for i in range(10)])
        entries = engine.list_entries(HistoryFilter(limit=3))
        assert [e.command for e in entries] == ["c7", "c8", "c9"]

    def test_offset_skips_newest(self, engine, populate):
        populate(*[dict(command=f"c{i}", executed_at=T0 + i) for i in range(10)])
        entries = engine.list_entries(HistoryFilter(limit=2, offset=1))
        assert [e.command for e in entries] == ["c7", "c8"]

    def test_unlimited(self, engine, populate):
        populate(*[dict(command=f"c{i}", executed_at=T0 + i) for i in range(10)])
        assert len(engine.list_entries(HistoryFilter(limit=3, unlimited=True))) == 10

    def test_since_epoch(self, engine, populate):
        populate(dict(command="old", executed_at=T0), dict(command="new", executed_at=T0 + 50))
        assert [e.command for e in engine.list_entries(_all(since_epoch=T0 + 10))] == ["new"]

    def test_since_days(self, engine, populate):
        populate(
            dict(command="old", executed_at=T0 - 3 * 86400),
            dict(command="new", executed_at=T0 - 3600),
        )
        filt = _all(since_days=1, now=lambda: float(T0))
        assert [e.command for e in engine.list_entries(filt)] == ["new"]


class TestSearch:
    def test_wildcards_are_literal(self, engine, populate):
        populate(
            dict(command="echo 50%_off", executed_at=T0),
            dict(command="echo 50xxoff", executed_at=T0 + 1),
            dict(command="echo 50%xoff", executed_at=T0 + 2),
        )
        assert [e.command for e in engine.search("50%_off", _all())] == ["echo 50%_off"]

    def test_ascii_case_insensitive(self, engine, populate):
        populate(dict(command="Git Status", executed_at=T0))
        assert len(engine.search("git status", _all())) == 1

    def test_backslash_is_literal(self, engine, populate):
        populate(
            dict(command="printf 'a\\nb'", executed_at=T0),
            dict(command="printf 'anb'", executed_at=T0 + 1),
        )
        assert [e.command for e in engine.search("a\\n", _all())] == ["printf 'a\\nb'"]


class TestScopes:
    @pytest.fixture
    def dirs(self, populate):
        populate(
            dict(command="a", working_dir="/src", executed_at=T0),
            dict(command="b", working_dir="/src/app", executed_at=T0 + 1),
            dict(command="c", working_dir="/srcfoo", executed_at=T0 + 2),
            dict(command="d", working_dir="/other", executed_at=T0 + 3),
        )

    def test_here(self, engine, dirs):
        filt = _all(location=LocationScope("/src", LocationMode.HERE))
        assert [e.command for e in engine.list_entries(filt)] == ["a"]

    def test_here_ignores_trailing_slash(self, engine, dirs):
        filt = _all(location=LocationScope("/src/app/", LocationMode.HERE))
        assert [e.command for e in engine.list_entries(filt)] == ["b"]

    def test_under(self, engine, dirs):
        filt = _all(location=LocationScope("/src/", LocationMode.UNDER))
        assert [e.command for e in engine.list_entries(filt)] == ["a", "b"]

    def test_under_root_matches_everything(self, engine, dirs):
        filt = _all(location=LocationScope("/", LocationMode.UNDER))
        assert len(engine.list_entries(filt)) == 4

    def test_session(self, engine, populate):
        populate(
            dict(command="mine", salt=0, parent_pid=0, executed_at=T0),
            dict(command="theirs", salt=1, parent_pid=0, executed_at=T0 + 1),
        )
        filt = _all(session=SessionScope(salt=0, parent_pid=0))
        assert [e.command for e in engine.list_entries(filt)] == ["mine"]

    def test_incomplete_session_rejected(self, engine, populate):
        populate(dict(command="x"))
        with pytest.raises(FilterConflict):
            engine.list_entries(_all(session=SessionScope(salt=7)))

    def test_incomplete_session_ignored(self, store, populate):
        populate(dict(command="x"), dict(command="y", salt=99, executed_at=T0 + 5))
        engine = QueryEngine(store, session_policy="ignore")
        assert len(engine.list_entries(_all(session=SessionScope(salt=7)))) == 2

    def test_from_config(self, store, config):
        config.session_filter_policy = "ignore"
        engine = QueryEngine.from_config(store, config)
        assert engine.session_policy == "ignore"


class TestSummary:
    def test_groups_and_orders_by_recency(self, engine, populate):
        ids = populate(
            dict(command="make", executed_at=T0),
            dict(command="git pull", executed_at=T0 + 1),
            dict(command="make", executed_at=T0 + 2),
        )
        rows = engine.summary(_all())
        assert [(r.command, r.count) for r in rows] == [("make", 2), ("git pull", 1)]
        assert rows[0].last_id == ids[2]
        assert rows[0].last_executed_at == T0 + 2

    def test_last_id_belongs_to_latest_run(self, engine, populate):
        ids = populate(
            dict(command="make", executed_at=T0 + 200),
            dict(command="make", executed_at=T0 + 100),
        )
        (row,) = engine.summary(_all())
        assert (row.count, row.last_executed_at, row.last_id) == (2, T0 + 200, ids[0])

    def test_limit_and_unlimited(self, engine, populate):
        populate(*[dict(command=f"cmd{i}", executed_at=T0 + i) for i in range(8)])
        assert len(engine.summary(HistoryFilter(limit=5))) == 5
        assert len(engine.summary(HistoryFilter(limit=5, unlimited=True))) == 8

    def test_starts_with(self, engine, populate):
        populate(
            dict(command="git status", executed_at=T0),
            dict(command="tig git", executed_at=T0 + 1),
        )
        assert [r.command for r in engine.summary(_all(), query="git", starts_with=True)] == [
            "git status"
        ]
        assert len(engine.summary(_all(), query="git")) == 2

    def test_by_directory(self, engine, populate):
        populate(
            dict(command="make", working_dir="/a", executed_at=T0),
            dict(command="make", working_dir="/b", executed_at=T0 + 1),
        )
        rows = engine.summary(_all(), by_directory=True)
        assert [(r.working_dir, r.count) for r in rows] == [("/b", 1), ("/a", 1)]


class TestStats:
    @pytest.fixture
    def filled(self, populate):
        populate(
            dict(command="make", executed_at=T0, working_dir="/a"),
            dict(command="make", executed_at=T0 + 60, working_dir="/a"),
            dict(command="ls -l", executed_at=T0 + 120, working_dir="/b"),
            dict(command="make", executed_at=T0 + 2 * 86400, working_dir="/b"),
            dict(command="ancient", executed_at=T0 - 90 * 86400),
        )

    def _filt(self, **kw):
        return HistoryFilter(now=lambda: float(T0 + 3 * 86400), **kw)

    def test_top_commands_uses_default_window(self, engine, filled):
        top = engine.top_commands(self._filt())
        assert [(c.command, c.count) for c in top] == [("make", 3), ("ls -l", 1)]

    def test_top_directories(self, engine, filled):
        top = engine.top_directories(self._filt())
        assert (top[0].working_dir, top[0].command, top[0].count) == ("/a", "make", 2)

    def test_daily_counts_ignore_cap(self, engine, filled):
        days = engine.daily_counts(self._filt(limit=1))
        assert [d.count for d in days] == [3, 1]
        assert days[0].day < days[1].day

    def test_stats_dict(self, engine, filled):
        stats = engine.stats(self._filt())
        assert set(stats) == {"top_commands", "top_directories", "daily_counts"}
        assert stats["top_commands"][0] == {"command": "make", "count": 3}


class TestSelector:
    def test_escape_round_trip(self):
        cmd = "for f in *; do\n\techo \"$f\" \\\ndone"
        assert "\n" not in escape_command(cmd)
        assert unescape_command(escape_command(cmd)) == cmd

    def test_lines_recover_commands(self, engine, populate):
        populate(
            dict(command="echo one", executed_at=T0),
            dict(command="echo\ttwo\nthree", executed_at=T0 + 1),
        )
        lines = list(engine.selector_lines(_all()))
        assert len(lines) == 2
        assert all(line.count("\t") == 2 for line in lines)
        assert command_from_selector_line(lines[0]) == "echo\ttwo\nthree"
        assert command_from_selector_line(lines[1] + "\n") == "echo one"

    def test_bare_line_is_a_command(self):
        assert command_from_selector_line("git status") == "git status"

    def test_preview(self, engine, populate):
        populate(
            dict(command="make", executed_at=T0, working_dir="/a"),
            dict(command="make", executed_at=T0 + 5, working_dir="/a"),
            dict(command="make", executed_at=T0 + 9, working_dir="/b"),
        )
        line = next(engine.selector_lines(_all()))
        preview = engine.preview_line(line, recent=2)
        assert preview.found
        assert preview.count == 3
        assert (preview.first_executed_at, preview.last_executed_at) == (T0, T0 + 9)
        assert preview.directories == [("/a", 2), ("/b", 1)]
        assert [e.executed_at for e in preview.recent] == [T0 + 9, T0 + 5]

    def test_preview_unknown(self, engine):
        preview = engine.preview("nothing here")
        assert not preview.found
        assert preview.to_dict()["recent"] == []


class TestUnusableEpochs:
    @pytest.fixture
    def legacy_store(self, tmp_path, make_legacy_db):
        from histdb.storage.store import HistoryStore

        path = make_legacy_db(
            tmp_path / "legacy.sqlite",
            [
                (1, "ssh host", "970* 1571608128", 10, "/tmp", 5),
                (2, "ssh host", T0, 10, "/tmp", 5),
                (3, "uptime", T0 + 10, 10, "/tmp", 5),
            ],
        )
        s = HistoryStore.open(path)
        yield s
        s.close()

    def test_text_epoch_rows_are_not_listed(self, legacy_store):
        engine = QueryEngine(legacy_store)
        entries = engine.list_entries(_all(since_epoch=T0 + 5))
        assert [e.command for e in entries] == ["uptime"]
        assert len(engine.list_entries(_all())) == 2

    def test_summary_and_selector_skip_text_epochs(self, legacy_store):
        engine = QueryEngine(legacy_store)
        rows = {r.command: r for r in engine.summary(_all())}
        assert rows["ssh host"].count == 1
        assert rows["ssh host"].last_executed_at == T0
        lines = list(engine.selector_lines(_all()))
        assert [command_from_selector_line(line) for line in lines] == ["uptime", "ssh host"]

    def test_daily_counts_skip_text_epochs(self, legacy_store):
        engine = QueryEngine(legacy_store)
        days = engine.daily_counts(HistoryFilter(since_epoch=0))
        assert sum(d.count for d in days) == 2
        assert all(d.day is not None for d in days)

    def test_preview_skips_text_epochs(self, legacy_store):
        preview = QueryEngine(legacy_store).preview("ssh host")
        assert preview.count == 1
        assert preview.first_executed_at == T0

    def test_out_of_range_epoch_still_renders(self, store, engine, make_entry):
        store.append(make_entry(command="far future", executed_at=10**13))
        (line,) = list(engine.selector_lines(_all()))
        assert line.split("\t")[1] == str(10**13)
        assert command_from_selector_line(line) == "far future"

    def test_format_local_returns_raw_value(self):
        assert format_local("970* 1571608128") == "970* 1571608128"
        assert format_local(None) == "None"
        assert format_local(10**13) == str(10**13)
