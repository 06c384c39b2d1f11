"""
histdb.__main__ -- CLI entry point.

Usage:
    histdb log --cmd CMD --epoch N --ppid N --pwd DIR --salt N [--hist-id N] [--force]
    histdb list [QUERY] [--limit N] [--offset N] [--unlimited] [filters] [--json]
    histdb search TERM [filters] [--json]
    histdb summary [QUERY] [--starts] [--by-dir] [filters] [--json]
    histdb stats [filters] [--json]
    histdb import --from PATH [--from PATH ...]
    histdb import-history FILE --dialect bash|zsh --pwd DIR
    histdb candidates [QUERY] [filters]
    histdb preview LINE
    histdb doctor
    histdb optimize [--vacuum]

Filters: --days N | --since EPOCH, --here | --under [--dir DIR],
--session (scope to $HISTDB_SALT / $HISTDB_PPID).
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Mapping, Optional


def main(argv: list[str] | None = None, environ: Optional[Mapping[str, str]] = None) -> int:
    environ = os.environ if environ is None else environ

    parser = argparse.ArgumentParser(
        prog="histdb",
        description="histdb -- deduplicated shell history in a local SQLite store",
    )
    parser.add_argument("--db", default=None, help="Path to the history database")
    parser.add_argument("--config", default=None, help="Path to a histdb YAML config")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )

    sub = parser.add_subparsers(dest="command")

    # -- log ---------------------------------------------------------------
    log_p = sub.add_parser("log", help="Record one command (for shell hooks)")
    log_p.add_argument("--cmd", required=True)
    log_p.add_argument("--epoch", type=int, required=True)
    log_p.add_argument("--ppid", type=int, required=True)
    log_p.add_argument("--pwd", required=True)
    log_p.add_argument("--salt", type=int, required=True)
    log_p.add_argument("--hist-id", type=int, default=None)
    log_p.add_argument("--force", action="store_true", help="Bypass the noise filter")

    # -- read commands -----------------------------------------------------
    list_p = sub.add_parser("list", help="Chronological history")
    list_p.add_argument("query", nargs="?", default=None, help="Substring filter")
    _add_filter_args(list_p)
    list_p.add_argument("--offset", type=int, default=0)

    search_p = sub.add_parser("search", help="Case-insensitive substring search")
    search_p.add_argument("term")
    _add_filter_args(search_p)

    summary_p = sub.add_parser("summary", help="Grouped counts, most recent first")
    summary_p.add_argument("query", nargs="?", default=None)
    summary_p.add_argument("--starts", action="store_true", help="Prefix match")
    summary_p.add_argument("--by-dir", action="store_true", help="Group by directory too")
    _add_filter_args(summary_p)

    stats_p = sub.add_parser("stats", help="Top commands, directories and daily counts")
    _add_filter_args(stats_p)

    cand_p = sub.add_parser("candidates", help="Selector input, one command per line")
    cand_p.add_argument("query", nargs="?", default=None)
    _add_filter_args(cand_p)

    preview_p = sub.add_parser("preview", help="Details for a selected line")
    preview_p.add_argument("line", help="Line from the selector ('-' reads stdin)")
    preview_p.add_argument("--json", action="store_true")

    # -- imports -----------------------------------------------------------
    import_p = sub.add_parser("import", help="Merge other history databases")
    import_p.add_argument(
        "--from", dest="sources", action="append", required=True, help="Source database"
    )

    hist_p = sub.add_parser("import-history", help="Import a bash/zsh history file")
    hist_p.add_argument("file")
    hist_p.add_argument("--dialect", choices=["bash", "zsh"], required=True)
    hist_p.add_argument("--pwd", required=True, help="Directory recorded for every entry")
    hist_p.add_argument("--ppid", type=int, default=0)
    hist_p.add_argument("--salt", type=int, default=0)

    # -- maintenance -------------------------------------------------------
    sub.add_parser("doctor", help="Check store integrity and indexes")
    opt_p = sub.add_parser("optimize", help="Create indexes, backfill, analyze")
    opt_p.add_argument("--vacuum", action="store_true", help="Also compact the file")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    from histdb.core.config import Config
    from histdb.core.errors import FilterConflict, HistdbError
    from histdb.core.logging import HUMAN_FORMAT, configure_logging

    try:
        config = Config.from_env(environ, config_path=args.config)
    except (OSError, ValueError) as exc:
        print(f"histdb: {exc}", file=sys.stderr)
        return 2
    if args.db:
        config.db_path = Path(os.path.expanduser(args.db)).resolve()

    # -- Logging -----------------------------------------------------------
    logging.basicConfig(format=HUMAN_FORMAT, stream=sys.stderr)
    configure_logging(
        structured=config.structured_logging,
        level="DEBUG" if args.verbose else config.log_level,
    )

    # -- Dispatch ----------------------------------------------------------
    handlers = {
        "log": _cmd_log,
        "list": _cmd_list,
        "search": _cmd_search,
        "summary": _cmd_summary,
        "stats": _cmd_stats,
        "candidates": _cmd_candidates,
        "preview": _cmd_preview,
        "import": _cmd_import,
        "import-history": _cmd_import_history,
        "doctor": _cmd_doctor,
        "optimize": _cmd_optimize,
    }
    try:
        return handlers[args.command](args, config, environ)
    except FilterConflict as exc:
        print(f"histdb: {exc}", file=sys.stderr)
        return 2
    except HistdbError as exc:
        print(f"histdb: {exc}", file=sys.stderr)
        return 1


# ---------------------------------------------------------------------------
# Argument helpers
# ---------------------------------------------------------------------------


def _add_filter_args(p: argparse.ArgumentParser) -> None:
    when = p.add_mutually_exclusive_group()
    when.add_argument("--days", type=float, default=None, help="Trailing window in days")
    when.add_argument("--since", type=int, default=None, help="Lower bound (epoch)")
    where = p.add_mutually_exclusive_group()
    where.add_argument("--here", action="store_true", help="Only the current directory")
    where.add_argument("--under", action="store_true", help="Current directory and below")
    p.add_argument("--dir", default=None, help="Directory for --here/--under")
    p.add_argument("--session", action="store_true", help="Only this shell session")
    p.add_argument("--limit", type=int, default=None)
    p.add_argument("--unlimited", action="store_true", help="Remove the result cap")
    p.add_argument("--json", action="store_true")


def _env_int(environ: Mapping[str, str], name: str) -> Optional[int]:
    try:
        return int(environ[name])
    except (KeyError, ValueError):
        return None


def _build_filter(args: argparse.Namespace, config, environ: Mapping[str, str]):
    from histdb.query.filters import (
        HistoryFilter,
        LocationMode,
        LocationScope,
        SessionScope,
    )

    location = None
    if args.here or args.under:
        directory = args.dir or os.getcwd()
        mode = LocationMode.UNDER if args.under else LocationMode.HERE
        location = LocationScope(directory, mode)

    session = None
    if args.session:
        session = SessionScope(
            salt=_env_int(environ, "HISTDB_SALT"),
            parent_pid=_env_int(environ, "HISTDB_PPID"),
        )

    return HistoryFilter(
        since_days=args.days,
        since_epoch=args.since,
        location=location,
        session=session,
        limit=config.default_limit if args.limit is None else args.limit,
        offset=getattr(args, "offset", 0),
        unlimited=args.unlimited,
    )


def _open_store(config):
    from histdb.storage.store import HistoryStore

    return HistoryStore.open(config.db_path, busy_timeout=config.busy_timeout)


def _engine(store, config):
    from histdb.query.engine import QueryEngine

    return QueryEngine.from_config(store, config)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str, ensure_ascii=False))


def _print_entries(entries, as_json: bool) -> None:
    from histdb.query.engine import format_local

    if as_json:
        _print_json([e.to_dict() for e in entries])
        return
    for e in entries:
        print(f"{e.id:>6} | {format_local(e.executed_at)} | {e.working_dir} | {e.command}")


# ---------------------------------------------------------------------------
# Command implementations
# ---------------------------------------------------------------------------


def _cmd_log(args, config, environ) -> int:
    """Record one command.  Always exits 0 so the calling shell is never disturbed."""
    from histdb.core.errors import HistdbError
    from histdb.ingest import Ingestor

    try:
        with _open_store(config) as store:
            result = Ingestor.from_config(store, config).log(
                command=args.cmd,
                executed_at=args.epoch,
                parent_pid=args.ppid,
                working_dir=args.pwd,
                salt=args.salt,
                session_id=args.hist_id,
                force=args.force,
            )
    except HistdbError as exc:
        print(f"histdb: {exc}", file=sys.stderr)
        return 0
    if result.error is not None:
        print(f"histdb: {result.error}", file=sys.stderr)
    return 0


def _cmd_list(args, config, environ) -> int:
    filt = _build_filter(args, config, environ)
    with _open_store(config) as store:
        entries = _engine(store, config).list_entries(filt, query=args.query)
    _print_entries(entries, args.json)
    return 0


def _cmd_search(args, config, environ) -> int:
    filt = _build_filter(args, config, environ)
    with _open_store(config) as store:
        entries = _engine(store, config).search(args.term, filt)
    _print_entries(entries, args.json)
    return 0


def _cmd_summary(args, config, environ) -> int:
    from histdb.query.engine import format_local

    filt = _build_filter(args, config, environ)
    with _open_store(config) as store:
        rows = _engine(store, config).summary(
            filt, query=args.query, starts_with=args.starts, by_directory=args.by_dir
        )
    if args.json:
        _print_json([r.to_dict() for r in rows])
        return 0
    for r in rows:
        where = f"{r.working_dir} > " if r.working_dir is not None else ""
        print(
            f"{r.last_id:>6} | {format_local(r.last_executed_at)} | {r.count:>6} | {where}{r.command}"
        )
    return 0


def _cmd_stats(args, config, environ) -> int:
    filt = _build_filter(args, config, environ)
    with _open_store(config) as store:
        stats = _engine(store, config).stats(filt)
    if args.json:
        _print_json(stats)
        return 0
    print("Top commands:")
    for c in stats["top_commands"]:
        print(f"  {c['count']:>6}  {c['command']}")
    print("Top commands by directory:")
    for c in stats["top_directories"]:
        print(f"  {c['count']:>6}  {c['working_dir']} > {c['command']}")
    print("Per day:")
    for d in stats["daily_counts"]:
        print(f"  {d['day']}  {d['count']:>6}")
    return 0


def _cmd_candidates(args, config, environ) -> int:
    filt = _build_filter(args, config, environ)
    with _open_store(config) as store:
        for line in _engine(store, config).selector_lines(filt, query=args.query):
            print(line)
    return 0


def _cmd_preview(args, config, environ) -> int:
    from histdb.query.engine import format_local

    line = sys.stdin.readline() if args.line == "-" else args.line
    with _open_store(config) as store:
        preview = _engine(store, config).preview_line(line)
    if args.json:
        _print_json(preview.to_dict())
        return 0
    if not preview.found:
        print(f"No history for: {preview.command}")
        return 0
    print(f"Command:   {preview.command}")
    print(f"Runs:      {preview.count}")
    print(f"First run: {format_local(preview.first_executed_at)}")
    print(f"Last run:  {format_local(preview.last_executed_at)}")
    print("Directories:")
    for directory, count in preview.directories:
        print(f"  {count:>6}  {directory}")
    print("Recent:")
    for e in preview.recent:
        print(f"  {format_local(e.executed_at)}  {e.working_dir}")
    return 0


def _cmd_import(args, config, environ) -> int:
    from histdb.importers.merge import merge_sources

    with _open_store(config) as store:
        summary = merge_sources(store, args.sources, busy_timeout=config.busy_timeout)
    for report in summary.reports:
        print(
            f"imported from {report.source}: inserted {report.inserted}, "
            f"duplicates {report.duplicates}, malformed {report.malformed}",
            file=sys.stderr,
        )
    for source, error in summary.failures.items():
        print(f"failed to import {source}: {error}", file=sys.stderr)
    print(
        f"total: inserted {summary.inserted}, duplicates {summary.duplicates}, "
        f"malformed {summary.malformed}",
        file=sys.stderr,
    )
    return 0 if summary.ok else 1


def _cmd_import_history(args, config, environ) -> int:
    from histdb.importers.history_file import HistoryDialect, HistoryFileImporter

    with _open_store(config) as store:
        importer = HistoryFileImporter(store, baseline=config.synthetic_baseline)
        try:
            report = importer.import_file(
                args.file,
                HistoryDialect(args.dialect),
                working_dir=args.pwd,
                parent_pid=args.ppid,
                salt=args.salt,
            )
        except OSError as exc:
            print(f"histdb: cannot read {args.file}: {exc}", file=sys.stderr)
            return 1
    print(
        f"imported from {report.source}: inserted {report.inserted}, "
        f"duplicates {report.duplicates}, malformed {report.malformed}",
        file=sys.stderr,
    )
    return 0


def _cmd_doctor(args, config, environ) -> int:
    from histdb.health import check_health

    with _open_store(config) as store:
        report = check_health(store, vacuum_threshold=config.vacuum_threshold)
    _print_json(report.to_dict())
    report.raise_for_status()
    return 0


def _cmd_optimize(args, config, environ) -> int:
    from histdb.health import optimize

    with _open_store(config) as store:
        result = optimize(store, vacuum=args.vacuum)
    _print_json(result.to_dict())
    return 0


if __name__ == "__main__":
    sys.exit(main())
