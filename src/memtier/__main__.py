"""Entry point: python -m memtier <command>

- scan:     Live-store size per scope
- archive:  Age-based archival (records unused for --days or more)
- enforce:  Size-based archival down to --target-mb
- check:    Enforce only if the store is above --target-mb
- search:   Search archived memories
- load:     Print one archived memory
- restore:  Move archived memories back into the live store
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from memtier.config import load_config


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="memtier", description="Memory lifecycle tools")
    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Report live-store size")
    scan.add_argument("--scope")

    archive = sub.add_parser("archive", help="Archive records unused for --days or more")
    archive.add_argument("--days", type=int)
    archive.add_argument("--scope")
    archive.add_argument("--limit", type=int)
    archive.add_argument("--dry-run", action="store_true")

    for name, text in [
        ("enforce", "Archive LRU records until at or under --target-mb"),
        ("check", "Enforce --target-mb only if currently above it"),
    ]:
        p = sub.add_parser(name, help=text)
        p.add_argument("--target-mb", type=float)
        p.add_argument("--scope")

    search = sub.add_parser("search", help="Search archived memories")
    search.add_argument("query")
    search.add_argument("--scope")

    load = sub.add_parser("load", help="Print one archived memory")
    load.add_argument("scope")
    load.add_argument("session_id")

    restore = sub.add_parser("restore", help="Restore archived memories")
    restore.add_argument("scope")
    restore.add_argument("--session")
    restore.add_argument("--date", help="YYYY-MM or YYYY-MM-DD")
    restore.add_argument("--search")
    restore.add_argument("--all", action="store_true")
    restore.add_argument("--preview", action="store_true")
    return parser


def _emit(data: dict) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    config = load_config()
    _setup_logging(config.log_level)

    from memtier.core import MemoryLifecycle

    lifecycle = MemoryLifecycle(config)
    try:
        if args.command == "scan":
            _emit(lifecycle.scan(args.scope).to_dict())
        elif args.command == "archive":
            result = lifecycle.archive_by_age(
                args.days, args.scope, limit=args.limit, dry_run=args.dry_run
            )
            _emit(result.to_dict())
        elif args.command == "enforce":
            _emit(lifecycle.archive_to_threshold(args.target_mb, args.scope).to_dict())
        elif args.command == "check":
            _emit(lifecycle.check_and_archive(args.target_mb, args.scope).to_dict())
        elif args.command == "search":
            _emit(lifecycle.search(args.query, args.scope).to_dict())
        elif args.command == "load":
            content = lifecycle.load_archived(args.scope, args.session_id)
            if content is None:
                print(f"No archived memory {args.scope}/{args.session_id}", file=sys.stderr)
                return 1
            print(content)
        elif args.command == "restore":
            result = lifecycle.restore(
                args.scope,
                session_id=args.session,
                month=args.date,
                query=args.search,
                restore_all=args.all,
                preview=args.preview,
            )
            _emit(result.to_dict())
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
