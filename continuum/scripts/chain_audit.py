#!/usr/bin/env python3
"""Audit persisted continuation edges for integrity problems.

Usage:
  python -m continuum.scripts.chain_audit
  python -m continuum.scripts.chain_audit --db data/continuum_cache.db --max-depth 50
  python -m continuum.scripts.chain_audit --json
"""
from __future__ import annotations

import argparse
import json
import sqlite3
from pathlib import Path
from typing import Any

from continuum import config
from continuum.db.repositories.continuations import row_to_edge
from continuum.models import ContinuationEdge, SessionRecord
from continuum.services.chain_resolver import audit_edges

_SECTIONS = ("cycles", "duplicates", "selfReferences", "orphans", "tooDeep")


def _load_sessions(conn: sqlite3.Connection) -> dict[str, SessionRecord]:
    rows = conn.execute("SELECT * FROM sessions").fetchall()
    sessions: dict[str, SessionRecord] = {}
    for row in rows:
        record = SessionRecord.from_row(dict(row))
        if record.sessionId:
            sessions[record.sessionId] = record
    return sessions


def _load_edges(conn: sqlite3.Connection) -> list[ContinuationEdge]:
    rows = conn.execute(
        "SELECT * FROM session_continuations ORDER BY parent_session_id, continuation_order, child_session_id"
    ).fetchall()
    return [row_to_edge(row) for row in rows]


def _format_item(item: dict[str, Any]) -> str:
    return " ".join(f"{key}={value}" for key, value in item.items())


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Report cycles, duplicate children, orphans and over-deep chains.")
    parser.add_argument("--db", default=str(config.DB_PATH))
    parser.add_argument("--max-depth", type=int, default=config.MAX_CHAIN_DEPTH)
    parser.add_argument("--limit", type=int, default=50)
    parser.add_argument("--json", action="store_true")
    args = parser.parse_args(argv)

    db_path = Path(args.db)
    if not db_path.exists():
        print(f"DB not found: {db_path}")
        return 1

    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    try:
        sessions = _load_sessions(conn)
        edges = _load_edges(conn)
    finally:
        conn.close()

    report = audit_edges(edges, sessions, max_depth=args.max_depth)
    problem_count = sum(len(report[section]) for section in _SECTIONS)

    if args.json:
        payload = {
            "db": str(db_path),
            "session_count": len(sessions),
            "edge_count": len(edges),
            "max_depth": args.max_depth,
            "problem_count": problem_count,
            **{section: report[section][: max(1, args.limit)] for section in _SECTIONS},
        }
        print(json.dumps(payload, indent=2))
        return 0 if problem_count == 0 else 2

    print(f"DB: {db_path}")
    print(f"Sessions: {len(sessions)}")
    print(f"Edges: {len(edges)}")
    print(f"Problems: {problem_count}")
    for section in _SECTIONS:
        items = report[section]
        if not items:
            continue
        print("")
        print(f"{section} ({len(items)}):")
        for idx, item in enumerate(items[: max(1, args.limit)], start=1):
            print(f"  {idx:02d}. {_format_item(item)}")
    return 0 if problem_count == 0 else 2


if __name__ == "__main__":
    raise SystemExit(main())
