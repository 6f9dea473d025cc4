"""MCP server exposing the advancement ledger to Claude, read-only.

Point ``ADVANCEMENT_DB_PATH`` at the ledger database and run
``advancement-mcp``. Every tool opens its own ``mode=ro`` connection.
"""

import json
import os
import sqlite3
from contextlib import closing

from mcp.server.fastmcp import FastMCP

from advancement_db.queries import (
    pending_submissions,
    scout_advancement_progress,
    unit_advancement_summary,
)

DB_PATH = os.environ.get("ADVANCEMENT_DB_PATH", "advancement.db")

mcp = FastMCP("advancement")


def _connect() -> sqlite3.Connection:
    conn = sqlite3.connect(f"file:{DB_PATH}?mode=ro", uri=True)
    conn.row_factory = sqlite3.Row
    return conn


def _to_json(value) -> str:
    if isinstance(value, list):
        value = [dict(row) for row in value]
    return json.dumps(value, default=str)


@mcp.tool()
def schema() -> str:
    """Return the ledger's CREATE TABLE and CREATE INDEX statements.

    Progress lives in scout_rank_progress / scout_merit_badge_progress
    (one row per Scout per rank or badge) and their *_requirement_progress
    tables. The notes column holds a JSON array of note entries. Call this
    before writing queries.
    """
    with closing(_connect()) as conn:
        rows = conn.execute(
            "SELECT sql FROM sqlite_master WHERE sql IS NOT NULL "
            "AND name NOT LIKE 'sqlite_%' ORDER BY type DESC, name"
        ).fetchall()
    return "\n\n".join(row["sql"] for row in rows)


@mcp.tool()
def query(sql: str) -> str:
    """Run a SELECT against the ledger and return the rows as JSON.

    Writes fail because the database is opened read-only.
    """
    with closing(_connect()) as conn:
        return _to_json(conn.execute(sql).fetchall())


@mcp.tool()
def scout_progress(scout_id: int) -> str:
    """Ranks, merit badges, leadership and activity totals for one Scout, as JSON."""
    with closing(_connect()) as conn:
        return _to_json(scout_advancement_progress(conn, scout_id))


@mcp.tool()
def unit_summary(unit_id: int) -> str:
    """Awarded and in-progress counts plus pending submissions for a unit."""
    with closing(_connect()) as conn:
        return _to_json(unit_advancement_summary(conn, unit_id))


@mcp.tool()
def pending_approvals(unit_id: int) -> str:
    """Parent-submitted requirements awaiting a leader's review, oldest first."""
    with closing(_connect()) as conn:
        return _to_json(pending_submissions(conn, unit_id))


def main():
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
