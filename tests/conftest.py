"""Shared pytest fixtures."""

import copy
import sqlite3
from types import SimpleNamespace

import pytest

from advancement_db.catalog import get_track, load_catalog
from advancement_db.db import (
    add_guardian,
    add_membership,
    create_profile,
    create_unit,
    init_db,
    set_setting,
    upsert_scout,
)

CATALOG = {
    "ranks": [
        {
            "code": "scout",
            "name": "Scout",
            "display_order": 1,
            "requirement_version_year": 2024,
            "requirements": [{"number": "1a"}, {"number": "1b"}, {"number": "2"}],
        },
        {
            "code": "tenderfoot",
            "name": "Tenderfoot",
            "display_order": 2,
            "requirement_version_year": 2024,
            "requirements": [
                {
                    "number": "1",
                    "description": "Camping and outdoor ethics",
                    "is_header": True,
                    "children": [
                        {"number": "1a", "description": "Present yourself to your leader"},
                        {"number": "1b", "description": "Spend at least one night camping"},
                        {"number": "1c", "description": "Explain the outdoor code"},
                    ],
                },
                {"number": "2a", "description": "Assist in preparing a meal"},
                {"number": "2b", "description": "Demonstrate cleanup"},
                {"number": "2c", "description": "Explain food safety"},
                {"number": "3a", "description": "Demonstrate knots", "scoutbook_number": "3-a"},
                {"number": "3b"},
                {"number": "3c"},
                {"number": "3d"},
            ],
        },
    ],
    "merit_badges": [
        {
            "name": "Camping",
            "is_eagle_required": True,
            "requirement_version_year": 2023,
            "versions": [
                {
                    "version_year": 2023,
                    "requirements": [
                        {"number": "1"},
                        {"number": "2"},
                        {"number": "3"},
                        {"number": "4", "is_header": True,
                         "children": [{"number": "4a"}, {"number": "4b"}]},
                    ],
                },
                {
                    "version_year": 2025,
                    "is_current": True,
                    "requirements": [
                        {"number": "1"},
                        {"number": "2"},
                        {"number": "3"},
                        {"number": "4a"},
                        {"number": "4b"},
                        {"number": "5"},
                    ],
                },
            ],
        },
        {
            "name": "First Aid",
            "is_eagle_required": True,
            "requirement_version_year": 2024,
            "versions": [
                {
                    "version_year": 2024,
                    "is_current": True,
                    "requirements": [
                        {"number": "1"},
                        {"number": "2", "is_header": True,
                         "children": [{"number": "2a"}, {"number": "2b"}]},
                        {"number": "3"},
                    ],
                },
            ],
        },
        {"name": "Fish and Wildlife Management", "code": "fish_wildlife_management",
         "requirement_version_year": 2022,
         "versions": [{"version_year": 2022, "requirements": [{"number": "1"}]}]},
        {"name": "Chess"},
    ],
}


@pytest.fixture
def catalog_data():
    return copy.deepcopy(CATALOG)


@pytest.fixture
def conn():
    """In-memory SQLite DB with full schema initialized."""
    c = sqlite3.connect(":memory:")
    c.execute("PRAGMA foreign_keys=ON")
    c.row_factory = sqlite3.Row
    init_db(c)
    return c


@pytest.fixture
def troop(conn):
    """A unit with a leader, a parent, one Scout and the sample catalog loaded."""
    unit_id = create_unit(conn, "Troop 42")
    set_setting(conn, "unit_id", str(unit_id))
    leader_id = create_profile(conn, "Pat", "Leader", "pat@example.org")
    add_membership(conn, unit_id, leader_id, "leader")
    parent_id = create_profile(conn, "Sam", "Parent")
    add_membership(conn, unit_id, parent_id, "parent")
    scout_id = upsert_scout(conn, unit_id, "Alex", "Scout", "1000001", "Eagles")
    add_guardian(conn, scout_id, parent_id, "parent")
    load_catalog(conn, CATALOG)

    def item_id(table, code):
        return conn.execute(f"SELECT id FROM {table} WHERE code = ?", (code,)).fetchone()["id"]

    def req(kind, item, version, number):
        track = get_track(kind)
        return conn.execute(
            f"""SELECT id FROM {track.requirement_table}
                WHERE {track.item_fk} = ? AND version_year = ? AND requirement_number = ?""",
            (item, version, number),
        ).fetchone()["id"]

    def rp(kind, progress_id, number):
        track = get_track(kind)
        return conn.execute(
            f"""SELECT rp.id FROM {track.requirement_progress_table} rp
                JOIN {track.requirement_table} r ON r.id = rp.requirement_id
                WHERE rp.{track.progress_fk} = ? AND r.requirement_number = ?""",
            (progress_id, number),
        ).fetchone()["id"]

    return SimpleNamespace(
        unit_id=unit_id,
        leader_id=leader_id,
        parent_id=parent_id,
        scout_id=scout_id,
        scout_rank_id=item_id("ranks", "scout"),
        tenderfoot_id=item_id("ranks", "tenderfoot"),
        camping_id=item_id("merit_badges", "camping"),
        first_aid_id=item_id("merit_badges", "first_aid"),
        chess_id=item_id("merit_badges", "chess"),
        req=req,
        rp=rp,
    )
