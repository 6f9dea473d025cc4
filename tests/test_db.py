"""Tests for advancement_db.db."""

import csv
import sqlite3

import pytest

from advancement_db.db import (
    STANDARD_LEADERSHIP_POSITIONS,
    add_membership,
    chunked,
    create_profile,
    create_unit,
    get_connection,
    get_setting,
    import_roster_csv,
    init_db,
    select_in,
    select_paged,
    set_setting,
    upsert_scout,
)


# ── Helpers ───────────────────────────────────────────────────────────────────


def _write_csv(tmp_path, headers, rows, filename="roster.csv"):
    path = tmp_path / filename
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=headers)
        writer.writeheader()
        writer.writerows(rows)
    return path


@pytest.fixture
def unit_id(conn):
    return create_unit(conn, "Troop 7")


# ── get_connection ────────────────────────────────────────────────────────────


class TestGetConnection:
    def test_returns_sqlite_connection(self, tmp_path):
        conn = get_connection(str(tmp_path / "test.db"))
        assert isinstance(conn, sqlite3.Connection)
        conn.close()

    def test_row_factory_is_sqlite_row(self, tmp_path):
        conn = get_connection(str(tmp_path / "test.db"))
        assert conn.row_factory is sqlite3.Row
        conn.close()

    def test_foreign_keys_enabled(self, tmp_path):
        conn = get_connection(str(tmp_path / "test.db"))
        row = conn.execute("PRAGMA foreign_keys").fetchone()
        assert row[0] == 1
        conn.close()

    def test_path_from_environment(self, tmp_path, monkeypatch):
        path = tmp_path / "env.db"
        monkeypatch.setenv("ADVANCEMENT_DB_PATH", str(path))
        conn = get_connection()
        init_db(conn)
        conn.close()
        assert path.exists()


# ── init_db ───────────────────────────────────────────────────────────────────


class TestInitDb:
    def test_creates_all_tables(self, conn):
        tables = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
        for table in (
            "settings", "units", "profiles", "unit_memberships", "scouts",
            "scout_guardians", "ranks", "rank_requirements", "merit_badges",
            "merit_badge_versions", "merit_badge_requirements", "leadership_positions",
            "scout_rank_progress", "scout_rank_requirement_progress",
            "scout_merit_badge_progress", "scout_merit_badge_requirement_progress",
            "scout_leadership_history", "scout_activity_entries",
            "import_requirement_mismatches",
        ):
            assert table in tables

    def test_seeds_leadership_positions(self, conn):
        count = conn.execute("SELECT COUNT(*) FROM leadership_positions").fetchone()[0]
        assert count == len(STANDARD_LEADERSHIP_POSITIONS)

    def test_creates_unit_when_name_given(self):
        c = sqlite3.connect(":memory:")
        c.row_factory = sqlite3.Row
        unit_id = init_db(c, unit_name="Troop 42")
        row = c.execute("SELECT name FROM units WHERE id = ?", (unit_id,)).fetchone()
        assert row["name"] == "Troop 42"
        assert get_setting(c, "unit_id") == str(unit_id)

    def test_no_unit_when_name_omitted(self, conn):
        assert conn.execute("SELECT COUNT(*) FROM units").fetchone()[0] == 0
        assert get_setting(conn, "unit_id") is None

    def test_idempotent_no_duplicates(self, conn):
        init_db(conn)
        init_db(conn)
        count = conn.execute("SELECT COUNT(*) FROM leadership_positions").fetchone()[0]
        assert count == len(STANDARD_LEADERSHIP_POSITIONS)


# ── settings ──────────────────────────────────────────────────────────────────


class TestSettings:
    def test_inserts_new_setting(self, conn):
        set_setting(conn, "unit_id", "3")
        assert get_setting(conn, "unit_id") == "3"

    def test_updates_existing_setting(self, conn):
        set_setting(conn, "unit_id", "3")
        set_setting(conn, "unit_id", "4")
        assert get_setting(conn, "unit_id") == "4"

    def test_default_when_missing(self, conn):
        assert get_setting(conn, "nope", "fallback") == "fallback"


# ── Batch helpers ─────────────────────────────────────────────────────────────


class TestChunked:
    def test_splits_into_fixed_size_lists(self):
        assert list(chunked(range(5), 2)) == [[0, 1], [2, 3], [4]]

    def test_empty_input(self):
        assert list(chunked([], 3)) == []


class TestSelectIn:
    def test_reads_across_many_chunks(self, conn, unit_id):
        ids = [upsert_scout(conn, unit_id, f"S{i}", "X", str(i)) for i in range(25)]
        rows = select_in(conn, "SELECT id FROM scouts WHERE {in_clause}", "id", ids, size=10)
        assert sorted(r["id"] for r in rows) == sorted(ids)

    def test_params_bound_before_in_list(self, conn, unit_id):
        other = create_unit(conn, "Other")
        upsert_scout(conn, unit_id, "A", "X", "100")
        upsert_scout(conn, other, "B", "X", "200")
        rows = select_in(
            conn,
            "SELECT bsa_member_id FROM scouts WHERE unit_id = ? AND {in_clause}",
            "bsa_member_id",
            ["100", "200"],
            params=(unit_id,),
        )
        assert [r["bsa_member_id"] for r in rows] == ["100"]

    def test_empty_values_runs_no_query(self, conn):
        assert select_in(conn, "SELECT id FROM scouts WHERE {in_clause}", "id", []) == []


class TestSelectPaged:
    def test_reads_every_page(self, conn, unit_id):
        for i in range(7):
            upsert_scout(conn, unit_id, f"S{i}", "X", str(i))
        rows = select_paged(conn, "SELECT id FROM scouts ORDER BY id", page_size=3)
        assert len(rows) == 7

    def test_exact_multiple_of_page_size(self, conn, unit_id):
        for i in range(4):
            upsert_scout(conn, unit_id, f"S{i}", "X", str(i))
        rows = select_paged(conn, "SELECT id FROM scouts ORDER BY id", page_size=2)
        assert len(rows) == 4


# ── Units, profiles and roster ────────────────────────────────────────────────


class TestMemberships:
    def test_role_updated_on_conflict(self, conn, unit_id):
        profile_id = create_profile(conn, "Pat", "Leader")
        add_membership(conn, unit_id, profile_id, "parent")
        add_membership(conn, unit_id, profile_id, "leader")
        rows = conn.execute(
            "SELECT role FROM unit_memberships WHERE profile_id = ?", (profile_id,)
        ).fetchall()
        assert [r["role"] for r in rows] == ["leader"]

    def test_unknown_role_rejected(self, conn, unit_id):
        profile_id = create_profile(conn, "Pat", "Leader")
        with pytest.raises(sqlite3.IntegrityError):
            add_membership(conn, unit_id, profile_id, "counselor")


class TestUpsertScout:
    def test_inserts_new_scout(self, conn, unit_id):
        scout_id = upsert_scout(conn, unit_id, "Alice", "Scout", "123")
        row = conn.execute("SELECT * FROM scouts WHERE id = ?", (scout_id,)).fetchone()
        assert row["first_name"] == "Alice"
        assert row["is_active"] == 1

    def test_same_member_id_updates(self, conn, unit_id):
        first = upsert_scout(conn, unit_id, "Alice", "Scout", "123")
        second = upsert_scout(conn, unit_id, "Alicia", None, "123", patrol="Hawks")
        assert first == second
        row = conn.execute("SELECT * FROM scouts WHERE id = ?", (first,)).fetchone()
        assert row["first_name"] == "Alicia"
        assert row["last_name"] == "Scout"
        assert row["patrol"] == "Hawks"

    def test_same_member_id_in_other_unit_is_separate(self, conn, unit_id):
        other = create_unit(conn, "Other")
        assert upsert_scout(conn, unit_id, "A", "X", "123") != upsert_scout(conn, other, "A", "X", "123")


class TestImportRosterCsv:
    def test_standard_columns(self, conn, unit_id, tmp_path):
        path = _write_csv(
            tmp_path,
            ["BSA Member ID", "First Name", "Last Name", "Patrol"],
            [
                {"BSA Member ID": "111", "First Name": "Alice", "Last Name": "Scout", "Patrol": "Eagle"},
                {"BSA Member ID": "222", "First Name": "Bob", "Last Name": "Smith", "Patrol": "Falcon"},
            ],
        )
        imported, skipped = import_roster_csv(conn, unit_id, path)
        assert (imported, skipped) == (2, 0)
        row = conn.execute("SELECT patrol FROM scouts WHERE bsa_member_id = '111'").fetchone()
        assert row["patrol"] == "Eagle"

    def test_name_column_splits_into_first_and_last(self, conn, unit_id, tmp_path):
        path = _write_csv(tmp_path, ["Member ID", "Name"], [{"Member ID": "333", "Name": "Dave Miller"}])
        import_roster_csv(conn, unit_id, path)
        row = conn.execute(
            "SELECT first_name, last_name FROM scouts WHERE bsa_member_id = '333'"
        ).fetchone()
        assert (row["first_name"], row["last_name"]) == ("Dave", "Miller")

    def test_type_column_filters_non_youth(self, conn, unit_id, tmp_path):
        path = _write_csv(
            tmp_path,
            ["Member ID", "First", "Last", "Type"],
            [
                {"Member ID": "1", "First": "Kid", "Last": "A", "Type": "YOUTH"},
                {"Member ID": "2", "First": "Grown", "Last": "B", "Type": "LEADER"},
            ],
        )
        assert import_roster_csv(conn, unit_id, path) == (1, 1)

    def test_rows_without_member_id_skipped(self, conn, unit_id, tmp_path):
        path = _write_csv(
            tmp_path,
            ["Member ID", "First"],
            [{"Member ID": "", "First": "Nobody"}, {"Member ID": "9", "First": "Some"}],
        )
        assert import_roster_csv(conn, unit_id, path) == (1, 1)

    def test_missing_member_id_column_raises(self, conn, unit_id, tmp_path):
        path = _write_csv(tmp_path, ["First", "Last"], [{"First": "A", "Last": "B"}])
        with pytest.raises(ValueError, match="BSA Member ID"):
            import_roster_csv(conn, unit_id, path)

    def test_reimport_does_not_duplicate(self, conn, unit_id, tmp_path):
        path = _write_csv(tmp_path, ["Member ID", "First"], [{"Member ID": "5", "First": "A"}])
        import_roster_csv(conn, unit_id, path)
        import_roster_csv(conn, unit_id, path)
        assert conn.execute("SELECT COUNT(*) FROM scouts").fetchone()[0] == 1

    def test_birthdate_and_loose_headers(self, conn, unit_id, tmp_path):
        path = _write_csv(
            tmp_path,
            [" Scouting  Member ID", "First Name", "Last Name", "DOB"],
            [{" Scouting  Member ID": "44", "First Name": "Ivy", "Last Name": "Lane",
              "DOB": "2011-04-02"}],
        )
        assert import_roster_csv(conn, unit_id, path) == (1, 0)
        row = conn.execute(
            "SELECT unit_id, birthdate FROM scouts WHERE bsa_member_id = '44'"
        ).fetchone()
        assert (row["unit_id"], row["birthdate"]) == (unit_id, "2011-04-02")

    def test_bom_utf8_encoding_handled(self, conn, unit_id, tmp_path):
        path = tmp_path / "bom.csv"
        path.write_text("Member ID,First Name,Last Name\n77,Eve,Bom\n", encoding="utf-8-sig")
        assert import_roster_csv(conn, unit_id, path) == (1, 0)
