"""SQLite database schema, initialization, roster storage and batch helpers."""

import csv
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

DEFAULT_DB_PATH = Path.cwd() / "advancement.db"

# Underlying store limits: writes and IN-lists are chunked, list reads paged.
BATCH_SIZE = 500
PAGE_SIZE = 1000

STATUSES = ("not_started", "in_progress", "pending_approval", "approved", "completed", "awarded")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT
);

CREATE TABLE IF NOT EXISTS units (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS profiles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    first_name TEXT,
    last_name TEXT,
    email TEXT,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS unit_memberships (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    unit_id INTEGER NOT NULL REFERENCES units(id),
    profile_id INTEGER NOT NULL REFERENCES profiles(id),
    role TEXT NOT NULL
        CHECK (role IN ('admin', 'treasurer', 'leader', 'parent', 'scout')),
    status TEXT NOT NULL DEFAULT 'active',
    UNIQUE(unit_id, profile_id)
);

CREATE TABLE IF NOT EXISTS scouts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    unit_id INTEGER NOT NULL REFERENCES units(id),
    first_name TEXT,
    last_name TEXT,
    bsa_member_id TEXT,
    patrol TEXT,
    rank TEXT,
    birthdate TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS scout_guardians (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    scout_id INTEGER NOT NULL REFERENCES scouts(id),
    profile_id INTEGER NOT NULL REFERENCES profiles(id),
    relationship TEXT,
    UNIQUE(scout_id, profile_id)
);

CREATE TABLE IF NOT EXISTS ranks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    code TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    display_order INTEGER NOT NULL DEFAULT 0,
    is_eagle_required INTEGER NOT NULL DEFAULT 1,
    requirement_version_year INTEGER,
    image_url TEXT
);

CREATE TABLE IF NOT EXISTS rank_requirements (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    rank_id INTEGER NOT NULL REFERENCES ranks(id),
    version_year INTEGER NOT NULL,
    requirement_number TEXT NOT NULL,
    scoutbook_requirement_number TEXT,
    parent_requirement_id INTEGER REFERENCES rank_requirements(id),
    description TEXT,
    is_header INTEGER NOT NULL DEFAULT 0,
    display_order INTEGER NOT NULL DEFAULT 0,
    UNIQUE(rank_id, version_year, requirement_number)
);

CREATE TABLE IF NOT EXISTS merit_badges (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    code TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    category TEXT,
    is_eagle_required INTEGER NOT NULL DEFAULT 0,
    requirement_version_year INTEGER,
    is_active INTEGER NOT NULL DEFAULT 1,
    image_url TEXT
);

CREATE TABLE IF NOT EXISTS merit_badge_versions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    merit_badge_id INTEGER NOT NULL REFERENCES merit_badges(id),
    version_year INTEGER NOT NULL,
    is_current INTEGER NOT NULL DEFAULT 0,
    source TEXT,
    UNIQUE(merit_badge_id, version_year)
);

CREATE TABLE IF NOT EXISTS merit_badge_requirements (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    merit_badge_id INTEGER NOT NULL REFERENCES merit_badges(id),
    version_year INTEGER NOT NULL,
    requirement_number TEXT NOT NULL,
    scoutbook_requirement_number TEXT,
    parent_requirement_id INTEGER REFERENCES merit_badge_requirements(id),
    description TEXT,
    is_header INTEGER NOT NULL DEFAULT 0,
    display_order INTEGER NOT NULL DEFAULT 0,
    UNIQUE(merit_badge_id, version_year, requirement_number)
);

CREATE TABLE IF NOT EXISTS leadership_positions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    code TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    qualifies_for_star INTEGER NOT NULL DEFAULT 0,
    qualifies_for_life INTEGER NOT NULL DEFAULT 0,
    qualifies_for_eagle INTEGER NOT NULL DEFAULT 0,
    min_tenure_months INTEGER
);

CREATE TABLE IF NOT EXISTS scout_rank_progress (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    scout_id INTEGER NOT NULL REFERENCES scouts(id),
    rank_id INTEGER NOT NULL REFERENCES ranks(id),
    status TEXT NOT NULL DEFAULT 'not_started',
    started_at TEXT,
    completed_at TEXT,
    approved_at TEXT,
    approved_by INTEGER REFERENCES profiles(id),
    awarded_at TEXT,
    awarded_by INTEGER REFERENCES profiles(id),
    created_at TEXT,
    updated_at TEXT,
    UNIQUE(scout_id, rank_id)
);

CREATE TABLE IF NOT EXISTS scout_rank_requirement_progress (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    rank_progress_id INTEGER NOT NULL
        REFERENCES scout_rank_progress(id) ON DELETE CASCADE,
    requirement_id INTEGER NOT NULL REFERENCES rank_requirements(id),
    status TEXT NOT NULL DEFAULT 'not_started',
    completed_at TEXT,
    completed_by INTEGER REFERENCES profiles(id),
    notes TEXT,
    submitted_at TEXT,
    submitted_by INTEGER REFERENCES profiles(id),
    submission_notes TEXT,
    approval_status TEXT,
    denial_reason TEXT,
    reviewed_at TEXT,
    reviewed_by INTEGER REFERENCES profiles(id),
    created_at TEXT,
    updated_at TEXT,
    UNIQUE(rank_progress_id, requirement_id)
);

CREATE TABLE IF NOT EXISTS scout_merit_badge_progress (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    scout_id INTEGER NOT NULL REFERENCES scouts(id),
    merit_badge_id INTEGER NOT NULL REFERENCES merit_badges(id),
    status TEXT NOT NULL DEFAULT 'not_started',
    requirement_version_year INTEGER,
    counselor_name TEXT,
    counselor_signed_at TEXT,
    started_at TEXT,
    completed_at TEXT,
    approved_at TEXT,
    approved_by INTEGER REFERENCES profiles(id),
    awarded_at TEXT,
    awarded_by INTEGER REFERENCES profiles(id),
    created_at TEXT,
    updated_at TEXT,
    UNIQUE(scout_id, merit_badge_id)
);

CREATE TABLE IF NOT EXISTS scout_merit_badge_requirement_progress (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    merit_badge_progress_id INTEGER NOT NULL
        REFERENCES scout_merit_badge_progress(id) ON DELETE CASCADE,
    requirement_id INTEGER NOT NULL REFERENCES merit_badge_requirements(id),
    status TEXT NOT NULL DEFAULT 'not_started',
    completed_at TEXT,
    completed_by INTEGER REFERENCES profiles(id),
    notes TEXT,
    submitted_at TEXT,
    submitted_by INTEGER REFERENCES profiles(id),
    submission_notes TEXT,
    approval_status TEXT,
    denial_reason TEXT,
    reviewed_at TEXT,
    reviewed_by INTEGER REFERENCES profiles(id),
    created_at TEXT,
    updated_at TEXT,
    UNIQUE(merit_badge_progress_id, requirement_id)
);

CREATE TABLE IF NOT EXISTS scout_leadership_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    scout_id INTEGER NOT NULL REFERENCES scouts(id),
    position_id INTEGER NOT NULL REFERENCES leadership_positions(id),
    unit_id INTEGER NOT NULL REFERENCES units(id),
    start_date TEXT NOT NULL,
    end_date TEXT,
    notes TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS scout_activity_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    scout_id INTEGER NOT NULL REFERENCES scouts(id),
    activity_type TEXT NOT NULL
        CHECK (activity_type IN ('camping', 'hiking', 'service', 'conservation')),
    activity_date TEXT NOT NULL,
    value REAL NOT NULL DEFAULT 0,
    description TEXT,
    location TEXT,
    verified_by INTEGER REFERENCES profiles(id),
    verified_at TEXT,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS import_requirement_mismatches (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    unit_id INTEGER NOT NULL REFERENCES units(id),
    imported_by INTEGER REFERENCES profiles(id),
    scout_id INTEGER REFERENCES scouts(id),
    bsa_member_id TEXT,
    scout_name TEXT,
    advancement_type TEXT NOT NULL,
    item_name TEXT,
    version_year INTEGER,
    requirement_number TEXT,
    error_reason TEXT,
    created_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_scouts_member_id
    ON scouts(unit_id, bsa_member_id);
CREATE INDEX IF NOT EXISTS idx_rank_req_version
    ON rank_requirements(rank_id, version_year);
CREATE INDEX IF NOT EXISTS idx_mb_req_version
    ON merit_badge_requirements(merit_badge_id, version_year);
CREATE INDEX IF NOT EXISTS idx_rank_progress_scout
    ON scout_rank_progress(scout_id);
CREATE INDEX IF NOT EXISTS idx_mb_progress_scout
    ON scout_merit_badge_progress(scout_id);
CREATE INDEX IF NOT EXISTS idx_rank_req_progress_approval
    ON scout_rank_requirement_progress(approval_status);
CREATE INDEX IF NOT EXISTS idx_mb_req_progress_approval
    ON scout_merit_badge_requirement_progress(approval_status);
CREATE INDEX IF NOT EXISTS idx_activity_scout
    ON scout_activity_entries(scout_id, activity_type);
"""

# (code, name, star, life, eagle, min_tenure_months)
STANDARD_LEADERSHIP_POSITIONS = [
    ("senior_patrol_leader", "Senior Patrol Leader", 1, 1, 1, 4),
    ("assistant_senior_patrol_leader", "Assistant Senior Patrol Leader", 1, 1, 1, 4),
    ("patrol_leader", "Patrol Leader", 1, 1, 1, 4),
    ("troop_guide", "Troop Guide", 1, 1, 1, 4),
    ("quartermaster", "Quartermaster", 1, 1, 1, 4),
    ("scribe", "Scribe", 1, 1, 1, 4),
    ("historian", "Historian", 1, 1, 1, 4),
    ("librarian", "Librarian", 1, 1, 1, 4),
    ("chaplain_aide", "Chaplain Aide", 1, 1, 1, 4),
    ("den_chief", "Den Chief", 1, 1, 1, 4),
    ("instructor", "Instructor", 1, 1, 1, 4),
    ("junior_assistant_scoutmaster", "Junior Assistant Scoutmaster", 1, 1, 1, 4),
    ("oa_troop_representative", "Order of the Arrow Troop Representative", 1, 1, 1, 4),
    ("webmaster", "Webmaster", 1, 1, 1, 4),
    ("outdoor_ethics_guide", "Outdoor Ethics Guide", 1, 1, 1, 4),
    ("assistant_patrol_leader", "Assistant Patrol Leader", 0, 0, 0, None),
    ("bugler", "Bugler", 0, 0, 0, None),
]


def now_iso():
    return datetime.now(timezone.utc).isoformat()


def get_connection(db_path=None):
    path = db_path or os.environ.get("ADVANCEMENT_DB_PATH") or str(DEFAULT_DB_PATH)
    conn = sqlite3.connect(path)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(conn, unit_name=None):
    conn.executescript(SCHEMA_SQL)
    conn.commit()
    # Migrations for existing databases
    for table, column in (
        ("scout_merit_badge_progress", "counselor_signed_at TEXT"),
        ("scout_activity_entries", "location TEXT"),
    ):
        try:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column}")
            conn.commit()
        except sqlite3.OperationalError:
            pass  # Column already exists
    seed_leadership_positions(conn)
    if unit_name is not None:
        unit_id = create_unit(conn, unit_name)
        set_setting(conn, "unit_id", str(unit_id))
        return unit_id
    return None


def set_setting(conn, key, value):
    conn.execute(
        "INSERT INTO settings (key, value) VALUES (?, ?) "
        "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (key, value),
    )
    conn.commit()


def get_setting(conn, key, default=None):
    row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
    return row["value"] if row and row["value"] is not None else default


def seed_leadership_positions(conn):
    for code, name, star, life, eagle, months in STANDARD_LEADERSHIP_POSITIONS:
        conn.execute(
            """INSERT OR IGNORE INTO leadership_positions
               (code, name, qualifies_for_star, qualifies_for_life,
                qualifies_for_eagle, min_tenure_months)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (code, name, star, life, eagle, months),
        )
    conn.commit()


# --- Batch helpers ---


def chunked(items, size=BATCH_SIZE):
    """Yield successive lists of at most ``size`` items."""
    items = list(items)
    for start in range(0, len(items), size):
        yield items[start:start + size]


def select_in(conn, sql, column, values, params=(), size=BATCH_SIZE):
    """Run ``sql`` once per chunk of ``values`` and return all rows.

    ``sql`` must contain a ``{in_clause}`` placeholder which is replaced by
    ``<column> IN (?, ?, ...)``. ``params`` are bound before the IN-list.
    """
    rows = []
    for chunk in chunked(dict.fromkeys(values), size):
        placeholders = ", ".join("?" for _ in chunk)
        query = sql.format(in_clause=f"{column} IN ({placeholders})")
        rows.extend(conn.execute(query, (*params, *chunk)).fetchall())
    return rows


def select_paged(conn, sql, params=(), page_size=PAGE_SIZE):
    """Read every row of an ordered query using LIMIT/OFFSET pages."""
    rows = []
    offset = 0
    while True:
        page = conn.execute(
            f"{sql} LIMIT ? OFFSET ?", (*params, page_size, offset)
        ).fetchall()
        rows.extend(page)
        if len(page) < page_size:
            return rows
        offset += page_size


# --- Units, profiles and roster ---


def create_unit(conn, name):
    cur = conn.execute(
        "INSERT INTO units (name, created_at) VALUES (?, ?)", (name, now_iso())
    )
    conn.commit()
    return cur.lastrowid


def create_profile(conn, first_name=None, last_name=None, email=None):
    cur = conn.execute(
        "INSERT INTO profiles (first_name, last_name, email, created_at) VALUES (?, ?, ?, ?)",
        (first_name, last_name, email, now_iso()),
    )
    conn.commit()
    return cur.lastrowid


def add_membership(conn, unit_id, profile_id, role, status="active"):
    conn.execute(
        """INSERT INTO unit_memberships (unit_id, profile_id, role, status)
           VALUES (?, ?, ?, ?)
           ON CONFLICT(unit_id, profile_id) DO UPDATE SET
               role = excluded.role,
               status = excluded.status""",
        (unit_id, profile_id, role, status),
    )
    conn.commit()


def add_guardian(conn, scout_id, profile_id, relationship=None):
    conn.execute(
        "INSERT OR IGNORE INTO scout_guardians (scout_id, profile_id, relationship) "
        "VALUES (?, ?, ?)",
        (scout_id, profile_id, relationship),
    )
    conn.commit()


def upsert_scout(conn, unit_id, first_name=None, last_name=None,
                 bsa_member_id=None, patrol=None, birthdate=None):
    """Insert a Scout, or update the one with the same member ID. Returns id."""
    now = now_iso()
    row = None
    if bsa_member_id:
        row = conn.execute(
            "SELECT id FROM scouts WHERE unit_id = ? AND bsa_member_id = ?",
            (unit_id, bsa_member_id),
        ).fetchone()
    if row:
        conn.execute(
            """UPDATE scouts SET
                   first_name = COALESCE(?, first_name),
                   last_name = COALESCE(?, last_name),
                   patrol = COALESCE(?, patrol),
                   birthdate = COALESCE(?, birthdate),
                   updated_at = ?
               WHERE id = ?""",
            (first_name, last_name, patrol, birthdate, now, row["id"]),
        )
        conn.commit()
        return row["id"]
    cur = conn.execute(
        """INSERT INTO scouts
           (unit_id, first_name, last_name, bsa_member_id, patrol, birthdate,
            is_active, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)""",
        (unit_id, first_name, last_name, bsa_member_id, patrol, birthdate, now, now),
    )
    conn.commit()
    return cur.lastrowid


ROSTER_COLUMNS = {
    "member_id": ("bsa_member_id", "scouting_member_id", "member_id", "memberid"),
    "first": ("first_name", "first", "firstname"),
    "last": ("last_name", "last", "lastname"),
    "name": ("name", "scout_name", "scoutname"),
    "patrol": ("patrol", "patrol_name", "patrolname"),
    "birthdate": ("birthdate", "date_of_birth", "dob"),
    "type": ("type", "member_type", "membertype"),
}


def _header_key(header):
    return "_".join(header.strip().lower().split())


def _roster_columns(headers):
    """Map each ROSTER_COLUMNS field to the header that carries it, or None."""
    by_key = {_header_key(h): h for h in headers}
    return {
        field: next((by_key[k] for k in keys if k in by_key), None)
        for field, keys in ROSTER_COLUMNS.items()
    }


def import_roster_csv(conn, unit_id, csv_path):
    """Load a unit's Scouts from a roster CSV.

    Headers are matched loosely against ROSTER_COLUMNS. A single name column
    is split into first and last name when separate columns are absent.
    When a member type column is present, only YOUTH rows are kept. Returns
    (imported_count, skipped_count).
    """
    with open(csv_path, newline="", encoding="utf-8-sig") as f:
        reader = csv.DictReader(f)
        cols = _roster_columns(reader.fieldnames or [])
        if not cols["member_id"]:
            raise ValueError(f"Roster needs a 'BSA Member ID' column, got {reader.fieldnames}")
        split_name = cols["name"] and not (cols["first"] or cols["last"])

        def cell(row, field):
            return (row.get(cols[field]) or "").strip() if cols[field] else ""

        imported = skipped = 0
        for row in reader:
            member_id = cell(row, "member_id")
            if not member_id or (cols["type"] and cell(row, "type").upper() != "YOUTH"):
                skipped += 1
                continue
            if split_name:
                first, _, last = cell(row, "name").partition(" ")
            else:
                first, last = cell(row, "first"), cell(row, "last")
            upsert_scout(conn, unit_id, first or None, last or None, member_id,
                         cell(row, "patrol") or None, cell(row, "birthdate") or None)
            imported += 1
    return imported, skipped
