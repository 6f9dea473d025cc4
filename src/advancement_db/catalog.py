"""Requirement catalog: loading, version resolution and requirement lookup."""

import logging
from typing import NamedTuple

from advancement_db.db import select_paged
from advancement_db.errors import NoVersionConfigured, NotFound
from advancement_db.normalize import badge_name_keys, normalize_badge_name, requirement_candidates

log = logging.getLogger(__name__)


class Track(NamedTuple):
    """Table names for one kind of advancement (ranks or merit badges)."""

    kind: str
    label: str
    item_table: str
    requirement_table: str
    item_fk: str
    progress_table: str
    requirement_progress_table: str
    progress_fk: str


RANK = Track(
    kind="rank",
    label="Rank",
    item_table="ranks",
    requirement_table="rank_requirements",
    item_fk="rank_id",
    progress_table="scout_rank_progress",
    requirement_progress_table="scout_rank_requirement_progress",
    progress_fk="rank_progress_id",
)

MERIT_BADGE = Track(
    kind="merit_badge",
    label="Merit Badge",
    item_table="merit_badges",
    requirement_table="merit_badge_requirements",
    item_fk="merit_badge_id",
    progress_table="scout_merit_badge_progress",
    requirement_progress_table="scout_merit_badge_requirement_progress",
    progress_fk="merit_badge_progress_id",
)

TRACKS = {RANK.kind: RANK, MERIT_BADGE.kind: MERIT_BADGE}


def get_track(kind):
    if isinstance(kind, Track):
        return kind
    try:
        return TRACKS[kind]
    except KeyError:
        raise ValueError(f"Unknown advancement kind: {kind!r}") from None


# --- Loading ---


def _flag(value):
    return 1 if str(value).lower() in ("1", "true", "yes") else 0


def upsert_rank(conn, rank):
    conn.execute(
        """INSERT INTO ranks
           (code, name, display_order, is_eagle_required, requirement_version_year, image_url)
           VALUES (?, ?, ?, ?, ?, ?)
           ON CONFLICT(code) DO UPDATE SET
               name = excluded.name,
               display_order = excluded.display_order,
               is_eagle_required = excluded.is_eagle_required,
               requirement_version_year = excluded.requirement_version_year,
               image_url = COALESCE(excluded.image_url, image_url)""",
        (
            rank["code"],
            rank["name"],
            int(rank.get("display_order", 0)),
            _flag(rank.get("is_eagle_required", True)),
            rank.get("requirement_version_year"),
            rank.get("image_url"),
        ),
    )
    return conn.execute("SELECT id FROM ranks WHERE code = ?", (rank["code"],)).fetchone()["id"]


def upsert_merit_badge(conn, badge):
    code = badge.get("code") or normalize_badge_name(badge["name"])
    conn.execute(
        """INSERT INTO merit_badges
           (code, name, category, is_eagle_required, requirement_version_year, is_active, image_url)
           VALUES (?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(code) DO UPDATE SET
               name = excluded.name,
               category = COALESCE(excluded.category, category),
               is_eagle_required = excluded.is_eagle_required,
               requirement_version_year = COALESCE(excluded.requirement_version_year,
                                                   requirement_version_year),
               is_active = excluded.is_active,
               image_url = COALESCE(excluded.image_url, image_url)""",
        (
            code,
            badge["name"],
            badge.get("category"),
            _flag(badge.get("is_eagle_required", False)),
            badge.get("requirement_version_year"),
            _flag(badge.get("is_active", True)),
            badge.get("image_url"),
        ),
    )
    return conn.execute("SELECT id FROM merit_badges WHERE code = ?", (code,)).fetchone()["id"]


def upsert_badge_version(conn, badge_id, version_year, is_current=False, source=None):
    if is_current:
        conn.execute(
            "UPDATE merit_badge_versions SET is_current = 0 WHERE merit_badge_id = ?",
            (badge_id,),
        )
    conn.execute(
        """INSERT INTO merit_badge_versions (merit_badge_id, version_year, is_current, source)
           VALUES (?, ?, ?, ?)
           ON CONFLICT(merit_badge_id, version_year) DO UPDATE SET
               is_current = excluded.is_current,
               source = COALESCE(excluded.source, source)""",
        (badge_id, version_year, 1 if is_current else 0, source),
    )


def upsert_requirements(conn, kind, item_id, version_year, requirements):
    """Insert/update a requirement tree for one catalog item and version.

    Recursively walks nested ``children`` so sub-requirements are stored with
    their parent id. Returns count.
    """
    track = get_track(kind)
    count = 0
    order = 0

    def _walk(reqs, parent_id=None):
        nonlocal count, order
        for req in reqs:
            number = str(req.get("number") or req.get("requirement_number") or "").strip()
            if not number:
                continue
            order += 1
            conn.execute(
                f"""INSERT INTO {track.requirement_table}
                    ({track.item_fk}, version_year, requirement_number,
                     scoutbook_requirement_number, parent_requirement_id,
                     description, is_header, display_order)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT({track.item_fk}, version_year, requirement_number) DO UPDATE SET
                        scoutbook_requirement_number = excluded.scoutbook_requirement_number,
                        parent_requirement_id = excluded.parent_requirement_id,
                        description = excluded.description,
                        is_header = excluded.is_header,
                        display_order = excluded.display_order""",
                (
                    item_id,
                    version_year,
                    number,
                    req.get("scoutbook_number"),
                    parent_id,
                    req.get("description"),
                    _flag(req.get("is_header", False)),
                    order,
                ),
            )
            req_id = conn.execute(
                f"""SELECT id FROM {track.requirement_table}
                    WHERE {track.item_fk} = ? AND version_year = ? AND requirement_number = ?""",
                (item_id, version_year, number),
            ).fetchone()["id"]
            count += 1
            children = req.get("children") or req.get("requirements") or []
            if children:
                _walk(children, parent_id=req_id)

    _walk(requirements)
    return count


def load_catalog(conn, data):
    """Load ranks, merit badges and leadership positions from a catalog document.

    Returns a dict of counts.
    """
    counts = {"ranks": 0, "merit_badges": 0, "requirements": 0, "leadership_positions": 0}
    for rank in data.get("ranks") or []:
        rank_id = upsert_rank(conn, rank)
        counts["ranks"] += 1
        version = rank.get("requirement_version_year")
        if version is not None:
            counts["requirements"] += upsert_requirements(
                conn, RANK, rank_id, version, rank.get("requirements") or []
            )
    for badge in data.get("merit_badges") or []:
        badge_id = upsert_merit_badge(conn, badge)
        counts["merit_badges"] += 1
        for version in badge.get("versions") or []:
            year = int(version["version_year"])
            upsert_badge_version(conn, badge_id, year, version.get("is_current", False),
                                 version.get("source"))
            counts["requirements"] += upsert_requirements(
                conn, MERIT_BADGE, badge_id, year, version.get("requirements") or []
            )
    for position in data.get("leadership_positions") or []:
        conn.execute(
            """INSERT INTO leadership_positions
               (code, name, qualifies_for_star, qualifies_for_life,
                qualifies_for_eagle, min_tenure_months)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(code) DO UPDATE SET
                   name = excluded.name,
                   qualifies_for_star = excluded.qualifies_for_star,
                   qualifies_for_life = excluded.qualifies_for_life,
                   qualifies_for_eagle = excluded.qualifies_for_eagle,
                   min_tenure_months = excluded.min_tenure_months""",
            (
                position["code"],
                position["name"],
                _flag(position.get("qualifies_for_star", False)),
                _flag(position.get("qualifies_for_life", False)),
                _flag(position.get("qualifies_for_eagle", False)),
                position.get("min_tenure_months"),
            ),
        )
        counts["leadership_positions"] += 1
    conn.commit()
    log.info("Loaded catalog: %s", counts)
    return counts


# --- Resolution ---


def get_item(conn, kind, item_id):
    track = get_track(kind)
    row = conn.execute(
        f"SELECT * FROM {track.item_table} WHERE id = ?", (item_id,)
    ).fetchone()
    if not row:
        raise NotFound(f"{track.label} {item_id} not found")
    return row


def effective_version(conn, kind, item_id):
    """Return the requirement version year new enrollments should pin.

    Merit badges prefer the version flagged current, then the badge's default
    year. Ranks have a single version year. Raises NoVersionConfigured when
    neither is set.
    """
    track = get_track(kind)
    item = get_item(conn, track, item_id)
    if track is MERIT_BADGE:
        current = conn.execute(
            """SELECT version_year FROM merit_badge_versions
               WHERE merit_badge_id = ? AND is_current = 1
               ORDER BY version_year DESC LIMIT 1""",
            (item_id,),
        ).fetchone()
        if current:
            return current["version_year"]
    if item["requirement_version_year"] is None:
        raise NoVersionConfigured(
            f"{track.label} {item['name']} has no requirement version configured"
        )
    return item["requirement_version_year"]


def badge_versions(conn, badge_id):
    """Known version years for a badge, newest first, with requirement counts."""
    return conn.execute(
        """
        SELECT
            v.version_year,
            v.is_current,
            v.source,
            (SELECT COUNT(*) FROM merit_badge_requirements r
             WHERE r.merit_badge_id = v.merit_badge_id
               AND r.version_year = v.version_year) AS requirement_count
        FROM merit_badge_versions v
        WHERE v.merit_badge_id = ?
        ORDER BY v.version_year DESC
        """,
        (badge_id,),
    ).fetchall()


def requirements_for(conn, kind, item_id, version_year, include_headers=True):
    track = get_track(kind)
    header_filter = "" if include_headers else "AND is_header = 0"
    return select_paged(
        conn,
        f"""SELECT * FROM {track.requirement_table}
            WHERE {track.item_fk} = ? AND version_year = ? {header_filter}
            ORDER BY display_order, id""",
        (item_id, version_year),
    )


def child_requirements(conn, kind, requirement_id):
    track = get_track(kind)
    return conn.execute(
        f"""SELECT * FROM {track.requirement_table}
            WHERE parent_requirement_id = ?
            ORDER BY display_order, id""",
        (requirement_id,),
    ).fetchall()


def find_rank(conn, code_or_name):
    key = (code_or_name or "").strip()
    return conn.execute(
        "SELECT * FROM ranks WHERE code = ? OR LOWER(name) = LOWER(?)",
        (normalize_badge_name(key), key),
    ).fetchone()


def find_merit_badge(conn, name):
    """Look a badge up by code or normalized name, then by its alias."""
    for key in badge_name_keys(name):
        row = conn.execute("SELECT * FROM merit_badges WHERE code = ?", (key,)).fetchone()
        if row:
            return row
    return None


class CatalogIndex:
    """In-memory lookup over the whole catalog for bulk matching.

    Only completable (non-header) requirements are indexed. Requirement
    numbers and external alias numbers both resolve to the requirement id.
    """

    def __init__(self, conn):
        self.ranks_by_code = {}
        self.badges_by_code = {}
        self.current_badge_versions = {}
        self._by_version = {}
        self._any_version = {}

        for row in conn.execute("SELECT * FROM ranks").fetchall():
            self.ranks_by_code[row["code"]] = row
        for row in conn.execute("SELECT * FROM merit_badges").fetchall():
            self.badges_by_code[row["code"]] = row
        for row in conn.execute(
            "SELECT merit_badge_id, version_year FROM merit_badge_versions WHERE is_current = 1"
        ).fetchall():
            self.current_badge_versions[row["merit_badge_id"]] = row["version_year"]

        for track in (RANK, MERIT_BADGE):
            rows = select_paged(
                conn,
                f"""SELECT id, {track.item_fk} AS item_id, version_year,
                           requirement_number, scoutbook_requirement_number
                    FROM {track.requirement_table}
                    WHERE is_header = 0
                    ORDER BY version_year DESC, id""",
            )
            for row in rows:
                for number in (row["requirement_number"], row["scoutbook_requirement_number"]):
                    if not number:
                        continue
                    self._by_version.setdefault(
                        (track.kind, row["item_id"], row["version_year"], number), row["id"]
                    )
                    self._any_version.setdefault((track.kind, row["item_id"], number), row["id"])

    def find_badge(self, name):
        for key in badge_name_keys(name):
            if key in self.badges_by_code:
                return self.badges_by_code[key]
        return None

    def badge_version(self, badge):
        """Effective version for a badge row, or None when unconfigured."""
        return self.current_badge_versions.get(badge["id"], badge["requirement_version_year"])

    def resolve(self, kind, item_id, number, versions):
        """Return the requirement id for an external number, or None.

        The number as given is tried in every version year first, then each
        normalized candidate in turn across every version year. Only the
        number as given is tried outside those versions.
        """
        kind = get_track(kind).kind
        versions = [v for v in dict.fromkeys(versions) if v is not None]
        for candidate in [number] + requirement_candidates(number):
            for version in versions:
                req_id = self._by_version.get((kind, item_id, version, candidate))
                if req_id:
                    return req_id
        req_id = self._any_version.get((kind, item_id, number))
        if req_id:
            log.debug("Matched %s requirement %s outside version scope", kind, number)
        return req_id
