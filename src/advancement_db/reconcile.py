"""Reconcile a troop advancement export against the ledger.

Staging is read-only: it matches exported Scouts to the unit roster by
member ID and classifies every claimed rank, badge and requirement as
``new``, ``duplicate`` (already terminal) or ``update``. Import takes the
staged session plus the member IDs the leader selected, re-reads live state
and writes in dependency order: Scouts, enrollments, coverage rows, then
requirement completions. Writes go in fixed-size batches; a failed batch is
reported and the rest continue. Requirements that match nothing in the
catalog are written to ``import_requirement_mismatches``.
"""

import logging
import sqlite3
from dataclasses import dataclass, field

from advancement_db.auth import require_leader
from advancement_db.catalog import MERIT_BADGE, RANK, CatalogIndex
from advancement_db.db import chunked, now_iso, select_in
from advancement_db.errors import ValidationFailed, action
from advancement_db.notes import append_note, make_note
from advancement_db.progress import DONE_STATUSES
from advancement_db.troop_csv import validate_parsed_data

log = logging.getLogger(__name__)

ENROLLMENT_DONE = ("awarded", "completed")


@dataclass
class StagedItem:
    category: str
    name: str
    status: str
    item_id: int | None = None
    requirement_number: str | None = None
    requirement_id: int | None = None
    version: int | None = None
    date: str | None = None
    existing_id: int | None = None


@dataclass
class StagedScout:
    member_id: str
    first_name: str
    last_name: str
    match_status: str
    scout_id: int | None = None
    ranks: list = field(default_factory=list)
    rank_requirements: list = field(default_factory=list)
    merit_badges: list = field(default_factory=list)
    merit_badge_requirements: list = field(default_factory=list)
    source: object = None

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()

    def items(self):
        return self.ranks + self.rank_requirements + self.merit_badges + self.merit_badge_requirements


@dataclass
class StagedSession:
    unit_id: int
    scouts: list
    summary: dict
    warnings: list


@dataclass
class ImportResult:
    scouts_created: int = 0
    ranks_imported: int = 0
    rank_requirements_imported: int = 0
    badges_imported: int = 0
    badge_requirements_imported: int = 0
    duplicates_skipped: int = 0
    mismatches_logged: int = 0
    warnings: list = field(default_factory=list)

    def warn(self, message):
        if message not in self.warnings:
            self.warnings.append(message)


@dataclass
class _LiveState:
    enrollments: dict = field(default_factory=dict)
    requirements: dict = field(default_factory=dict)

    def enrollment(self, track, scout_id, item_id):
        return self.enrollments.get((track.kind, scout_id, item_id))

    def requirement(self, track, enrollment_id, requirement_id):
        return self.requirements.get((track.kind, enrollment_id, requirement_id))


# --- Shared reads ---


def _roster(conn, unit_id, member_ids):
    rows = select_in(
        conn,
        "SELECT id, bsa_member_id, first_name, last_name FROM scouts "
        "WHERE unit_id = ? AND {in_clause}",
        "bsa_member_id",
        member_ids,
        params=(unit_id,),
    )
    return {row["bsa_member_id"]: row for row in rows}


def _load_state(conn, scout_ids):
    """Batch-read enrollments and requirement rows for the Scouts."""
    state = _LiveState()
    for track in (RANK, MERIT_BADGE):
        version_col = "requirement_version_year" if track is MERIT_BADGE else "NULL AS requirement_version_year"
        enrollments = select_in(
            conn,
            f"""SELECT id, scout_id, {track.item_fk} AS item_id, status, {version_col}
                FROM {track.progress_table} WHERE {{in_clause}}""",
            "scout_id",
            scout_ids,
        )
        for row in enrollments:
            state.enrollments[(track.kind, row["scout_id"], row["item_id"])] = row
        requirements = select_in(
            conn,
            f"""SELECT id, {track.progress_fk} AS enrollment_id, requirement_id, status, notes
                FROM {track.requirement_progress_table} WHERE {{in_clause}}""",
            track.progress_fk,
            [row["id"] for row in enrollments],
        )
        for row in requirements:
            state.requirements[(track.kind, row["enrollment_id"], row["requirement_id"])] = row
    return state


def _classify(existing, done_statuses):
    if existing is None:
        return "new"
    if existing["status"] in done_statuses:
        return "duplicate"
    return "update"


def _badge_version(index, badge, claim_version, enrollment):
    if enrollment is not None and enrollment["requirement_version_year"] is not None:
        return enrollment["requirement_version_year"]
    if claim_version is not None:
        return claim_version
    return index.badge_version(badge)


def _requirement_versions(track, index, item, claim_version, enrollment):
    if track is RANK:
        return [claim_version, item["requirement_version_year"]]
    pinned = enrollment["requirement_version_year"] if enrollment is not None else None
    return [claim_version, pinned, index.badge_version(item)]


# --- Staging ---


@action("Failed to stage import")
def stage_troop_advancement(conn, profile_id, unit_id, parsed):
    """Classify a parsed export against current state without writing anything."""
    require_leader(conn, profile_id, unit_id)
    problems = validate_parsed_data(parsed)
    if problems:
        raise ValidationFailed("; ".join(problems))

    index = CatalogIndex(conn)
    roster = _roster(conn, unit_id, list(parsed.scouts))
    state = _load_state(conn, [row["id"] for row in roster.values()])
    warnings = list(parsed.errors)

    def _warn(message):
        if message not in warnings:
            warnings.append(message)

    staged = []
    for member_id, source in parsed.scouts.items():
        match = roster.get(member_id)
        scout_id = match["id"] if match else None
        scout = StagedScout(
            member_id=member_id,
            first_name=source.first_name,
            last_name=source.last_name,
            match_status="matched" if match else "unmatched",
            scout_id=scout_id,
            source=source,
        )

        for claim in source.ranks:
            rank = index.ranks_by_code.get(claim.code)
            if rank is None:
                _warn(f"Unknown rank: {claim.name}")
                scout.ranks.append(StagedItem("rank", claim.name, "unknown"))
                continue
            existing = state.enrollment(RANK, scout_id, rank["id"])
            scout.ranks.append(StagedItem(
                "rank", rank["name"], _classify(existing, ENROLLMENT_DONE), rank["id"],
                version=claim.version, date=claim.awarded_date,
                existing_id=existing["id"] if existing else None,
            ))

        for claim in source.merit_badges:
            badge = index.find_badge(claim.name)
            if badge is None:
                _warn(f"Unknown merit badge: {claim.name}")
                scout.merit_badges.append(StagedItem("merit_badge", claim.name, "unknown"))
                continue
            existing = state.enrollment(MERIT_BADGE, scout_id, badge["id"])
            scout.merit_badges.append(StagedItem(
                "merit_badge", badge["name"], _classify(existing, ENROLLMENT_DONE), badge["id"],
                version=claim.version, date=claim.awarded_date,
                existing_id=existing["id"] if existing else None,
            ))

        requirement_claims = [
            (RANK, "rank_requirement", index.ranks_by_code.get(c.rank_code), c.rank_code, c)
            for c in source.rank_requirements
        ] + [
            (MERIT_BADGE, "merit_badge_requirement", index.find_badge(c.badge_name), c.badge_name, c)
            for c in source.merit_badge_requirements
        ]
        for track, category, item, label, claim in requirement_claims:
            bucket = scout.rank_requirements if track is RANK else scout.merit_badge_requirements
            if item is None:
                _warn(f"Unknown {track.label.lower()}: {label}")
                bucket.append(StagedItem(category, label, "unknown",
                                         requirement_number=claim.requirement_number))
                continue
            enrollment = state.enrollment(track, scout_id, item["id"])
            req_id = index.resolve(
                track, item["id"], claim.requirement_number,
                _requirement_versions(track, index, item, claim.version, enrollment),
            )
            existing = None
            if enrollment is not None and req_id is not None:
                existing = state.requirement(track, enrollment["id"], req_id)
            status = "unmatched" if req_id is None else _classify(existing, DONE_STATUSES)
            bucket.append(StagedItem(
                category, item["name"], status, item["id"],
                requirement_number=claim.requirement_number, requirement_id=req_id,
                version=claim.version, date=claim.completed_date,
                existing_id=existing["id"] if existing else None,
            ))
        staged.append(scout)

    staged.sort(key=lambda s: (s.match_status != "matched", s.last_name.lower(), s.first_name.lower()))
    session = StagedSession(unit_id, staged, _summarize(staged), warnings)
    log.info("Staged %d scouts: %s", len(staged), session.summary)
    return session


def _summarize(staged):
    summary = {
        "total_scouts": len(staged),
        "matched": 0,
        "unmatched": 0,
        "new_ranks": 0,
        "new_rank_requirements": 0,
        "new_merit_badges": 0,
        "new_merit_badge_requirements": 0,
        "duplicates": 0,
        "updates": 0,
        "unmatched_requirements": 0,
    }
    for scout in staged:
        summary[scout.match_status] += 1
        for item in scout.items():
            if item.status == "new":
                summary[f"new_{item.category}s"] += 1
            elif item.status == "duplicate":
                summary["duplicates"] += 1
            elif item.status == "update":
                summary["updates"] += 1
            elif item.status == "unmatched":
                summary["unmatched_requirements"] += 1
    return summary


# --- Import ---


def _write_batches(conn, sql, rows, label, result):
    """executemany in chunks; a failing chunk is rolled back and reported."""
    written = 0
    for chunk in chunked(rows):
        try:
            cur = conn.executemany(sql, chunk)
            conn.commit()
            written += cur.rowcount
        except sqlite3.IntegrityError as e:
            conn.rollback()
            log.warning("%s: batch of %d rows failed: %s", label, len(chunk), e)
            result.warn(f"{label}: a batch of {len(chunk)} rows failed ({e})")
    return written


def _create_scouts(conn, unit_id, sources, result):
    now = now_iso()
    rows = [
        (unit_id, s.first_name or None, s.last_name or None, s.member_id, now, now)
        for s in sources
    ]
    result.scouts_created += _write_batches(
        conn,
        """INSERT INTO scouts
           (unit_id, first_name, last_name, bsa_member_id, is_active, created_at, updated_at)
           VALUES (?, ?, ?, ?, 1, ?, ?)""",
        rows,
        "Creating scouts",
        result,
    )


def _import_enrollments(conn, auth, index, working, state, result):
    now = now_iso()
    rank_inserts, rank_updates = [], []
    badge_inserts, badge_updates = [], []
    planned = set()

    for source, scout_id in working:
        for claim in source.ranks:
            rank = index.ranks_by_code.get(claim.code)
            if rank is None:
                result.warn(f"Unknown rank: {claim.name}")
                continue
            if (RANK.kind, scout_id, rank["id"]) in planned:
                continue
            planned.add((RANK.kind, scout_id, rank["id"]))
            existing = state.enrollment(RANK, scout_id, rank["id"])
            status = _classify(existing, ENROLLMENT_DONE)
            awarded = claim.awarded_date or now
            if status == "duplicate":
                result.duplicates_skipped += 1
            elif status == "new":
                rank_inserts.append((scout_id, rank["id"], awarded, awarded, awarded,
                                     auth.actor_id, now, now))
            else:
                rank_updates.append((awarded, awarded, auth.actor_id, now, existing["id"]))

        for claim in source.merit_badges:
            badge = index.find_badge(claim.name)
            if badge is None:
                result.warn(f"Unknown merit badge: {claim.name}")
                continue
            if (MERIT_BADGE.kind, scout_id, badge["id"]) in planned:
                continue
            planned.add((MERIT_BADGE.kind, scout_id, badge["id"]))
            existing = state.enrollment(MERIT_BADGE, scout_id, badge["id"])
            status = _classify(existing, ENROLLMENT_DONE)
            awarded = claim.awarded_date or now
            if status == "duplicate":
                result.duplicates_skipped += 1
            elif status == "new":
                version = _badge_version(index, badge, claim.version, None)
                if version is None:
                    result.warn(f"{badge['name']} has no requirement version configured; skipped")
                    continue
                badge_inserts.append((scout_id, badge["id"], version, awarded, awarded, awarded,
                                      auth.actor_id, now, now))
            else:
                badge_updates.append((awarded, awarded, auth.actor_id, claim.version, now,
                                      existing["id"]))

    result.ranks_imported += _write_batches(
        conn,
        """INSERT OR IGNORE INTO scout_rank_progress
           (scout_id, rank_id, status, started_at, completed_at, awarded_at, awarded_by,
            created_at, updated_at)
           VALUES (?, ?, 'awarded', ?, ?, ?, ?, ?, ?)""",
        rank_inserts,
        "Importing ranks",
        result,
    )
    result.ranks_imported += _write_batches(
        conn,
        """UPDATE scout_rank_progress SET
               status = 'awarded',
               completed_at = COALESCE(completed_at, ?),
               awarded_at = ?,
               awarded_by = ?,
               updated_at = ?
           WHERE id = ? AND status NOT IN ('awarded', 'completed')""",
        rank_updates,
        "Updating ranks",
        result,
    )
    result.badges_imported += _write_batches(
        conn,
        """INSERT OR IGNORE INTO scout_merit_badge_progress
           (scout_id, merit_badge_id, status, requirement_version_year, started_at,
            completed_at, awarded_at, awarded_by, created_at, updated_at)
           VALUES (?, ?, 'awarded', ?, ?, ?, ?, ?, ?, ?)""",
        badge_inserts,
        "Importing merit badges",
        result,
    )
    result.badges_imported += _write_batches(
        conn,
        """UPDATE scout_merit_badge_progress SET
               status = 'awarded',
               completed_at = COALESCE(completed_at, ?),
               awarded_at = ?,
               awarded_by = ?,
               requirement_version_year = COALESCE(requirement_version_year, ?),
               updated_at = ?
           WHERE id = ? AND status NOT IN ('awarded', 'completed')""",
        badge_updates,
        "Updating merit badges",
        result,
    )


def _refresh_current_rank(conn, scout_ids):
    """Set each Scout's current rank to the highest awarded rank."""
    for chunk in chunked(scout_ids):
        placeholders = ", ".join("?" for _ in chunk)
        conn.execute(
            f"""
            UPDATE scouts SET rank = (
                SELECT r.name FROM scout_rank_progress p
                JOIN ranks r ON r.id = p.rank_id
                WHERE p.scout_id = scouts.id AND p.status = 'awarded'
                ORDER BY r.display_order DESC LIMIT 1
            )
            WHERE id IN ({placeholders})
              AND EXISTS (SELECT 1 FROM scout_rank_progress p
                          WHERE p.scout_id = scouts.id AND p.status = 'awarded')
            """,
            chunk,
        )
    conn.commit()


def _requirement_plan(index, working, result):
    plan = []
    for source, scout_id in working:
        for claim in source.rank_requirements:
            rank = index.ranks_by_code.get(claim.rank_code)
            if rank is None:
                result.warn(f"Unknown rank: {claim.rank_code}")
                continue
            plan.append((RANK, source, scout_id, rank, claim))
        for claim in source.merit_badge_requirements:
            badge = index.find_badge(claim.badge_name)
            if badge is None:
                result.warn(f"Unknown merit badge: {claim.badge_name}")
                continue
            plan.append((MERIT_BADGE, source, scout_id, badge, claim))
    return plan


def _ensure_requirement_enrollments(conn, index, plan, state, result):
    """Create in-progress enrollments for requirement claims that lack one."""
    now = now_iso()
    rank_rows, badge_rows = {}, {}
    for track, _, scout_id, item, claim in plan:
        if state.enrollment(track, scout_id, item["id"]) is not None:
            continue
        if track is RANK:
            rank_rows.setdefault((scout_id, item["id"]), (scout_id, item["id"], now, now, now))
        else:
            version = _badge_version(index, item, claim.version, None)
            if version is None:
                result.warn(f"{item['name']} has no requirement version configured; skipped")
                continue
            badge_rows.setdefault((scout_id, item["id"]),
                                  (scout_id, item["id"], version, now, now, now))
    _write_batches(
        conn,
        """INSERT OR IGNORE INTO scout_rank_progress
           (scout_id, rank_id, status, started_at, created_at, updated_at)
           VALUES (?, ?, 'in_progress', ?, ?, ?)""",
        list(rank_rows.values()),
        "Creating rank progress",
        result,
    )
    _write_batches(
        conn,
        """INSERT OR IGNORE INTO scout_merit_badge_progress
           (scout_id, merit_badge_id, status, requirement_version_year, started_at,
            created_at, updated_at)
           VALUES (?, ?, 'in_progress', ?, ?, ?, ?)""",
        list(badge_rows.values()),
        "Creating merit badge progress",
        result,
    )


def _coverage_rows(conn, plan, state):
    """(track, rows) pairs giving a not_started row per requirement of each enrollment."""
    cache = {}
    rows = {RANK.kind: [], MERIT_BADGE.kind: []}
    seen = set()
    now = now_iso()
    for track, _, scout_id, item, _ in plan:
        enrollment = state.enrollment(track, scout_id, item["id"])
        if enrollment is None or (track.kind, enrollment["id"]) in seen:
            continue
        seen.add((track.kind, enrollment["id"]))
        version = (item["requirement_version_year"] if track is RANK
                   else enrollment["requirement_version_year"])
        if version is None:
            continue
        key = (track.kind, item["id"], version)
        if key not in cache:
            cache[key] = [
                r["id"] for r in conn.execute(
                    f"""SELECT id FROM {track.requirement_table}
                        WHERE {track.item_fk} = ? AND version_year = ? AND is_header = 0""",
                    (item["id"], version),
                ).fetchall()
            ]
        rows[track.kind].extend((enrollment["id"], req_id, now, now) for req_id in cache[key])
    return rows


def _insert_requirement_rows(conn, rows, result):
    for track in (RANK, MERIT_BADGE):
        _write_batches(
            conn,
            f"""INSERT OR IGNORE INTO {track.requirement_progress_table}
                ({track.progress_fk}, requirement_id, status, created_at, updated_at)
                VALUES (?, ?, 'not_started', ?, ?)""",
            rows[track.kind],
            f"Creating {track.label.lower()} requirement rows",
            result,
        )


def _import_requirements(conn, auth, unit_id, index, working, scout_ids, result):
    plan = _requirement_plan(index, working, result)
    if not plan:
        return
    state = _load_state(conn, scout_ids)
    _ensure_requirement_enrollments(conn, index, plan, state, result)
    state = _load_state(conn, scout_ids)
    _insert_requirement_rows(conn, _coverage_rows(conn, plan, state), result)

    resolved = []
    mismatches = []
    extra = {RANK.kind: [], MERIT_BADGE.kind: []}
    now = now_iso()
    for track, source, scout_id, item, claim in plan:
        enrollment = state.enrollment(track, scout_id, item["id"])
        if enrollment is None:
            continue
        req_id = index.resolve(
            track, item["id"], claim.requirement_number,
            _requirement_versions(track, index, item, claim.version, enrollment),
        )
        if req_id is None:
            log.debug("No %s requirement %s for %s", item["name"], claim.requirement_number,
                      source.member_id)
            mismatches.append((
                unit_id, auth.actor_id, scout_id, source.member_id, source.full_name,
                track.kind, item["name"], claim.version, claim.requirement_number,
                "No matching requirement in catalog", now,
            ))
            continue
        resolved.append((track, enrollment, req_id, claim))
        if state.requirement(track, enrollment["id"], req_id) is None:
            extra[track.kind].append((enrollment["id"], req_id, now, now))

    if extra[RANK.kind] or extra[MERIT_BADGE.kind]:
        # Matched outside the enrollment's version: give those requirements rows too.
        _insert_requirement_rows(conn, extra, result)
        state = _load_state(conn, scout_ids)

    updates = {RANK.kind: [], MERIT_BADGE.kind: []}
    planned = set()
    for track, enrollment, req_id, claim in resolved:
        key = (track.kind, enrollment["id"], req_id)
        row = state.requirement(track, enrollment["id"], req_id)
        if key in planned or row is None or row["status"] in DONE_STATUSES:
            result.duplicates_skipped += 1
            continue
        planned.add(key)
        version = f", {claim.version}" if claim.version else ""
        note = make_note(
            f"Imported from troop advancement export (requirement {claim.requirement_number}{version})",
            auth.display_name, auth.actor_id, "completion",
        )
        updates[track.kind].append((
            claim.completed_date or now, auth.actor_id, append_note(row["notes"], note),
            now, row["id"],
        ))

    for track in (RANK, MERIT_BADGE):
        written = _write_batches(
            conn,
            f"""UPDATE {track.requirement_progress_table} SET
                    status = 'completed',
                    completed_at = ?,
                    completed_by = ?,
                    notes = ?,
                    updated_at = ?
                WHERE id = ? AND status NOT IN ('completed', 'approved', 'awarded')""",
            updates[track.kind],
            f"Completing {track.label.lower()} requirements",
            result,
        )
        if track is RANK:
            result.rank_requirements_imported += written
        else:
            result.badge_requirements_imported += written

    if mismatches:
        result.mismatches_logged += _write_batches(
            conn,
            """INSERT INTO import_requirement_mismatches
               (unit_id, imported_by, scout_id, bsa_member_id, scout_name, advancement_type,
                item_name, version_year, requirement_number, error_reason, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            mismatches,
            "Logging unmatched requirements",
            result,
        )
        result.warn(f"{len(mismatches)} requirement(s) could not be matched and were logged for review")


@action("Failed to import advancement")
def import_staged_advancement(conn, profile_id, unit_id, session, selected_member_ids,
                              create_unmatched_scouts=False):
    """Write the selected Scouts' claims from a staged session.

    Current state is re-read rather than trusted from staging, so running the
    same import twice writes nothing the second time.
    """
    auth = require_leader(conn, profile_id, unit_id)
    if session.unit_id != unit_id:
        raise ValidationFailed("Staged import belongs to a different unit")
    selected_ids = set(selected_member_ids)
    selected = [s.source for s in session.scouts if s.member_id in selected_ids]
    result = ImportResult()
    if not selected:
        return result

    index = CatalogIndex(conn)
    member_ids = [s.member_id for s in selected]
    roster = _roster(conn, unit_id, member_ids)
    unmatched = [s for s in selected if s.member_id not in roster]
    if unmatched and create_unmatched_scouts:
        _create_scouts(conn, unit_id, unmatched, result)
        roster = _roster(conn, unit_id, member_ids)
    elif unmatched:
        result.warn(f"{len(unmatched)} unmatched scout(s) skipped")

    working = [(s, roster[s.member_id]["id"]) for s in selected if s.member_id in roster]
    scout_ids = [scout_id for _, scout_id in working]

    state = _load_state(conn, scout_ids)
    _import_enrollments(conn, auth, index, working, state, result)
    if result.ranks_imported:
        _refresh_current_rank(conn, scout_ids)
    _import_requirements(conn, auth, unit_id, index, working, scout_ids, result)

    log.info(
        "Imported advancement for %d scouts: %d ranks, %d rank reqs, %d badges, "
        "%d badge reqs, %d duplicates, %d mismatches",
        len(working), result.ranks_imported, result.rank_requirements_imported,
        result.badges_imported, result.badge_requirements_imported,
        result.duplicates_skipped, result.mismatches_logged,
    )
    return result
