"""Rank and merit badge progress: enrollments and requirement state.

Enrollment and requirement rows share one status ladder::

    not_started -> in_progress -> pending_approval -> approved -> completed -> awarded

Leaders mark requirements complete directly and may undo a completion with a
reason. Requirement rows already completed, approved or awarded are left
alone by every write path. All public operations take the acting profile and
the unit, and return an ``ActionResult``.
"""

import logging

from advancement_db.auth import load_unit_scout, require_leader
from advancement_db.catalog import MERIT_BADGE, RANK, effective_version, get_item, get_track
from advancement_db.db import chunked, now_iso, select_in
from advancement_db.errors import (
    AdvancementError,
    BulkSummary,
    ConflictIgnored,
    NoVersionConfigured,
    NotFound,
    PermissionDenied,
    ValidationFailed,
    action,
)
from advancement_db.notes import append_auth_note

log = logging.getLogger(__name__)

DONE_STATUSES = ("completed", "approved", "awarded")
UNDOABLE_STATUSES = ("completed", "approved")
_DONE_SQL = "('completed', 'approved', 'awarded')"


# --- Lookups ---


def _find_enrollment(conn, track, scout_id, item_id):
    return conn.execute(
        f"SELECT * FROM {track.progress_table} WHERE scout_id = ? AND {track.item_fk} = ?",
        (scout_id, item_id),
    ).fetchone()


def load_enrollment(conn, kind, progress_id, unit_id=None):
    track = get_track(kind)
    row = conn.execute(
        f"""SELECT e.*, e.{track.item_fk} AS item_id, i.name AS item_name, s.unit_id
            FROM {track.progress_table} e
            JOIN {track.item_table} i ON i.id = e.{track.item_fk}
            JOIN scouts s ON s.id = e.scout_id
            WHERE e.id = ?""",
        (progress_id,),
    ).fetchone()
    if not row:
        raise NotFound(f"{track.label} progress {progress_id} not found")
    if unit_id is not None and row["unit_id"] != unit_id:
        raise PermissionDenied(f"{track.label} progress {progress_id} is not in this unit")
    return row


def _requirement_progress_sql(track, where):
    return f"""
        SELECT rp.*, e.id AS enrollment_id, e.scout_id, e.{track.item_fk} AS item_id,
               s.unit_id, r.requirement_number
        FROM {track.requirement_progress_table} rp
        JOIN {track.progress_table} e ON e.id = rp.{track.progress_fk}
        JOIN scouts s ON s.id = e.scout_id
        JOIN {track.requirement_table} r ON r.id = rp.requirement_id
        WHERE {where}
    """


def load_requirement_progress(conn, kind, requirement_progress_id, unit_id=None):
    """Fetch one requirement progress row with its enrollment, Scout and number."""
    track = get_track(kind)
    row = conn.execute(
        _requirement_progress_sql(track, "rp.id = ?"), (requirement_progress_id,)
    ).fetchone()
    if not row:
        raise NotFound(f"Requirement progress {requirement_progress_id} not found")
    if unit_id is not None and row["unit_id"] != unit_id:
        raise PermissionDenied(f"Requirement progress {requirement_progress_id} is not in this unit")
    return row


def load_requirement_progress_many(conn, kind, requirement_progress_ids):
    """Batch fetch requirement progress rows, keyed by id."""
    track = get_track(kind)
    rows = select_in(conn, _requirement_progress_sql(track, "{in_clause}"), "rp.id",
                     requirement_progress_ids)
    return {row["id"]: row for row in rows}


def enrollment_version(conn, kind, enrollment):
    """Version year an existing enrollment's requirements come from, or None."""
    track = get_track(kind)
    if track is MERIT_BADGE and enrollment["requirement_version_year"] is not None:
        return enrollment["requirement_version_year"]
    try:
        return effective_version(conn, track, enrollment[track.item_fk])
    except NoVersionConfigured:
        return None


# --- Enrollment + coverage ---


def ensure_coverage(conn, kind, progress_id, item_id, version_year):
    """Create a not_started row for every non-header requirement of the version.

    Existing rows are left untouched. Returns the number of rows created.
    """
    track = get_track(kind)
    now = now_iso()
    cur = conn.execute(
        f"""INSERT OR IGNORE INTO {track.requirement_progress_table}
            ({track.progress_fk}, requirement_id, status, created_at, updated_at)
            SELECT ?, id, 'not_started', ?, ?
            FROM {track.requirement_table}
            WHERE {track.item_fk} = ? AND version_year = ? AND is_header = 0""",
        (progress_id, now, now, item_id, version_year),
    )
    return cur.rowcount


def ensure_enrollment(conn, kind, scout_id, item_id, version_year=None, counselor_name=None):
    """Find or create the Scout's enrollment and top up its coverage rows.

    A new enrollment pins ``version_year`` when given, else the catalog's
    effective version (raising NoVersionConfigured when there is none).
    Returns ``(enrollment_id, version_year, created)``.
    """
    track = get_track(kind)
    row = _find_enrollment(conn, track, scout_id, item_id)
    if row:
        version = enrollment_version(conn, track, row)
        if version is not None:
            ensure_coverage(conn, track, row["id"], item_id, version)
            conn.commit()
        return row["id"], version, False

    version = version_year if version_year is not None else effective_version(conn, track, item_id)
    now = now_iso()
    if track is MERIT_BADGE:
        cur = conn.execute(
            """INSERT OR IGNORE INTO scout_merit_badge_progress
               (scout_id, merit_badge_id, status, requirement_version_year,
                counselor_name, started_at, created_at, updated_at)
               VALUES (?, ?, 'in_progress', ?, ?, ?, ?, ?)""",
            (scout_id, item_id, version, counselor_name, now, now, now),
        )
    else:
        cur = conn.execute(
            """INSERT OR IGNORE INTO scout_rank_progress
               (scout_id, rank_id, status, started_at, created_at, updated_at)
               VALUES (?, ?, 'in_progress', ?, ?, ?)""",
            (scout_id, item_id, now, now, now),
        )
    created = cur.rowcount == 1
    row = _find_enrollment(conn, track, scout_id, item_id)
    ensure_coverage(conn, track, row["id"], item_id, version)
    conn.commit()
    if created:
        log.debug("Started %s %s for scout %s (version %s)", track.kind, item_id, scout_id, version)
    return row["id"], version, created


def _ensure_requirement_row(conn, track, enrollment_id, item_id, requirement_id):
    """Return the requirement progress id for a catalog requirement, creating it if needed."""
    req = conn.execute(
        f"SELECT id, is_header FROM {track.requirement_table} WHERE id = ? AND {track.item_fk} = ?",
        (requirement_id, item_id),
    ).fetchone()
    if not req:
        raise NotFound(f"Requirement {requirement_id} not found for this {track.label.lower()}")
    if req["is_header"]:
        raise ValidationFailed("Header requirements cannot be completed")
    now = now_iso()
    conn.execute(
        f"""INSERT OR IGNORE INTO {track.requirement_progress_table}
            ({track.progress_fk}, requirement_id, status, created_at, updated_at)
            VALUES (?, ?, 'not_started', ?, ?)""",
        (enrollment_id, requirement_id, now, now),
    )
    return conn.execute(
        f"""SELECT id FROM {track.requirement_progress_table}
            WHERE {track.progress_fk} = ? AND requirement_id = ?""",
        (enrollment_id, requirement_id),
    ).fetchone()["id"]


def _mark_started(conn, track, enrollment_id):
    now = now_iso()
    conn.execute(
        f"""UPDATE {track.progress_table}
            SET status = 'in_progress', started_at = COALESCE(started_at, ?), updated_at = ?
            WHERE id = ? AND status = 'not_started'""",
        (now, now, enrollment_id),
    )


@action("Failed to start advancement")
def initialize_enrollment(conn, profile_id, unit_id, kind, scout_id, item_id,
                          version_year=None, counselor_name=None):
    """Create an enrollment with a not_started row per non-header requirement."""
    track = get_track(kind)
    require_leader(conn, profile_id, unit_id)
    load_unit_scout(conn, scout_id, unit_id)
    item = get_item(conn, track, item_id)
    if version_year is not None:
        exists = conn.execute(
            f"SELECT 1 FROM {track.requirement_table} WHERE {track.item_fk} = ? AND version_year = ? LIMIT 1",
            (item_id, version_year),
        ).fetchone()
        if not exists:
            raise ValidationFailed(f"{item['name']} has no {version_year} requirements")
    progress_id, version, created = ensure_enrollment(
        conn, track, scout_id, item_id, version_year, counselor_name
    )
    data = {"progress_id": progress_id, "version_year": version}
    if not created:
        raise ConflictIgnored(f"Scout is already working on {item['name']}", data)
    return data


def initialize_rank_progress(conn, profile_id, unit_id, scout_id, rank_id):
    return initialize_enrollment(conn, profile_id, unit_id, RANK, scout_id, rank_id)


def start_merit_badge(conn, profile_id, unit_id, scout_id, merit_badge_id,
                      counselor_name=None, version_year=None):
    return initialize_enrollment(conn, profile_id, unit_id, MERIT_BADGE, scout_id,
                                 merit_badge_id, version_year, counselor_name)


# --- Requirement transitions ---


def _complete_row(conn, track, row, auth, completed_at=None, note=None):
    if row["status"] in DONE_STATUSES:
        raise ConflictIgnored(f"Requirement {row['requirement_number']} is already {row['status']}")
    now = now_iso()
    notes = append_auth_note(row["notes"], auth, note or "Requirement completed", "completion")
    conn.execute(
        f"""UPDATE {track.requirement_progress_table} SET
                status = 'completed',
                completed_at = ?,
                completed_by = ?,
                notes = ?,
                approval_status = CASE WHEN approval_status = 'pending_approval'
                                       THEN 'approved' ELSE approval_status END,
                reviewed_at = CASE WHEN approval_status = 'pending_approval'
                                   THEN ? ELSE reviewed_at END,
                reviewed_by = CASE WHEN approval_status = 'pending_approval'
                                   THEN ? ELSE reviewed_by END,
                updated_at = ?
            WHERE id = ? AND status NOT IN {_DONE_SQL}""",
        (completed_at or now, auth.actor_id, notes, now, auth.actor_id, now, row["id"]),
    )
    _mark_started(conn, track, row["enrollment_id"])


@action("Failed to mark requirement complete")
def mark_requirement_complete(conn, profile_id, unit_id, requirement_progress_id, kind=RANK,
                              completed_at=None, note=None):
    track = get_track(kind)
    auth = require_leader(conn, profile_id, unit_id)
    row = load_requirement_progress(conn, track, requirement_progress_id, unit_id)
    _complete_row(conn, track, row, auth, completed_at, note)
    conn.commit()
    return {"requirement_progress_id": requirement_progress_id}


@action("Failed to mark requirement complete")
def mark_requirement_complete_with_init(conn, profile_id, unit_id, scout_id, kind, item_id,
                                        requirement_id, completed_at=None, note=None):
    """Mark a catalog requirement complete, creating the enrollment if needed."""
    track = get_track(kind)
    auth = require_leader(conn, profile_id, unit_id)
    load_unit_scout(conn, scout_id, unit_id)
    enrollment_id, _, _ = ensure_enrollment(conn, track, scout_id, item_id)
    rp_id = _ensure_requirement_row(conn, track, enrollment_id, item_id, requirement_id)
    row = load_requirement_progress(conn, track, rp_id)
    _complete_row(conn, track, row, auth, completed_at, note)
    conn.commit()
    return {"progress_id": enrollment_id, "requirement_progress_id": rp_id}


@action("Failed to undo requirement completion")
def undo_requirement_completion(conn, profile_id, unit_id, requirement_progress_id, reason,
                                kind=RANK):
    """Return a completed or approved requirement to not_started.

    Requires a reason, which is kept in an undo note. Any parent approval is
    cleared along with the completion; the note log keeps its history.
    """
    track = get_track(kind)
    auth = require_leader(conn, profile_id, unit_id)
    if not (reason or "").strip():
        raise ValidationFailed("A reason is required to undo a completion")
    row = load_requirement_progress(conn, track, requirement_progress_id, unit_id)
    if row["status"] not in UNDOABLE_STATUSES:
        raise ConflictIgnored(f"Cannot undo a requirement that is {row['status']}")
    notes = append_auth_note(row["notes"], auth, f"Undo: {reason.strip()}", "undo")
    conn.execute(
        f"""UPDATE {track.requirement_progress_table} SET
                status = 'not_started',
                completed_at = NULL,
                completed_by = NULL,
                approval_status = NULL,
                reviewed_at = NULL,
                reviewed_by = NULL,
                notes = ?,
                updated_at = ?
            WHERE id = ? AND status IN ('completed', 'approved')""",
        (notes, now_iso(), requirement_progress_id),
    )
    conn.commit()
    return {"requirement_progress_id": requirement_progress_id}


@action("Failed to mark requirements complete")
def bulk_mark_requirements_complete(conn, profile_id, unit_id, requirement_progress_ids,
                                    kind=RANK, completed_at=None, note=None):
    """Mark many requirement rows, possibly across many Scouts, complete."""
    track = get_track(kind)
    auth = require_leader(conn, profile_id, unit_id)
    summary = BulkSummary()
    for rp_id in requirement_progress_ids:
        try:
            row = load_requirement_progress(conn, track, rp_id, unit_id)
            _complete_row(conn, track, row, auth, completed_at, note)
            summary.success_count += 1
        except AdvancementError as e:
            summary.record(f"Requirement progress {rp_id}", e)
    conn.commit()
    return summary


def _approve_rows(conn, track, auth, unit_id, requirement_progress_ids, completed_at, note, summary):
    """Batched completion of requirement rows; terminal rows are skipped."""
    rows = load_requirement_progress_many(conn, track, requirement_progress_ids)
    now = now_iso()
    updates = []
    started = set()
    for rp_id in dict.fromkeys(requirement_progress_ids):
        row = rows.get(rp_id)
        if row is None:
            summary.record(f"Requirement progress {rp_id}", NotFound("not found"))
        elif row["unit_id"] != unit_id:
            summary.record(f"Requirement progress {rp_id}", PermissionDenied("not in this unit"))
        elif row["status"] in DONE_STATUSES:
            summary.skipped_count += 1
        else:
            notes = append_auth_note(row["notes"], auth, note or "Requirement approved", "completion")
            updates.append((completed_at or now, auth.actor_id, notes, now, auth.actor_id, now, rp_id))
            started.add(row["enrollment_id"])

    for chunk in chunked(updates):
        cur = conn.executemany(
            f"""UPDATE {track.requirement_progress_table} SET
                    status = 'completed',
                    completed_at = ?,
                    completed_by = ?,
                    notes = ?,
                    approval_status = CASE WHEN approval_status = 'pending_approval'
                                           THEN 'approved' ELSE approval_status END,
                    reviewed_at = CASE WHEN approval_status = 'pending_approval'
                                       THEN ? ELSE reviewed_at END,
                    reviewed_by = CASE WHEN approval_status = 'pending_approval'
                                       THEN ? ELSE reviewed_by END,
                    updated_at = ?
                WHERE id = ? AND status NOT IN {_DONE_SQL}""",
            chunk,
        )
        summary.success_count += cur.rowcount
        summary.skipped_count += len(chunk) - cur.rowcount
    for enrollment_id in started:
        _mark_started(conn, track, enrollment_id)
    conn.commit()
    return summary


@action("Failed to approve requirements")
def bulk_approve_requirements(conn, profile_id, unit_id, requirement_progress_ids, kind=RANK,
                              completed_at=None, note=None):
    track = get_track(kind)
    auth = require_leader(conn, profile_id, unit_id)
    return _approve_rows(conn, track, auth, unit_id, list(requirement_progress_ids),
                         completed_at, note, BulkSummary())


@action("Failed to approve requirements")
def bulk_approve_requirements_with_init(conn, profile_id, unit_id, scout_id, kind, item_id,
                                        requirement_ids, completed_at=None, note=None):
    """Approve catalog requirements for one Scout, creating the enrollment if needed."""
    track = get_track(kind)
    auth = require_leader(conn, profile_id, unit_id)
    load_unit_scout(conn, scout_id, unit_id)
    enrollment_id, _, _ = ensure_enrollment(conn, track, scout_id, item_id)
    summary = BulkSummary()
    rp_ids = []
    for requirement_id in requirement_ids:
        try:
            rp_ids.append(_ensure_requirement_row(conn, track, enrollment_id, item_id, requirement_id))
        except AdvancementError as e:
            summary.record(f"Requirement {requirement_id}", e)
    conn.commit()
    return _approve_rows(conn, track, auth, unit_id, rp_ids, completed_at, note, summary)


@action("Failed to assign requirement")
def assign_requirement_to_scouts(conn, profile_id, unit_id, kind, item_id, requirement_id,
                                 scout_ids, completed_at=None, note=None):
    """Record one requirement as completed for several Scouts at once."""
    track = get_track(kind)
    auth = require_leader(conn, profile_id, unit_id)
    get_item(conn, track, item_id)
    summary = BulkSummary()
    for scout_id in scout_ids:
        try:
            load_unit_scout(conn, scout_id, unit_id)
            enrollment_id, _, _ = ensure_enrollment(conn, track, scout_id, item_id)
            rp_id = _ensure_requirement_row(conn, track, enrollment_id, item_id, requirement_id)
            row = load_requirement_progress(conn, track, rp_id)
            _complete_row(conn, track, row, auth, completed_at, note)
            summary.success_count += 1
        except AdvancementError as e:
            summary.record(f"Scout {scout_id}", e)
    conn.commit()
    return summary


# --- Notes ---


def _append_general_note(conn, track, auth, rp_id, notes, text):
    conn.execute(
        f"UPDATE {track.requirement_progress_table} SET notes = ?, updated_at = ? WHERE id = ?",
        (append_auth_note(notes, auth, text.strip(), "general"), now_iso(), rp_id),
    )


@action("Failed to add note")
def add_requirement_note(conn, profile_id, unit_id, requirement_progress_id, text, kind=RANK):
    track = get_track(kind)
    auth = require_leader(conn, profile_id, unit_id)
    if not (text or "").strip():
        raise ValidationFailed("Note text is required")
    row = load_requirement_progress(conn, track, requirement_progress_id, unit_id)
    _append_general_note(conn, track, auth, row["id"], row["notes"], text)
    conn.commit()
    return {"requirement_progress_id": requirement_progress_id}


@action("Failed to add note")
def add_requirement_note_with_init(conn, profile_id, unit_id, scout_id, kind, item_id,
                                   requirement_id, text):
    track = get_track(kind)
    auth = require_leader(conn, profile_id, unit_id)
    if not (text or "").strip():
        raise ValidationFailed("Note text is required")
    load_unit_scout(conn, scout_id, unit_id)
    enrollment_id, _, _ = ensure_enrollment(conn, track, scout_id, item_id)
    rp_id = _ensure_requirement_row(conn, track, enrollment_id, item_id, requirement_id)
    row = load_requirement_progress(conn, track, rp_id)
    _append_general_note(conn, track, auth, rp_id, row["notes"], text)
    conn.commit()
    return {"progress_id": enrollment_id, "requirement_progress_id": rp_id}


# --- Enrollment transitions ---


@action("Failed to approve advancement")
def approve_enrollment(conn, profile_id, unit_id, kind, progress_id, approved_at=None):
    """Approve an enrollment as a whole; requirement rows are not checked."""
    track = get_track(kind)
    auth = require_leader(conn, profile_id, unit_id)
    row = load_enrollment(conn, track, progress_id, unit_id)
    if row["status"] in ("approved", "awarded"):
        raise ConflictIgnored(f"{row['item_name']} is already {row['status']}")
    now = now_iso()
    conn.execute(
        f"""UPDATE {track.progress_table} SET
                status = 'approved', approved_at = ?, approved_by = ?, updated_at = ?
            WHERE id = ?""",
        (approved_at or now, auth.actor_id, now, progress_id),
    )
    conn.commit()
    return {"progress_id": progress_id}


@action("Failed to award advancement")
def award_enrollment(conn, profile_id, unit_id, kind, progress_id, awarded_at=None):
    """Mark an enrollment awarded. Awarding a rank sets the Scout's current rank."""
    track = get_track(kind)
    auth = require_leader(conn, profile_id, unit_id)
    row = load_enrollment(conn, track, progress_id, unit_id)
    now = now_iso()
    awarded = awarded_at or row["awarded_at"] or now
    conn.execute(
        f"""UPDATE {track.progress_table} SET
                status = 'awarded',
                completed_at = COALESCE(completed_at, ?),
                awarded_at = ?,
                awarded_by = ?,
                updated_at = ?
            WHERE id = ?""",
        (awarded, awarded, auth.actor_id, now, progress_id),
    )
    if track is RANK:
        conn.execute(
            "UPDATE scouts SET rank = ?, updated_at = ? WHERE id = ?",
            (row["item_name"], now, row["scout_id"]),
        )
    conn.commit()
    return {"progress_id": progress_id, "awarded_at": awarded}


@action("Failed to complete merit badge")
def complete_merit_badge(conn, profile_id, unit_id, progress_id, counselor_signed_at=None):
    auth = require_leader(conn, profile_id, unit_id)
    row = load_enrollment(conn, MERIT_BADGE, progress_id, unit_id)
    if row["status"] == "awarded":
        raise ConflictIgnored(f"{row['item_name']} is already awarded")
    now = now_iso()
    signed = counselor_signed_at or now
    conn.execute(
        """UPDATE scout_merit_badge_progress SET
               status = 'awarded',
               completed_at = ?,
               awarded_at = ?,
               awarded_by = ?,
               counselor_signed_at = ?,
               updated_at = ?
           WHERE id = ?""",
        (signed, signed, auth.actor_id, signed, now, progress_id),
    )
    conn.commit()
    return {"progress_id": progress_id}


@action("Failed to award merit badges")
def bulk_award_merit_badges(conn, profile_id, unit_id, progress_ids, awarded_at=None):
    """Award every completed or approved badge among ``progress_ids``."""
    auth = require_leader(conn, profile_id, unit_id)
    rows = {
        row["id"]: row
        for row in select_in(
            conn,
            """SELECT e.id, e.status, s.unit_id
               FROM scout_merit_badge_progress e
               JOIN scouts s ON s.id = e.scout_id
               WHERE {in_clause}""",
            "e.id",
            progress_ids,
        )
    }
    summary = BulkSummary()
    now = now_iso()
    awarded = awarded_at or now
    updates = []
    for progress_id in dict.fromkeys(progress_ids):
        row = rows.get(progress_id)
        if row is None:
            summary.record(f"Merit badge progress {progress_id}", NotFound("not found"))
        elif row["unit_id"] != unit_id:
            summary.record(f"Merit badge progress {progress_id}", PermissionDenied("not in this unit"))
        elif row["status"] not in ("completed", "approved"):
            summary.skipped_count += 1
        else:
            updates.append((awarded, awarded, auth.actor_id, now, progress_id))
    for chunk in chunked(updates):
        cur = conn.executemany(
            """UPDATE scout_merit_badge_progress SET
                   status = 'awarded',
                   completed_at = COALESCE(completed_at, ?),
                   awarded_at = ?,
                   awarded_by = ?,
                   updated_at = ?
               WHERE id = ? AND status IN ('completed', 'approved')""",
            chunk,
        )
        summary.success_count += cur.rowcount
        summary.skipped_count += len(chunk) - cur.rowcount
    conn.commit()
    return summary
