"""Move a merit badge enrollment to a different requirement version."""

import logging
import sqlite3

from advancement_db.auth import require_leader
from advancement_db.catalog import MERIT_BADGE, requirements_for
from advancement_db.db import now_iso
from advancement_db.errors import ConflictIgnored, ValidationFailed, action
from advancement_db.notes import append_auth_note
from advancement_db.progress import DONE_STATUSES, ensure_coverage, load_enrollment

log = logging.getLogger(__name__)

CONFIDENCE_LEVELS = ("exact", "likely", "manual", "none")


def _snapshot(conn, progress_id):
    """Done requirement rows of the enrollment, keyed by requirement number.

    Approved and awarded rows count as completions too, so they carry over
    like completed ones.
    """
    placeholders = ", ".join("?" for _ in DONE_STATUSES)
    rows = conn.execute(
        f"""SELECT rp.completed_at, rp.completed_by, rp.notes,
                   r.requirement_number, r.scoutbook_requirement_number
            FROM scout_merit_badge_requirement_progress rp
            JOIN merit_badge_requirements r ON r.id = rp.requirement_id
            WHERE rp.merit_badge_progress_id = ? AND rp.status IN ({placeholders})""",
        (progress_id, *DONE_STATUSES),
    ).fetchall()
    snapshot = {}
    for row in rows:
        snapshot[row["requirement_number"]] = row
        if row["scoutbook_requirement_number"]:
            snapshot.setdefault(row["scoutbook_requirement_number"], row)
    return rows, snapshot


@action("Failed to switch version")
def switch_merit_badge_version(conn, profile_id, unit_id, progress_id, target_version_year,
                               mappings):
    """Re-pin a badge enrollment to ``target_version_year``.

    ``mappings`` is a list of ``{"source_requirement_number",
    "target_requirement_id", "confidence"}`` dicts. Completed requirements
    with a mapping whose target is set and whose confidence is not "none"
    are recreated as completed target requirements, keeping their
    completion date and signer and noting where they came from. All other
    completions on the old version are dropped. Remaining target
    requirements get not_started rows.

    The re-pin, delete and inserts run in one SQLite transaction.
    """
    auth = require_leader(conn, profile_id, unit_id)
    enrollment = load_enrollment(conn, MERIT_BADGE, progress_id, unit_id)
    source_year = enrollment["requirement_version_year"]
    if source_year == target_version_year:
        raise ConflictIgnored(f"{enrollment['item_name']} already uses {target_version_year}")
    for mapping in mappings:
        if mapping.get("confidence") not in CONFIDENCE_LEVELS:
            raise ValidationFailed(f"Unknown mapping confidence: {mapping.get('confidence')!r}")

    badge_id = enrollment["item_id"]
    targets = {
        row["id"]
        for row in requirements_for(conn, MERIT_BADGE, badge_id, target_version_year,
                                    include_headers=False)
    }
    if not targets:
        raise ValidationFailed(
            f"{enrollment['item_name']} has no {target_version_year} requirements"
        )

    rows, snapshot = _snapshot(conn, progress_id)
    now = now_iso()
    mapped = 0
    carried = set()
    dropped = []
    try:
        conn.execute(
            """UPDATE scout_merit_badge_progress
               SET requirement_version_year = ?, updated_at = ?
               WHERE id = ?""",
            (target_version_year, now, progress_id),
        )
        conn.execute(
            "DELETE FROM scout_merit_badge_requirement_progress WHERE merit_badge_progress_id = ?",
            (progress_id,),
        )
        for mapping in mappings:
            source = str(mapping.get("source_requirement_number") or "")
            target_id = mapping.get("target_requirement_id")
            confidence = mapping["confidence"]
            if target_id is None or confidence == "none":
                dropped.append(source)
                continue
            if target_id not in targets:
                log.warning("Mapping target %s is not a %s requirement", target_id, target_version_year)
                dropped.append(source)
                continue
            original = snapshot.get(source)
            text = f"Mapped from {source_year} requirement {source} ({confidence} match)"
            try:
                conn.execute(
                    """INSERT INTO scout_merit_badge_requirement_progress
                       (merit_badge_progress_id, requirement_id, status, completed_at,
                        completed_by, notes, created_at, updated_at)
                       VALUES (?, ?, 'completed', ?, ?, ?, ?, ?)""",
                    (
                        progress_id,
                        target_id,
                        original["completed_at"] if original and original["completed_at"] else now,
                        original["completed_by"] if original and original["completed_by"] else auth.actor_id,
                        append_auth_note(original["notes"] if original else None, auth, text),
                        now,
                        now,
                    ),
                )
            except sqlite3.IntegrityError:
                log.warning("Requirement %s mapped more than once", target_id)
                dropped.append(source)
                continue
            mapped += 1
            if original:
                carried.add(original["requirement_number"])
        ensure_coverage(conn, MERIT_BADGE, progress_id, badge_id, target_version_year)
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise

    unmapped = sum(1 for row in rows if row["requirement_number"] not in carried)
    log.info("Switched badge progress %s from %s to %s: %d mapped, %d unmapped",
             progress_id, source_year, target_version_year, mapped, unmapped)
    return {
        "mapped_count": mapped,
        "unmapped_count": unmapped,
        "dropped_mappings": dropped,
        "from_version_year": source_year,
        "to_version_year": target_version_year,
    }
