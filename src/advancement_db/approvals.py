"""Parent submissions: a guardian claims a requirement, a leader reviews it.

Submitting sets ``approval_status`` to pending_approval and leaves the
requirement's ``status`` alone. Approval completes the requirement using the
submitted completion date; denial records a reason and changes nothing else.
"""

import logging

from advancement_db.auth import require_guardian, require_leader
from advancement_db.catalog import RANK, get_track
from advancement_db.db import chunked, now_iso
from advancement_db.errors import (
    BulkSummary,
    ConflictIgnored,
    NotFound,
    PermissionDenied,
    ValidationFailed,
    action,
)
from advancement_db.notes import append_auth_note
from advancement_db.progress import (
    DONE_STATUSES,
    load_requirement_progress,
    load_requirement_progress_many,
)

log = logging.getLogger(__name__)


@action("Failed to submit requirement")
def submit_requirement_for_approval(conn, profile_id, scout_id, requirement_progress_id,
                                    kind=RANK, completed_at=None, notes=None):
    track = get_track(kind)
    auth = require_guardian(conn, profile_id, scout_id)
    row = load_requirement_progress(conn, track, requirement_progress_id)
    if row["scout_id"] != scout_id:
        raise NotFound(f"Requirement progress {requirement_progress_id} not found for this Scout")
    if row["status"] in DONE_STATUSES:
        raise ConflictIgnored(f"Requirement {row['requirement_number']} is already {row['status']}")
    now = now_iso()
    text = "Submitted for approval"
    if (notes or "").strip():
        text = f"{text}: {notes.strip()}"
    conn.execute(
        f"""UPDATE {track.requirement_progress_table} SET
                approval_status = 'pending_approval',
                submitted_at = ?,
                submitted_by = ?,
                submission_notes = ?,
                denial_reason = NULL,
                reviewed_at = NULL,
                reviewed_by = NULL,
                notes = ?,
                updated_at = ?
            WHERE id = ?""",
        (completed_at or now, auth.actor_id, notes,
         append_auth_note(row["notes"], auth, text, "general"), now, requirement_progress_id),
    )
    conn.commit()
    return {"requirement_progress_id": requirement_progress_id}


def _pending(row):
    if row["approval_status"] != "pending_approval":
        raise ConflictIgnored(f"Requirement {row['requirement_number']} has no pending submission")


@action("Failed to approve submission")
def approve_submission(conn, profile_id, unit_id, requirement_progress_id, kind=RANK):
    track = get_track(kind)
    auth = require_leader(conn, profile_id, unit_id)
    row = load_requirement_progress(conn, track, requirement_progress_id, unit_id)
    _pending(row)
    now = now_iso()
    conn.execute(
        f"""UPDATE {track.requirement_progress_table} SET
                status = 'completed',
                completed_at = ?,
                completed_by = ?,
                approval_status = 'approved',
                reviewed_at = ?,
                reviewed_by = ?,
                notes = ?,
                updated_at = ?
            WHERE id = ? AND approval_status = 'pending_approval'""",
        (row["submitted_at"] or now, auth.actor_id, now, auth.actor_id,
         append_auth_note(row["notes"], auth, "Approved parent submission", "completion"),
         now, requirement_progress_id),
    )
    conn.commit()
    return {"requirement_progress_id": requirement_progress_id}


@action("Failed to deny submission")
def deny_submission(conn, profile_id, unit_id, requirement_progress_id, reason, kind=RANK):
    track = get_track(kind)
    auth = require_leader(conn, profile_id, unit_id)
    if not (reason or "").strip():
        raise ValidationFailed("A reason is required to deny a submission")
    row = load_requirement_progress(conn, track, requirement_progress_id, unit_id)
    _pending(row)
    now = now_iso()
    conn.execute(
        f"""UPDATE {track.requirement_progress_table} SET
                approval_status = 'denied',
                denial_reason = ?,
                reviewed_at = ?,
                reviewed_by = ?,
                notes = ?,
                updated_at = ?
            WHERE id = ? AND approval_status = 'pending_approval'""",
        (reason.strip(), now, auth.actor_id,
         append_auth_note(row["notes"], auth, f"Submission denied: {reason.strip()}", "general"),
         now, requirement_progress_id),
    )
    conn.commit()
    return {"requirement_progress_id": requirement_progress_id}


@action("Failed to approve submissions")
def bulk_approve_submissions(conn, profile_id, unit_id, requirement_progress_ids, kind=RANK):
    """Approve every still-pending submission among the ids, in batches."""
    track = get_track(kind)
    auth = require_leader(conn, profile_id, unit_id)
    rows = load_requirement_progress_many(conn, track, requirement_progress_ids)
    summary = BulkSummary()
    now = now_iso()
    updates = []
    for rp_id in dict.fromkeys(requirement_progress_ids):
        row = rows.get(rp_id)
        if row is None:
            summary.record(f"Requirement progress {rp_id}", NotFound("not found"))
        elif row["unit_id"] != unit_id:
            summary.record(f"Requirement progress {rp_id}", PermissionDenied("not in this unit"))
        elif row["approval_status"] != "pending_approval":
            summary.skipped_count += 1
        else:
            notes = append_auth_note(row["notes"], auth, "Approved parent submission", "completion")
            updates.append((row["submitted_at"] or now, auth.actor_id, now, auth.actor_id,
                            notes, now, rp_id))
    for chunk in chunked(updates):
        cur = conn.executemany(
            f"""UPDATE {track.requirement_progress_table} SET
                    status = 'completed',
                    completed_at = ?,
                    completed_by = ?,
                    approval_status = 'approved',
                    reviewed_at = ?,
                    reviewed_by = ?,
                    notes = ?,
                    updated_at = ?
                WHERE id = ? AND approval_status = 'pending_approval'""",
            chunk,
        )
        summary.success_count += cur.rowcount
        summary.skipped_count += len(chunk) - cur.rowcount
    conn.commit()
    log.info("Approved %d submissions (%d skipped, %d failed)",
             summary.success_count, summary.skipped_count, summary.failed_count)
    return summary
