"""Leadership position history and camping/hiking/service activity logs."""

from datetime import date

from advancement_db.auth import load_unit_scout, require_leader
from advancement_db.db import now_iso
from advancement_db.errors import (
    AdvancementError,
    BulkSummary,
    ConflictIgnored,
    NotFound,
    PermissionDenied,
    ValidationFailed,
    action,
)

ACTIVITY_TYPES = ("camping", "hiking", "service", "conservation")


def _parse_date(value, label):
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationFailed(f"{label} must be a YYYY-MM-DD date") from None


@action("Failed to add leadership position")
def add_leadership_position(conn, profile_id, unit_id, scout_id, position_id, start_date,
                            notes=None):
    require_leader(conn, profile_id, unit_id)
    load_unit_scout(conn, scout_id, unit_id)
    _parse_date(start_date, "Start date")
    position = conn.execute(
        "SELECT id FROM leadership_positions WHERE id = ?", (position_id,)
    ).fetchone()
    if not position:
        raise NotFound(f"Leadership position {position_id} not found")
    now = now_iso()
    cur = conn.execute(
        """INSERT INTO scout_leadership_history
           (scout_id, position_id, unit_id, start_date, notes, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (scout_id, position_id, unit_id, start_date, notes, now, now),
    )
    conn.commit()
    return {"history_id": cur.lastrowid}


@action("Failed to end leadership position")
def end_leadership_position(conn, profile_id, unit_id, history_id, end_date):
    require_leader(conn, profile_id, unit_id)
    row = conn.execute(
        "SELECT id, unit_id, start_date, end_date FROM scout_leadership_history WHERE id = ?",
        (history_id,),
    ).fetchone()
    if not row:
        raise NotFound(f"Leadership position record {history_id} not found")
    if row["unit_id"] != unit_id:
        raise PermissionDenied("Leadership position record is not in this unit")
    if row["end_date"]:
        raise ConflictIgnored(f"Position already ended on {row['end_date']}")
    if _parse_date(end_date, "End date") < _parse_date(row["start_date"], "Start date"):
        raise ValidationFailed("End date cannot be before the start date")
    conn.execute(
        "UPDATE scout_leadership_history SET end_date = ?, updated_at = ? WHERE id = ?",
        (end_date, now_iso(), history_id),
    )
    conn.commit()
    return {"history_id": history_id}


def _insert_activity(conn, auth, unit_id, scout_id, activity_type, activity_date, value,
                     description, location):
    if activity_type not in ACTIVITY_TYPES:
        raise ValidationFailed(f"Unknown activity type: {activity_type!r}")
    _parse_date(activity_date, "Activity date")
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise ValidationFailed("Activity value must be a number") from None
    if value < 0:
        raise ValidationFailed("Activity value cannot be negative")
    load_unit_scout(conn, scout_id, unit_id)
    now = now_iso()
    cur = conn.execute(
        """INSERT INTO scout_activity_entries
           (scout_id, activity_type, activity_date, value, description, location,
            verified_by, verified_at, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (scout_id, activity_type, activity_date, value, description, location,
         auth.actor_id, now, now),
    )
    return cur.lastrowid


@action("Failed to log activity")
def log_activity(conn, profile_id, unit_id, scout_id, activity_type, activity_date, value,
                 description=None, location=None):
    """Record nights camped, miles hiked or hours of service for a Scout."""
    auth = require_leader(conn, profile_id, unit_id)
    entry_id = _insert_activity(conn, auth, unit_id, scout_id, activity_type, activity_date,
                                value, description, location)
    conn.commit()
    return {"entry_id": entry_id}


@action("Failed to log activities")
def bulk_log_activities(conn, profile_id, unit_id, entries, activity_type, activity_date,
                        description=None, location=None):
    """Log one activity for many Scouts. ``entries`` holds ``{scout_id, value}`` dicts."""
    auth = require_leader(conn, profile_id, unit_id)
    summary = BulkSummary()
    for entry in entries:
        try:
            _insert_activity(conn, auth, unit_id, entry.get("scout_id"), activity_type,
                             activity_date, entry.get("value"), description, location)
            summary.success_count += 1
        except AdvancementError as e:
            summary.record(f"Scout {entry.get('scout_id')}", e)
    conn.commit()
    return summary
