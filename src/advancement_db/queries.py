"""Unit-wide and per-Scout read queries."""

from advancement_db.db import select_paged


def scout_advancement_progress(conn, scout_id):
    """Everything recorded for one Scout, grouped by section.

    Returns a dict with ``scout``, ``ranks`` (each with its ``requirements``),
    ``merit_badges``, ``leadership`` (with tenure in months), ``activities``
    and ``activity_totals`` keyed by activity type.
    """
    scout = conn.execute("SELECT * FROM scouts WHERE id = ?", (scout_id,)).fetchone()
    if scout is None:
        return None

    ranks = []
    for rank in conn.execute(
        """
        SELECT p.id AS progress_id, r.id AS rank_id, r.name, r.display_order,
               p.status, p.started_at, p.completed_at, p.approved_at, p.awarded_at
        FROM scout_rank_progress p
        INNER JOIN ranks r ON r.id = p.rank_id
        WHERE p.scout_id = ?
        ORDER BY r.display_order
        """,
        (scout_id,),
    ).fetchall():
        requirements = conn.execute(
            """
            SELECT rp.id AS requirement_progress_id, req.requirement_number,
                   SUBSTR(req.description, 1, 80) AS description,
                   rp.status, rp.completed_at, rp.approval_status, rp.notes
            FROM scout_rank_requirement_progress rp
            INNER JOIN rank_requirements req ON req.id = rp.requirement_id
            WHERE rp.rank_progress_id = ?
            ORDER BY req.display_order, req.id
            """,
            (rank["progress_id"],),
        ).fetchall()
        ranks.append({**dict(rank), "requirements": [dict(r) for r in requirements]})

    merit_badges = conn.execute(
        """
        SELECT p.id AS progress_id, mb.id AS merit_badge_id, mb.name,
               mb.is_eagle_required, p.status, p.requirement_version_year,
               p.counselor_name, p.started_at, p.completed_at, p.awarded_at,
               (SELECT COUNT(*) FROM scout_merit_badge_requirement_progress rp
                WHERE rp.merit_badge_progress_id = p.id) AS total_requirements,
               (SELECT COUNT(*) FROM scout_merit_badge_requirement_progress rp
                WHERE rp.merit_badge_progress_id = p.id
                  AND rp.status IN ('completed', 'approved', 'awarded')) AS completed_requirements
        FROM scout_merit_badge_progress p
        INNER JOIN merit_badges mb ON mb.id = p.merit_badge_id
        WHERE p.scout_id = ?
        ORDER BY p.status = 'awarded' DESC, mb.name
        """,
        (scout_id,),
    ).fetchall()

    leadership = conn.execute(
        """
        SELECT h.id AS history_id, lp.name AS position, h.start_date, h.end_date,
               ROUND((julianday(COALESCE(h.end_date, date('now')))
                      - julianday(h.start_date)) / 30.44, 1) AS tenure_months
        FROM scout_leadership_history h
        INNER JOIN leadership_positions lp ON lp.id = h.position_id
        WHERE h.scout_id = ?
        ORDER BY h.start_date DESC
        """,
        (scout_id,),
    ).fetchall()

    activities = conn.execute(
        """
        SELECT id AS entry_id, activity_type, activity_date, value, description, location
        FROM scout_activity_entries
        WHERE scout_id = ?
        ORDER BY activity_date DESC, id DESC
        """,
        (scout_id,),
    ).fetchall()
    totals = conn.execute(
        """
        SELECT activity_type, SUM(value) AS total
        FROM scout_activity_entries
        WHERE scout_id = ?
        GROUP BY activity_type
        """,
        (scout_id,),
    ).fetchall()

    return {
        "scout": dict(scout),
        "ranks": ranks,
        "merit_badges": [dict(r) for r in merit_badges],
        "leadership": [dict(r) for r in leadership],
        "activities": [dict(r) for r in activities],
        "activity_totals": {r["activity_type"]: r["total"] for r in totals},
    }


def unit_advancement_summary(conn, unit_id):
    """Counts of enrollments by status and pending submissions for a unit."""
    row = conn.execute(
        """
        SELECT
            (SELECT COUNT(*) FROM scouts WHERE unit_id = :unit AND is_active = 1)
                AS active_scouts,
            (SELECT COUNT(*) FROM scout_rank_progress p
             INNER JOIN scouts s ON s.id = p.scout_id
             WHERE s.unit_id = :unit AND p.status = 'awarded') AS ranks_awarded,
            (SELECT COUNT(*) FROM scout_rank_progress p
             INNER JOIN scouts s ON s.id = p.scout_id
             WHERE s.unit_id = :unit AND p.status NOT IN ('awarded', 'completed'))
                AS ranks_in_progress,
            (SELECT COUNT(*) FROM scout_merit_badge_progress p
             INNER JOIN scouts s ON s.id = p.scout_id
             WHERE s.unit_id = :unit AND p.status = 'awarded') AS badges_awarded,
            (SELECT COUNT(*) FROM scout_merit_badge_progress p
             INNER JOIN scouts s ON s.id = p.scout_id
             WHERE s.unit_id = :unit AND p.status NOT IN ('awarded', 'completed'))
                AS badges_in_progress,
            (SELECT COUNT(*) FROM scout_rank_requirement_progress rp
             INNER JOIN scout_rank_progress p ON p.id = rp.rank_progress_id
             INNER JOIN scouts s ON s.id = p.scout_id
             WHERE s.unit_id = :unit AND rp.approval_status = 'pending_approval')
            + (SELECT COUNT(*) FROM scout_merit_badge_requirement_progress rp
               INNER JOIN scout_merit_badge_progress p ON p.id = rp.merit_badge_progress_id
               INNER JOIN scouts s ON s.id = p.scout_id
               WHERE s.unit_id = :unit AND rp.approval_status = 'pending_approval')
                AS pending_submissions
        """,
        {"unit": unit_id},
    ).fetchone()
    return dict(row)


def pending_submissions(conn, unit_id):
    """Parent submissions awaiting a leader's review, oldest first."""
    return select_paged(
        conn,
        """
        SELECT 'rank' AS kind, rp.id AS requirement_progress_id, s.id AS scout_id,
               COALESCE(s.first_name, '') || ' ' || COALESCE(s.last_name, '') AS scout_name,
               r.name AS item_name, req.requirement_number,
               rp.submitted_at, rp.submission_notes
        FROM scout_rank_requirement_progress rp
        INNER JOIN scout_rank_progress p ON p.id = rp.rank_progress_id
        INNER JOIN ranks r ON r.id = p.rank_id
        INNER JOIN rank_requirements req ON req.id = rp.requirement_id
        INNER JOIN scouts s ON s.id = p.scout_id
        WHERE s.unit_id = ? AND rp.approval_status = 'pending_approval'
        UNION ALL
        SELECT 'merit_badge', rp.id, s.id,
               COALESCE(s.first_name, '') || ' ' || COALESCE(s.last_name, ''),
               mb.name, req.requirement_number,
               rp.submitted_at, rp.submission_notes
        FROM scout_merit_badge_requirement_progress rp
        INNER JOIN scout_merit_badge_progress p ON p.id = rp.merit_badge_progress_id
        INNER JOIN merit_badges mb ON mb.id = p.merit_badge_id
        INNER JOIN merit_badge_requirements req ON req.id = rp.requirement_id
        INNER JOIN scouts s ON s.id = p.scout_id
        WHERE s.unit_id = ? AND rp.approval_status = 'pending_approval'
        ORDER BY submitted_at, requirement_progress_id
        """,
        (unit_id, unit_id),
    )


def requirement_completion_matrix(conn, rank_id):
    """For a rank, which requirements are most commonly incomplete?

    Counts only Scouts working on or holding the rank, against the rank's
    configured requirement version.
    """
    return conn.execute(
        """
        SELECT
            req.requirement_number,
            SUBSTR(req.description, 1, 60) AS requirement_desc,
            COUNT(p.id) AS total_scouts,
            COALESCE(SUM(CASE WHEN rp.status IN ('completed', 'approved', 'awarded')
                              THEN 1 ELSE 0 END), 0) AS scouts_completed,
            COUNT(p.id)
                - COALESCE(SUM(CASE WHEN rp.status IN ('completed', 'approved', 'awarded')
                                    THEN 1 ELSE 0 END), 0) AS scouts_needing,
            ROUND(
                (COUNT(p.id)
                 - COALESCE(SUM(CASE WHEN rp.status IN ('completed', 'approved', 'awarded')
                                     THEN 1 ELSE 0 END), 0))
                * 100.0 / MAX(COUNT(p.id), 1), 1
            ) AS pct_incomplete
        FROM rank_requirements req
        INNER JOIN ranks r ON r.id = req.rank_id AND r.requirement_version_year = req.version_year
        LEFT JOIN scout_rank_progress p ON p.rank_id = req.rank_id
        LEFT JOIN scout_rank_requirement_progress rp
            ON rp.rank_progress_id = p.id
            AND rp.requirement_id = req.id
        WHERE req.rank_id = ?
          AND req.is_header = 0
        GROUP BY req.id
        ORDER BY pct_incomplete DESC, req.display_order
        """,
        (rank_id,),
    ).fetchall()


def per_scout_summary(conn, unit_id):
    """Summary for each Scout: rank, badges earned, Eagle badges, in progress."""
    return conn.execute(
        """
        SELECT
            s.id AS scout_id,
            COALESCE(s.first_name, '') || ' ' || COALESCE(s.last_name, '') AS scout_name,
            COALESCE(s.rank, '--') AS current_rank,
            (SELECT COUNT(*) FROM scout_merit_badge_progress p
             WHERE p.scout_id = s.id AND p.status = 'awarded') AS total_mbs_earned,
            (SELECT COUNT(*) FROM scout_merit_badge_progress p
             INNER JOIN merit_badges mb ON mb.id = p.merit_badge_id
             WHERE p.scout_id = s.id
               AND p.status = 'awarded'
               AND mb.is_eagle_required = 1) AS eagle_mbs_earned,
            (SELECT COUNT(*) FROM scout_merit_badge_progress p
             WHERE p.scout_id = s.id
               AND p.status NOT IN ('awarded', 'completed')) AS mbs_in_progress,
            (SELECT COALESCE(SUM(value), 0) FROM scout_activity_entries a
             WHERE a.scout_id = s.id AND a.activity_type = 'camping') AS nights_camped
        FROM scouts s
        LEFT JOIN ranks r ON r.name = s.rank
        WHERE s.unit_id = ? AND s.is_active = 1
        ORDER BY COALESCE(r.display_order, 0) DESC, scout_name
        """,
        (unit_id,),
    ).fetchall()


def rank_requirement_catalog(conn, rank_id):
    """A rank's requirements for its configured version, headers included."""
    return select_paged(
        conn,
        """
        SELECT req.id, req.requirement_number, req.scoutbook_requirement_number,
               req.parent_requirement_id, req.description, req.is_header
        FROM rank_requirements req
        INNER JOIN ranks r ON r.id = req.rank_id AND r.requirement_version_year = req.version_year
        WHERE req.rank_id = ?
        ORDER BY req.display_order, req.id
        """,
        (rank_id,),
    )


def merit_badge_requirement_catalog(conn, badge_id, version_year):
    return select_paged(
        conn,
        """
        SELECT id, requirement_number, scoutbook_requirement_number,
               parent_requirement_id, description, is_header
        FROM merit_badge_requirements
        WHERE merit_badge_id = ? AND version_year = ?
        ORDER BY display_order, id
        """,
        (badge_id, version_year),
    )


def import_mismatches(conn, unit_id):
    """Requirements from past imports that matched nothing in the catalog."""
    return conn.execute(
        """
        SELECT id, created_at, bsa_member_id, scout_name, advancement_type,
               item_name, version_year, requirement_number, error_reason
        FROM import_requirement_mismatches
        WHERE unit_id = ?
        ORDER BY created_at DESC, id DESC
        """,
        (unit_id,),
    ).fetchall()
