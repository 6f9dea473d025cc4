"""Tests for advancement_db.progress."""

import pytest

from advancement_db.approvals import approve_submission, submit_requirement_for_approval
from advancement_db.catalog import MERIT_BADGE, RANK
from advancement_db.db import add_membership, create_profile, create_unit, upsert_scout
from advancement_db.notes import parse_notes
from advancement_db.progress import (
    add_requirement_note,
    add_requirement_note_with_init,
    approve_enrollment,
    assign_requirement_to_scouts,
    award_enrollment,
    bulk_approve_requirements,
    bulk_approve_requirements_with_init,
    bulk_award_merit_badges,
    bulk_mark_requirements_complete,
    complete_merit_badge,
    initialize_enrollment,
    initialize_rank_progress,
    mark_requirement_complete,
    mark_requirement_complete_with_init,
    start_merit_badge,
    undo_requirement_completion,
)
from advancement_db.queries import pending_submissions


# ── Helpers ───────────────────────────────────────────────────────────────────


def _start_tenderfoot(conn, troop, scout_id=None):
    result = initialize_rank_progress(conn, troop.leader_id, troop.unit_id,
                                      scout_id or troop.scout_id, troop.tenderfoot_id)
    assert result.success
    return result.data["progress_id"]


def _requirement_row(conn, kind, rp_id):
    table = RANK.requirement_progress_table if kind is RANK else MERIT_BADGE.requirement_progress_table
    return conn.execute(f"SELECT * FROM {table} WHERE id = ?", (rp_id,)).fetchone()


def _statuses(conn, progress_id):
    rows = conn.execute(
        "SELECT status FROM scout_rank_requirement_progress WHERE rank_progress_id = ?",
        (progress_id,),
    ).fetchall()
    return [r["status"] for r in rows]


@pytest.fixture
def other_unit(conn):
    unit_id = create_unit(conn, "Troop 99")
    leader_id = create_profile(conn, "Other", "Leader")
    add_membership(conn, unit_id, leader_id, "leader")
    scout_id = upsert_scout(conn, unit_id, "Other", "Scout", "2000002")
    return unit_id, leader_id, scout_id


# ── Initialization ────────────────────────────────────────────────────────────


class TestInitializeEnrollment:
    def test_creates_coverage_rows(self, conn, troop):
        progress_id = _start_tenderfoot(conn, troop)
        assert _statuses(conn, progress_id) == ["not_started"] * 10
        row = conn.execute("SELECT status FROM scout_rank_progress WHERE id = ?", (progress_id,)).fetchone()
        assert row["status"] == "in_progress"

    def test_second_start_is_ignored(self, conn, troop):
        progress_id = _start_tenderfoot(conn, troop)
        result = initialize_rank_progress(conn, troop.leader_id, troop.unit_id, troop.scout_id,
                                          troop.tenderfoot_id)
        assert result.success and result.ignored
        assert result.kind == "conflict_ignored"
        assert result.data["progress_id"] == progress_id
        assert len(_statuses(conn, progress_id)) == 10

    def test_badge_pins_current_version(self, conn, troop):
        result = start_merit_badge(conn, troop.leader_id, troop.unit_id, troop.scout_id,
                                   troop.camping_id, counselor_name="Dana Counselor")
        assert result.data["version_year"] == 2025
        row = conn.execute("SELECT * FROM scout_merit_badge_progress").fetchone()
        assert row["requirement_version_year"] == 2025
        assert row["counselor_name"] == "Dana Counselor"
        count = conn.execute("SELECT COUNT(*) FROM scout_merit_badge_requirement_progress").fetchone()[0]
        assert count == 6

    def test_badge_explicit_version(self, conn, troop):
        result = start_merit_badge(conn, troop.leader_id, troop.unit_id, troop.scout_id,
                                   troop.camping_id, version_year=2023)
        assert result.data["version_year"] == 2023
        count = conn.execute("SELECT COUNT(*) FROM scout_merit_badge_requirement_progress").fetchone()[0]
        assert count == 5

    def test_version_without_requirements_rejected(self, conn, troop):
        result = start_merit_badge(conn, troop.leader_id, troop.unit_id, troop.scout_id,
                                   troop.camping_id, version_year=2019)
        assert not result.success
        assert result.kind == "validation_failed"

    def test_unconfigured_badge_rejected(self, conn, troop):
        result = start_merit_badge(conn, troop.leader_id, troop.unit_id, troop.scout_id,
                                   troop.chess_id)
        assert not result.success
        assert result.kind == "validation_failed"
        assert conn.execute("SELECT COUNT(*) FROM scout_merit_badge_progress").fetchone()[0] == 0

    def test_parent_cannot_start(self, conn, troop):
        result = initialize_rank_progress(conn, troop.parent_id, troop.unit_id, troop.scout_id,
                                          troop.tenderfoot_id)
        assert result.kind == "permission_denied"

    def test_missing_profile(self, conn, troop):
        result = initialize_rank_progress(conn, None, troop.unit_id, troop.scout_id,
                                          troop.tenderfoot_id)
        assert result.kind == "not_authenticated"

    def test_scout_in_other_unit(self, conn, troop, other_unit):
        _, _, other_scout = other_unit
        result = initialize_rank_progress(conn, troop.leader_id, troop.unit_id, other_scout,
                                          troop.tenderfoot_id)
        assert result.kind == "permission_denied"

    def test_unknown_item(self, conn, troop):
        result = initialize_enrollment(conn, troop.leader_id, troop.unit_id, "rank",
                                       troop.scout_id, 9999)
        assert result.kind == "not_found"


# ── Requirement transitions ───────────────────────────────────────────────────


class TestMarkRequirementComplete:
    def test_marks_completed_with_note(self, conn, troop):
        progress_id = _start_tenderfoot(conn, troop)
        rp_id = troop.rp(RANK, progress_id, "2a")
        result = mark_requirement_complete(conn, troop.leader_id, troop.unit_id, rp_id,
                                           completed_at="2024-05-01")
        assert result.success and not result.ignored
        row = _requirement_row(conn, RANK, rp_id)
        assert row["status"] == "completed"
        assert row["completed_at"] == "2024-05-01"
        assert row["completed_by"] == troop.leader_id
        [note] = parse_notes(row["notes"])
        assert note["type"] == "completion"
        assert note["author"] == "Pat Leader"

    def test_already_completed_is_ignored(self, conn, troop):
        progress_id = _start_tenderfoot(conn, troop)
        rp_id = troop.rp(RANK, progress_id, "2a")
        mark_requirement_complete(conn, troop.leader_id, troop.unit_id, rp_id, completed_at="2024-05-01")
        result = mark_requirement_complete(conn, troop.leader_id, troop.unit_id, rp_id,
                                           completed_at="2024-06-01")
        assert result.success and result.ignored
        row = _requirement_row(conn, RANK, rp_id)
        assert row["completed_at"] == "2024-05-01"
        assert len(parse_notes(row["notes"])) == 1

    def test_other_unit_leader_denied(self, conn, troop, other_unit):
        other_unit_id, other_leader, _ = other_unit
        progress_id = _start_tenderfoot(conn, troop)
        rp_id = troop.rp(RANK, progress_id, "2a")
        result = mark_requirement_complete(conn, other_leader, other_unit_id, rp_id)
        assert result.kind == "permission_denied"
        assert _requirement_row(conn, RANK, rp_id)["status"] == "not_started"

    def test_missing_row(self, conn, troop):
        result = mark_requirement_complete(conn, troop.leader_id, troop.unit_id, 9999)
        assert result.kind == "not_found"

    def test_completing_resolves_pending_submission(self, conn, troop):
        progress_id = _start_tenderfoot(conn, troop)
        rp_id = troop.rp(RANK, progress_id, "2a")
        conn.execute(
            "UPDATE scout_rank_requirement_progress SET approval_status = 'pending_approval' WHERE id = ?",
            (rp_id,),
        )
        mark_requirement_complete(conn, troop.leader_id, troop.unit_id, rp_id)
        assert _requirement_row(conn, RANK, rp_id)["approval_status"] == "approved"


class TestMarkRequirementCompleteWithInit:
    def test_creates_enrollment(self, conn, troop):
        req_id = troop.req(RANK, troop.tenderfoot_id, 2024, "3b")
        result = mark_requirement_complete_with_init(conn, troop.leader_id, troop.unit_id,
                                                     troop.scout_id, RANK, troop.tenderfoot_id, req_id)
        assert result.success
        statuses = _statuses(conn, result.data["progress_id"])
        assert statuses.count("completed") == 1
        assert len(statuses) == 10

    def test_header_rejected(self, conn, troop):
        req_id = troop.req(RANK, troop.tenderfoot_id, 2024, "1")
        result = mark_requirement_complete_with_init(conn, troop.leader_id, troop.unit_id,
                                                     troop.scout_id, RANK, troop.tenderfoot_id, req_id)
        assert result.kind == "validation_failed"

    def test_requirement_of_other_item(self, conn, troop):
        req_id = troop.req(RANK, troop.scout_rank_id, 2024, "2")
        result = mark_requirement_complete_with_init(conn, troop.leader_id, troop.unit_id,
                                                     troop.scout_id, RANK, troop.tenderfoot_id, req_id)
        assert result.kind == "not_found"


class TestUndoRequirementCompletion:
    def test_resets_and_records_reason(self, conn, troop):
        progress_id = _start_tenderfoot(conn, troop)
        rp_id = troop.rp(RANK, progress_id, "2a")
        mark_requirement_complete(conn, troop.leader_id, troop.unit_id, rp_id)
        result = undo_requirement_completion(conn, troop.leader_id, troop.unit_id, rp_id,
                                             "Recorded for the wrong Scout")
        assert result.success and not result.ignored
        row = _requirement_row(conn, RANK, rp_id)
        assert row["status"] == "not_started"
        assert row["completed_at"] is None
        assert row["completed_by"] is None
        notes = parse_notes(row["notes"])
        assert [n["type"] for n in notes] == ["completion", "undo"]
        assert notes[-1]["text"] == "Undo: Recorded for the wrong Scout"

    def test_reason_required(self, conn, troop):
        progress_id = _start_tenderfoot(conn, troop)
        rp_id = troop.rp(RANK, progress_id, "2a")
        mark_requirement_complete(conn, troop.leader_id, troop.unit_id, rp_id)
        result = undo_requirement_completion(conn, troop.leader_id, troop.unit_id, rp_id, "  ")
        assert result.kind == "validation_failed"
        assert _requirement_row(conn, RANK, rp_id)["status"] == "completed"

    def test_not_started_is_ignored(self, conn, troop):
        progress_id = _start_tenderfoot(conn, troop)
        rp_id = troop.rp(RANK, progress_id, "2a")
        result = undo_requirement_completion(conn, troop.leader_id, troop.unit_id, rp_id, "oops")
        assert result.ignored
        assert _requirement_row(conn, RANK, rp_id)["notes"] is None

    def test_awarded_is_ignored(self, conn, troop):
        progress_id = _start_tenderfoot(conn, troop)
        rp_id = troop.rp(RANK, progress_id, "2a")
        mark_requirement_complete(conn, troop.leader_id, troop.unit_id, rp_id,
                                  completed_at="2024-02-02")
        conn.execute("UPDATE scout_rank_requirement_progress SET status = 'awarded' WHERE id = ?",
                     (rp_id,))
        before = dict(_requirement_row(conn, RANK, rp_id))
        result = undo_requirement_completion(conn, troop.leader_id, troop.unit_id, rp_id, "oops")
        assert result.success and result.ignored
        assert dict(_requirement_row(conn, RANK, rp_id)) == before

    def test_clears_parent_approval(self, conn, troop):
        progress_id = _start_tenderfoot(conn, troop)
        rp_id = troop.rp(RANK, progress_id, "2a")
        submit_requirement_for_approval(conn, troop.parent_id, troop.scout_id, rp_id)
        approve_submission(conn, troop.leader_id, troop.unit_id, rp_id)
        undo_requirement_completion(conn, troop.leader_id, troop.unit_id, rp_id, "Wrong Scout")
        row = _requirement_row(conn, RANK, rp_id)
        assert row["status"] == "not_started"
        assert (row["approval_status"], row["reviewed_at"], row["reviewed_by"]) == (None, None, None)
        assert [n["type"] for n in parse_notes(row["notes"])][-1] == "undo"

    def test_undo_then_complete_again(self, conn, troop):
        progress_id = _start_tenderfoot(conn, troop)
        rp_id = troop.rp(RANK, progress_id, "2a")
        mark_requirement_complete(conn, troop.leader_id, troop.unit_id, rp_id)
        undo_requirement_completion(conn, troop.leader_id, troop.unit_id, rp_id, "oops")
        result = mark_requirement_complete(conn, troop.leader_id, troop.unit_id, rp_id)
        assert result.success and not result.ignored
        assert len(parse_notes(_requirement_row(conn, RANK, rp_id)["notes"])) == 3


# ── Bulk operations ───────────────────────────────────────────────────────────


class TestBulkMarkRequirementsComplete:
    def test_partial_failure_summary(self, conn, troop):
        progress_id = _start_tenderfoot(conn, troop)
        done = troop.rp(RANK, progress_id, "2a")
        fresh = troop.rp(RANK, progress_id, "2b")
        mark_requirement_complete(conn, troop.leader_id, troop.unit_id, done)
        result = bulk_mark_requirements_complete(conn, troop.leader_id, troop.unit_id,
                                                 [done, fresh, 9999])
        assert not result.success
        assert result.kind == "partial_batch_failure"
        summary = result.data
        assert (summary.success_count, summary.skipped_count, summary.failed_count) == (1, 1, 1)
        assert summary.errors[0].startswith("Requirement progress 9999")
        assert _requirement_row(conn, RANK, fresh)["status"] == "completed"

    def test_all_succeed(self, conn, troop):
        progress_id = _start_tenderfoot(conn, troop)
        ids = [troop.rp(RANK, progress_id, n) for n in ("3a", "3b")]
        result = bulk_mark_requirements_complete(conn, troop.leader_id, troop.unit_id, ids)
        assert result.success
        assert result.data.success_count == 2


class TestBulkApproveRequirements:
    def test_completes_rows_and_skips_done(self, conn, troop):
        progress_id = _start_tenderfoot(conn, troop)
        ids = [troop.rp(RANK, progress_id, n) for n in ("1a", "1b", "1c")]
        mark_requirement_complete(conn, troop.leader_id, troop.unit_id, ids[0])
        result = bulk_approve_requirements(conn, troop.leader_id, troop.unit_id, ids,
                                           completed_at="2024-07-04")
        assert result.success
        assert (result.data.success_count, result.data.skipped_count) == (2, 1)
        row = _requirement_row(conn, RANK, ids[1])
        assert row["status"] == "completed"
        assert row["completed_at"] == "2024-07-04"
        assert parse_notes(row["notes"])[0]["text"] == "Requirement approved"

    def test_resolves_pending_submission(self, conn, troop):
        progress_id = _start_tenderfoot(conn, troop)
        rp_id = troop.rp(RANK, progress_id, "1a")
        submit_requirement_for_approval(conn, troop.parent_id, troop.scout_id, rp_id,
                                        completed_at="2024-01-01")
        result = bulk_approve_requirements(conn, troop.leader_id, troop.unit_id, [rp_id],
                                           completed_at="2024-05-05")
        assert result.data.success_count == 1
        row = _requirement_row(conn, RANK, rp_id)
        assert (row["status"], row["approval_status"]) == ("completed", "approved")
        assert row["reviewed_by"] == troop.leader_id
        assert row["reviewed_at"] is not None
        assert pending_submissions(conn, troop.unit_id) == []

        again = approve_submission(conn, troop.leader_id, troop.unit_id, rp_id)
        assert again.success and again.ignored
        row = _requirement_row(conn, RANK, rp_id)
        assert row["completed_at"] == "2024-05-05"
        assert [n["text"] for n in parse_notes(row["notes"])] == [
            "Submitted for approval", "Requirement approved"]

    def test_repeat_run_appends_nothing(self, conn, troop):
        progress_id = _start_tenderfoot(conn, troop)
        ids = [troop.rp(RANK, progress_id, n) for n in ("2a", "2b")]
        first = bulk_approve_requirements(conn, troop.leader_id, troop.unit_id, ids)
        notes = [_requirement_row(conn, RANK, i)["notes"] for i in ids]
        second = bulk_approve_requirements(conn, troop.leader_id, troop.unit_id, ids)
        assert second.success
        assert second.data.success_count <= first.data.success_count
        assert (second.data.success_count, second.data.skipped_count) == (0, 2)
        assert [_requirement_row(conn, RANK, i)["notes"] for i in ids] == notes

    def test_foreign_rows_fail(self, conn, troop, other_unit):
        other_unit_id, other_leader, other_scout = other_unit
        progress_id = _start_tenderfoot(conn, troop)
        rp_id = troop.rp(RANK, progress_id, "1a")
        result = bulk_approve_requirements(conn, other_leader, other_unit_id, [rp_id])
        assert result.kind == "partial_batch_failure"
        assert result.data.failed_count == 1
        assert _requirement_row(conn, RANK, rp_id)["status"] == "not_started"

    def test_with_init(self, conn, troop):
        req_ids = [troop.req(MERIT_BADGE, troop.first_aid_id, 2024, n) for n in ("1", "3")]
        result = bulk_approve_requirements_with_init(conn, troop.leader_id, troop.unit_id,
                                                     troop.scout_id, MERIT_BADGE,
                                                     troop.first_aid_id, req_ids)
        assert result.success
        assert result.data.success_count == 2
        rows = conn.execute(
            "SELECT status FROM scout_merit_badge_requirement_progress ORDER BY id"
        ).fetchall()
        assert sorted(r["status"] for r in rows) == ["completed", "completed", "not_started", "not_started"]


class TestAssignRequirementToScouts:
    def test_assigns_across_scouts(self, conn, troop):
        second = upsert_scout(conn, troop.unit_id, "Blake", "Scout", "1000002")
        req_id = troop.req(RANK, troop.tenderfoot_id, 2024, "1b")
        result = assign_requirement_to_scouts(conn, troop.leader_id, troop.unit_id, RANK,
                                              troop.tenderfoot_id, req_id,
                                              [troop.scout_id, second, 9999],
                                              completed_at="2024-08-10", note="Summer camp")
        assert result.kind == "partial_batch_failure"
        assert result.data.success_count == 2
        rows = conn.execute(
            "SELECT completed_at, notes FROM scout_rank_requirement_progress WHERE requirement_id = ?",
            (req_id,),
        ).fetchall()
        assert len(rows) == 2
        assert {r["completed_at"] for r in rows} == {"2024-08-10"}
        assert parse_notes(rows[0]["notes"])[0]["text"] == "Summer camp"

    def test_repeat_assignment_skipped(self, conn, troop):
        req_id = troop.req(RANK, troop.tenderfoot_id, 2024, "1b")
        args = (conn, troop.leader_id, troop.unit_id, RANK, troop.tenderfoot_id, req_id, [troop.scout_id])
        assign_requirement_to_scouts(*args)
        result = assign_requirement_to_scouts(*args)
        assert result.success
        assert (result.data.success_count, result.data.skipped_count) == (0, 1)


# ── Notes ─────────────────────────────────────────────────────────────────────


class TestRequirementNotes:
    def test_appends_general_note(self, conn, troop):
        progress_id = _start_tenderfoot(conn, troop)
        rp_id = troop.rp(RANK, progress_id, "2c")
        add_requirement_note(conn, troop.leader_id, troop.unit_id, rp_id, "Needs to redo the demo")
        add_requirement_note(conn, troop.leader_id, troop.unit_id, rp_id, "Redone")
        row = _requirement_row(conn, RANK, rp_id)
        notes = parse_notes(row["notes"])
        assert [n["text"] for n in notes] == ["Needs to redo the demo", "Redone"]
        assert row["status"] == "not_started"

    def test_empty_note_rejected(self, conn, troop):
        progress_id = _start_tenderfoot(conn, troop)
        rp_id = troop.rp(RANK, progress_id, "2c")
        assert add_requirement_note(conn, troop.leader_id, troop.unit_id, rp_id, "").kind == "validation_failed"

    def test_with_init(self, conn, troop):
        req_id = troop.req(MERIT_BADGE, troop.camping_id, 2025, "5")
        result = add_requirement_note_with_init(conn, troop.leader_id, troop.unit_id, troop.scout_id,
                                                MERIT_BADGE, troop.camping_id, req_id, "Plan a trip")
        assert result.success
        row = _requirement_row(conn, MERIT_BADGE, result.data["requirement_progress_id"])
        assert parse_notes(row["notes"])[0]["text"] == "Plan a trip"


# ── Enrollment transitions ────────────────────────────────────────────────────


class TestEnrollmentTransitions:
    def test_approve_then_ignored(self, conn, troop):
        progress_id = _start_tenderfoot(conn, troop)
        assert approve_enrollment(conn, troop.leader_id, troop.unit_id, RANK, progress_id).success
        row = conn.execute("SELECT * FROM scout_rank_progress WHERE id = ?", (progress_id,)).fetchone()
        assert row["status"] == "approved"
        assert row["approved_by"] == troop.leader_id
        assert approve_enrollment(conn, troop.leader_id, troop.unit_id, RANK, progress_id).ignored

    def test_award_keeps_existing_date(self, conn, troop):
        progress_id = _start_tenderfoot(conn, troop)
        award_enrollment(conn, troop.leader_id, troop.unit_id, RANK, progress_id, "2024-09-01")
        result = award_enrollment(conn, troop.leader_id, troop.unit_id, RANK, progress_id)
        assert result.data["awarded_at"] == "2024-09-01"

    def test_complete_merit_badge(self, conn, troop):
        started = start_merit_badge(conn, troop.leader_id, troop.unit_id, troop.scout_id, troop.first_aid_id)
        progress_id = started.data["progress_id"]
        result = complete_merit_badge(conn, troop.leader_id, troop.unit_id, progress_id, "2024-10-10")
        assert result.success
        row = conn.execute("SELECT * FROM scout_merit_badge_progress WHERE id = ?", (progress_id,)).fetchone()
        assert row["status"] == "awarded"
        assert row["counselor_signed_at"] == "2024-10-10"
        again = complete_merit_badge(conn, troop.leader_id, troop.unit_id, progress_id)
        assert again.ignored

    def test_bulk_award_only_completed_badges(self, conn, troop):
        done = start_merit_badge(conn, troop.leader_id, troop.unit_id, troop.scout_id,
                                 troop.first_aid_id).data["progress_id"]
        open_ = start_merit_badge(conn, troop.leader_id, troop.unit_id, troop.scout_id,
                                  troop.camping_id).data["progress_id"]
        conn.execute("UPDATE scout_merit_badge_progress SET status = 'completed' WHERE id = ?", (done,))
        result = bulk_award_merit_badges(conn, troop.leader_id, troop.unit_id, [done, open_], "2024-11-01")
        assert result.success
        assert (result.data.success_count, result.data.skipped_count) == (1, 1)
        statuses = {
            r["id"]: r["status"]
            for r in conn.execute("SELECT id, status FROM scout_merit_badge_progress").fetchall()
        }
        assert statuses == {done: "awarded", open_: "in_progress"}


class TestTenderfootLifecycle:
    def test_initialize_complete_approve_award(self, conn, troop):
        progress_id = _start_tenderfoot(conn, troop)
        for number in ("1a", "2a", "3a"):
            rp_id = troop.rp(RANK, progress_id, number)
            assert mark_requirement_complete(conn, troop.leader_id, troop.unit_id, rp_id).success
        assert approve_enrollment(conn, troop.leader_id, troop.unit_id, RANK, progress_id).success
        assert award_enrollment(conn, troop.leader_id, troop.unit_id, RANK, progress_id).success

        scout = conn.execute("SELECT rank FROM scouts WHERE id = ?", (troop.scout_id,)).fetchone()
        assert scout["rank"] == "Tenderfoot"
        enrollment = conn.execute(
            "SELECT status FROM scout_rank_progress WHERE id = ?", (progress_id,)
        ).fetchone()
        assert enrollment["status"] == "awarded"
        statuses = _statuses(conn, progress_id)
        assert statuses.count("completed") == 3
        assert statuses.count("not_started") == 7
