"""Scouting Advancement Ledger CLI.

Track rank and merit badge progress for a unit in a local SQLite database,
and reconcile it against the troop advancement CSV export.

Usage examples:
    advancement init "Troop 42"
    advancement add-leader Pat Smith --email pat@example.org
    advancement load-catalog catalog.json
    advancement import-roster roster.csv
    advancement --as 1 stage-import troop_advancement.csv
    advancement --as 1 import-advancement troop_advancement.csv --create-scouts
    advancement --as 1 complete rank 17 --date 2024-03-02
    advancement query summary
"""

import argparse
import json
import logging
import os
import sys

import click

from advancement_db.activity import log_activity
from advancement_db.approvals import bulk_approve_submissions, deny_submission
from advancement_db.catalog import TRACKS, load_catalog
from advancement_db.db import (
    add_guardian,
    add_membership,
    create_profile,
    get_connection,
    get_setting,
    import_roster_csv,
    init_db,
)
from advancement_db.migration import switch_merit_badge_version
from advancement_db.progress import (
    award_enrollment,
    initialize_enrollment,
    mark_requirement_complete,
    undo_requirement_completion,
)
from advancement_db.queries import (
    import_mismatches,
    pending_submissions,
    per_scout_summary,
    requirement_completion_matrix,
    scout_advancement_progress,
)
from advancement_db.reconcile import import_staged_advancement, stage_troop_advancement
from advancement_db.troop_csv import read_troop_advancement


def get_profile_id(args):
    if args.as_profile:
        return int(args.as_profile)
    profile_id = os.environ.get("ADVANCEMENT_PROFILE_ID")
    if profile_id:
        return int(profile_id)
    config_path = os.path.join(os.getcwd(), "config.json")
    if os.path.exists(config_path):
        with open(config_path) as f:
            value = json.load(f).get("profile_id")
            return int(value) if value else None
    return None


def require_profile(args):
    profile_id = get_profile_id(args)
    if not profile_id:
        click.echo(
            _err(
                "Error: No acting profile.\n"
                "Pass --as PROFILE_ID, set ADVANCEMENT_PROFILE_ID, "
                'or create config.json with {"profile_id": ...}'
            ),
            err=True,
        )
        sys.exit(1)
    return profile_id


def require_unit(args, conn):
    unit_id = args.unit or get_setting(conn, "unit_id")
    if not unit_id:
        click.echo(_err("Error: No unit. Run 'advancement init' or pass --unit."), err=True)
        conn.close()
        sys.exit(1)
    return int(unit_id)


def _ok(text):
    return click.style(text, fg="green")

def _err(text):
    return click.style(text, fg="red")

def _dim(text):
    return click.style(text, fg="bright_black")


def _report(result, message):
    """Print an ActionResult; exit non-zero when it failed."""
    if result.ignored:
        click.echo(_dim(f"Skipped: {result.error}"))
    elif result.success:
        click.echo(_ok(message))
    else:
        click.echo(_err(f"Error ({result.kind}): {result.error}"), err=True)
        summary = result.data
        for line in getattr(summary, "errors", None) or []:
            click.echo(_err(f"  {line}"), err=True)
        sys.exit(1)


# --- Setup commands ---


def cmd_init(args):
    conn = get_connection(args.db)
    unit_id = init_db(conn, unit_name=args.unit_name)
    conn.close()
    print(f"Database initialized at {args.db or 'advancement.db'} (unit {unit_id}: {args.unit_name})")


def cmd_add_leader(args):
    conn = get_connection(args.db)
    init_db(conn)
    unit_id = require_unit(args, conn)
    profile_id = create_profile(conn, args.first_name, args.last_name, args.email)
    add_membership(conn, unit_id, profile_id, args.role)
    conn.close()
    print(f"Added {args.role} {args.first_name} {args.last_name} (profile {profile_id})")


def cmd_add_guardian(args):
    conn = get_connection(args.db)
    init_db(conn)
    unit_id = require_unit(args, conn)
    profile_id = create_profile(conn, args.first_name, args.last_name, args.email)
    add_membership(conn, unit_id, profile_id, "parent")
    add_guardian(conn, args.scout_id, profile_id, args.relationship)
    conn.close()
    print(f"Added guardian {args.first_name} {args.last_name} (profile {profile_id}) "
          f"for Scout {args.scout_id}")


def cmd_import_roster(args):
    conn = get_connection(args.db)
    init_db(conn)
    unit_id = require_unit(args, conn)
    try:
        imported, skipped = import_roster_csv(conn, unit_id, args.csv_file)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    conn.close()
    print(f"Imported {imported} Scouts ({skipped} rows skipped)")


def cmd_load_catalog(args):
    conn = get_connection(args.db)
    init_db(conn)
    with open(args.json_file) as f:
        data = json.load(f)
    counts = load_catalog(conn, data)
    conn.close()
    print(
        f"Loaded {counts['ranks']} ranks, {counts['merit_badges']} merit badges, "
        f"{counts['requirements']} requirements, "
        f"{counts['leadership_positions']} leadership positions"
    )


# --- Reconciliation ---


def _stage(args, conn, profile_id, unit_id):
    try:
        parsed = read_troop_advancement(args.csv_file)
    except ValueError as e:
        click.echo(_err(f"Error: {e}"), err=True)
        conn.close()
        sys.exit(1)
    result = stage_troop_advancement(conn, profile_id, unit_id, parsed)
    if not result.success:
        _report(result, "")
    session = result.data
    s = session.summary
    click.echo(f"\nStaged {s['total_scouts']} Scouts "
               f"({s['matched']} matched, {s['unmatched']} not on roster):\n")
    click.echo(f"  {'Scout':<28} {'Member ID':<12} {'New':>5} {'Upd':>5} {'Dup':>5} {'Unm':>5}")
    click.echo(f"  {'-'*28} {'-'*11} {'-'*5} {'-'*5} {'-'*5} {'-'*5}")
    for scout in session.scouts:
        counts = {"new": 0, "update": 0, "duplicate": 0, "unmatched": 0}
        for item in scout.items():
            if item.status in counts:
                counts[item.status] += 1
        name = scout.full_name if scout.match_status == "matched" else f"{scout.full_name} *"
        click.echo(
            f"  {name:<28} {scout.member_id:<12} {counts['new']:>5} "
            f"{counts['update']:>5} {counts['duplicate']:>5} {counts['unmatched']:>5}"
        )
    click.echo(
        f"\n  New: {s['new_ranks']} ranks, {s['new_rank_requirements']} rank requirements, "
        f"{s['new_merit_badges']} merit badges, "
        f"{s['new_merit_badge_requirements']} merit badge requirements"
    )
    click.echo(f"  Updates: {s['updates']}  Duplicates: {s['duplicates']}  "
               f"Unmatched requirements: {s['unmatched_requirements']}")
    for warning in session.warnings:
        click.echo(_dim(f"  Warning: {warning}"))
    return session


def cmd_stage_import(args):
    profile_id = require_profile(args)
    conn = get_connection(args.db)
    init_db(conn)
    unit_id = require_unit(args, conn)
    _stage(args, conn, profile_id, unit_id)
    conn.close()


def cmd_import_advancement(args):
    profile_id = require_profile(args)
    conn = get_connection(args.db)
    init_db(conn)
    unit_id = require_unit(args, conn)
    session = _stage(args, conn, profile_id, unit_id)

    if args.member:
        selected = args.member
    else:
        selected = [
            s.member_id for s in session.scouts
            if s.match_status == "matched" or args.create_scouts
        ]
    if not selected:
        click.echo("\nNothing to import.")
        conn.close()
        return
    if not args.yes and not click.confirm(f"\nImport advancement for {len(selected)} Scouts?"):
        conn.close()
        return

    result = import_staged_advancement(conn, profile_id, unit_id, session, selected,
                                       create_unmatched_scouts=args.create_scouts)
    conn.close()
    if not result.success:
        _report(result, "")
    r = result.data
    click.echo(_ok(
        f"\nImported {r.ranks_imported} ranks, {r.rank_requirements_imported} rank requirements, "
        f"{r.badges_imported} merit badges, {r.badge_requirements_imported} merit badge requirements"
    ))
    click.echo(f"  Scouts created: {r.scouts_created}  Duplicates skipped: {r.duplicates_skipped}  "
               f"Mismatches logged: {r.mismatches_logged}")
    for warning in r.warnings:
        click.echo(_dim(f"  Warning: {warning}"))


# --- Progress commands ---


def _leader_context(args):
    profile_id = require_profile(args)
    conn = get_connection(args.db)
    init_db(conn)
    return conn, profile_id, require_unit(args, conn)


def cmd_start(args):
    conn, profile_id, unit_id = _leader_context(args)
    result = initialize_enrollment(conn, profile_id, unit_id, args.kind, args.scout_id,
                                   args.item_id, args.version, args.counselor)
    conn.close()
    data = result.data or {}
    _report(result, f"Started (progress {data.get('progress_id')}, version {data.get('version_year')})")


def cmd_complete(args):
    conn, profile_id, unit_id = _leader_context(args)
    result = mark_requirement_complete(conn, profile_id, unit_id, args.requirement_progress_id,
                                       args.kind, args.date, args.note)
    conn.close()
    _report(result, f"Requirement progress {args.requirement_progress_id} completed")


def cmd_undo(args):
    conn, profile_id, unit_id = _leader_context(args)
    result = undo_requirement_completion(conn, profile_id, unit_id,
                                         args.requirement_progress_id, args.reason, args.kind)
    conn.close()
    _report(result, f"Requirement progress {args.requirement_progress_id} reset to not started")


def cmd_approve(args):
    conn, profile_id, unit_id = _leader_context(args)
    if args.deny:
        if len(args.requirement_progress_ids) != 1:
            click.echo(_err("Error: --deny takes exactly one requirement progress id"), err=True)
            conn.close()
            sys.exit(1)
        result = deny_submission(conn, profile_id, unit_id, args.requirement_progress_ids[0],
                                 args.deny, args.kind)
        conn.close()
        _report(result, "Submission denied")
        return
    result = bulk_approve_submissions(conn, profile_id, unit_id, args.requirement_progress_ids,
                                      args.kind)
    conn.close()
    summary = result.data
    _report(result, f"Approved {summary.success_count} submissions "
                    f"({summary.skipped_count} skipped)")


def cmd_award(args):
    conn, profile_id, unit_id = _leader_context(args)
    result = award_enrollment(conn, profile_id, unit_id, args.kind, args.progress_id, args.date)
    conn.close()
    _report(result, f"Awarded (progress {args.progress_id})")


def _parse_mapping(text):
    """'4a=112' or '4a=112:likely' -> mapping dict. 'none' drops the source."""
    source, _, target = text.partition("=")
    target, _, confidence = target.partition(":")
    if target.lower() in ("", "none"):
        return {"source_requirement_number": source, "target_requirement_id": None,
                "confidence": "none"}
    return {
        "source_requirement_number": source,
        "target_requirement_id": int(target),
        "confidence": confidence or "exact",
    }


def cmd_switch_version(args):
    conn, profile_id, unit_id = _leader_context(args)
    try:
        mappings = [_parse_mapping(m) for m in args.map or []]
    except ValueError:
        click.echo(_err("Error: --map must look like SOURCE=TARGET_ID[:confidence]"), err=True)
        conn.close()
        sys.exit(1)
    result = switch_merit_badge_version(conn, profile_id, unit_id, args.progress_id,
                                        args.version_year, mappings)
    conn.close()
    data = result.data or {}
    _report(result, f"Switched to {args.version_year}: {data.get('mapped_count')} mapped, "
                    f"{data.get('unmapped_count')} unmapped")
    for source in data.get("dropped_mappings") or []:
        click.echo(_dim(f"  Dropped mapping for {source}"))


def cmd_log_activity(args):
    conn, profile_id, unit_id = _leader_context(args)
    result = log_activity(conn, profile_id, unit_id, args.scout_id, args.activity_type,
                          args.date, args.value, args.description, args.location)
    conn.close()
    _report(result, f"Logged {args.value} {args.activity_type} for Scout {args.scout_id}")


# --- Queries ---


def cmd_query(args):
    conn = get_connection(args.db)
    init_db(conn)
    unit_id = require_unit(args, conn)

    if args.query_name == "summary":
        rows = per_scout_summary(conn, unit_id)
        if not rows:
            print("No Scouts in database.")
            conn.close()
            return
        print(f"\nUnit Summary ({len(rows)} Scouts):\n")
        print(f"  {'Scout':<25} {'Rank':<14} {'MBs':<5} {'Eagle':<6} {'In Prog':<8} {'Nights':>6}")
        print(f"  {'-'*25} {'-'*13} {'-'*4} {'-'*5} {'-'*7} {'-'*6}")
        for r in rows:
            print(
                f"  {r['scout_name'] or '':<25} {r['current_rank'] or '':<14} "
                f"{r['total_mbs_earned'] or 0:<5} {r['eagle_mbs_earned'] or 0:<6} "
                f"{r['mbs_in_progress'] or 0:<8} {r['nights_camped'] or 0:>6g}"
            )

    elif args.query_name == "scout":
        if not args.scout_id:
            print("Specify --scout-id.")
            conn.close()
            return
        progress = scout_advancement_progress(conn, args.scout_id)
        if progress is None:
            print(f"Scout {args.scout_id} not found.")
            conn.close()
            return
        scout = progress["scout"]
        print(f"\n{scout['first_name'] or ''} {scout['last_name'] or ''} "
              f"({scout['rank'] or 'no rank'})\n")
        for rank in progress["ranks"]:
            done = sum(1 for r in rank["requirements"]
                       if r["status"] in ("completed", "approved", "awarded"))
            print(f"  {rank['name']:<20} {rank['status']:<12} "
                  f"{done}/{len(rank['requirements'])} requirements")
        for badge in progress["merit_badges"]:
            print(f"  {badge['name']:<20} {badge['status']:<12} "
                  f"{badge['completed_requirements']}/{badge['total_requirements']} requirements "
                  f"({badge['requirement_version_year']})")
        for position in progress["leadership"]:
            print(f"  {position['position']:<20} {position['start_date']} to "
                  f"{position['end_date'] or 'present'} ({position['tenure_months']} months)")
        for activity_type, total in sorted(progress["activity_totals"].items()):
            print(f"  {activity_type:<20} {total:g}")

    elif args.query_name == "pending":
        rows = pending_submissions(conn, unit_id)
        if not rows:
            print("No submissions awaiting approval.")
            conn.close()
            return
        print(f"\nPending Submissions ({len(rows)}):\n")
        print(f"  {'ID':<6} {'Kind':<12} {'Scout':<25} {'Item':<25} {'Req':<6} {'Submitted':<10}")
        print(f"  {'-'*5} {'-'*11} {'-'*25} {'-'*25} {'-'*5} {'-'*10}")
        for r in rows:
            print(
                f"  {r['requirement_progress_id']:<6} {r['kind']:<12} {r['scout_name']:<25} "
                f"{r['item_name']:<25} {r['requirement_number']:<6} {(r['submitted_at'] or '')[:10]}"
            )

    elif args.query_name == "req-matrix":
        if not args.rank_id:
            ranks = conn.execute("SELECT id, name FROM ranks ORDER BY display_order").fetchall()
            print("Specify --rank-id. Available ranks:")
            for r in ranks:
                print(f"  {r['id']}: {r['name']}")
            conn.close()
            return
        rows = requirement_completion_matrix(conn, args.rank_id)
        if not rows:
            print("No data for that rank.")
            conn.close()
            return
        print("\nRequirement Completion Matrix:\n")
        print(f"  {'Req':<6} {'Description':<50} {'Need':<5} {'%':>6}")
        print(f"  {'-'*5} {'-'*50} {'-'*4} {'-'*6}")
        for r in rows:
            desc = (r["requirement_desc"] or "")[:48]
            print(
                f"  {r['requirement_number'] or '':<6} {desc:<50} "
                f"{r['scouts_needing']:<5} {r['pct_incomplete']:>5}%"
            )

    elif args.query_name == "mismatches":
        rows = import_mismatches(conn, unit_id)
        if not rows:
            print("No unmatched requirements from imports.")
            conn.close()
            return
        print(f"\nUnmatched Import Requirements ({len(rows)}):\n")
        print(f"  {'Scout':<25} {'Type':<12} {'Item':<25} {'Ver':<5} {'Req':<10}")
        print(f"  {'-'*25} {'-'*11} {'-'*25} {'-'*4} {'-'*10}")
        for r in rows:
            print(
                f"  {r['scout_name'] or '':<25} {r['advancement_type']:<12} "
                f"{r['item_name'] or '':<25} {r['version_year'] or '':<5} "
                f"{r['requirement_number'] or '':<10}"
            )

    conn.close()


def main():
    parser = argparse.ArgumentParser(
        description="Scouting Advancement Ledger CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--db", help="Path to SQLite database", default=None)
    parser.add_argument("--as", dest="as_profile", help="Acting profile id", default=None)
    parser.add_argument("--unit", type=int, help="Unit id (defaults to the initialized unit)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress details")
    sub = parser.add_subparsers(dest="command")

    p_init = sub.add_parser("init", help="Initialize the database and create a unit")
    p_init.add_argument("unit_name", help="Name of the unit (e.g. 'Troop 42')")

    for name, help_text in (("add-leader", "Add a leader profile to the unit"),
                            ("add-guardian", "Add a parent/guardian for a Scout")):
        p = sub.add_parser(name, help=help_text)
        if name == "add-guardian":
            p.add_argument("scout_id", type=int)
            p.add_argument("--relationship", default=None)
        else:
            p.add_argument("--role", default="leader", choices=["admin", "treasurer", "leader"])
        p.add_argument("first_name")
        p.add_argument("last_name")
        p.add_argument("--email", default=None)

    p_roster = sub.add_parser("import-roster", help="Import Scouts from a roster CSV export")
    p_roster.add_argument("csv_file", help="Path to roster CSV file")

    p_catalog = sub.add_parser("load-catalog", help="Load ranks, badges and requirements from JSON")
    p_catalog.add_argument("json_file")

    p_stage = sub.add_parser("stage-import", help="Preview a troop advancement CSV import")
    p_stage.add_argument("csv_file")

    p_import = sub.add_parser("import-advancement", help="Import a troop advancement CSV")
    p_import.add_argument("csv_file")
    p_import.add_argument("--member", action="append",
                          help="Only import this member ID (repeatable)")
    p_import.add_argument("--create-scouts", action="store_true",
                          help="Add Scouts that are not on the roster")
    p_import.add_argument("--yes", action="store_true", help="Do not ask for confirmation")

    kinds = sorted(TRACKS)

    p_start = sub.add_parser("start", help="Start a rank or merit badge for a Scout")
    p_start.add_argument("kind", choices=kinds)
    p_start.add_argument("scout_id", type=int)
    p_start.add_argument("item_id", type=int)
    p_start.add_argument("--version", type=int, default=None)
    p_start.add_argument("--counselor", default=None)

    p_complete = sub.add_parser("complete", help="Mark a requirement complete")
    p_complete.add_argument("kind", choices=kinds)
    p_complete.add_argument("requirement_progress_id", type=int)
    p_complete.add_argument("--date", default=None)
    p_complete.add_argument("--note", default=None)

    p_undo = sub.add_parser("undo", help="Undo a requirement completion")
    p_undo.add_argument("kind", choices=kinds)
    p_undo.add_argument("requirement_progress_id", type=int)
    p_undo.add_argument("reason")

    p_approve = sub.add_parser("approve", help="Approve (or deny) parent submissions")
    p_approve.add_argument("kind", choices=kinds)
    p_approve.add_argument("requirement_progress_ids", type=int, nargs="+")
    p_approve.add_argument("--deny", metavar="REASON", default=None)

    p_award = sub.add_parser("award", help="Award a rank or merit badge")
    p_award.add_argument("kind", choices=kinds)
    p_award.add_argument("progress_id", type=int)
    p_award.add_argument("--date", default=None)

    p_switch = sub.add_parser("switch-version", help="Move a merit badge to another requirement version")
    p_switch.add_argument("progress_id", type=int)
    p_switch.add_argument("version_year", type=int)
    p_switch.add_argument("--map", action="append",
                          help="SOURCE=TARGET_ID[:confidence] (repeatable)")

    p_activity = sub.add_parser("log-activity", help="Log camping nights, hiking miles or service hours")
    p_activity.add_argument("scout_id", type=int)
    p_activity.add_argument("activity_type", choices=["camping", "hiking", "service", "conservation"])
    p_activity.add_argument("value", type=float)
    p_activity.add_argument("--date", required=True)
    p_activity.add_argument("--description", default=None)
    p_activity.add_argument("--location", default=None)

    p_query = sub.add_parser("query", help="Run a unit query")
    p_query.add_argument(
        "query_name",
        choices=["summary", "scout", "pending", "req-matrix", "mismatches"],
        help="Query to run",
    )
    p_query.add_argument("--scout-id", type=int)
    p_query.add_argument("--rank-id", type=int)

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(0)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    commands = {
        "init": cmd_init,
        "add-leader": cmd_add_leader,
        "add-guardian": cmd_add_guardian,
        "import-roster": cmd_import_roster,
        "load-catalog": cmd_load_catalog,
        "stage-import": cmd_stage_import,
        "import-advancement": cmd_import_advancement,
        "start": cmd_start,
        "complete": cmd_complete,
        "undo": cmd_undo,
        "approve": cmd_approve,
        "award": cmd_award,
        "switch-version": cmd_switch_version,
        "log-activity": cmd_log_activity,
        "query": cmd_query,
    }
    commands[args.command](args)


if __name__ == "__main__":
    main()
