"""Read the roster system's troop advancement CSV export.

One row per Scout per advancement line. The columns used are:
BSA Member ID, First Name, Middle Name, Last Name, Advancement Type,
Advancement, Version, Awarded, Date Completed, Approved,
Marked Completed Date and Awarded Date.

Advancement Type is one of:
- "Rank" (Advancement holds the rank name)
- "<Rank> Rank Requirements" (Advancement holds the requirement number)
- "Merit Badges" (Advancement holds the badge name)
- "<Badge> Merit Badge Requirements" (Advancement holds the requirement number)

Only awarded ranks and badges, and completed or approved requirements, are kept.
"""

import csv
import io
import re
from dataclasses import dataclass, field

from advancement_db.normalize import normalize_badge_name

RANK_NAME_TO_CODE = {
    "scout rank": "scout",
    "tenderfoot rank": "tenderfoot",
    "second class rank": "second_class",
    "first class rank": "first_class",
    "star scout rank": "star",
    "life scout rank": "life",
    "eagle scout rank": "eagle",
    "scout": "scout",
    "tenderfoot": "tenderfoot",
    "second class": "second_class",
    "first class": "first_class",
    "star": "star",
    "star scout": "star",
    "life": "life",
    "life scout": "life",
    "eagle": "eagle",
    "eagle scout": "eagle",
}

_RANK_REQUIREMENTS = re.compile(r"^(.+?)\s+rank\s+requirements$", re.IGNORECASE)
_BADGE_REQUIREMENTS = re.compile(r"^(.+?)\s+merit\s+badge\s+requirements$", re.IGNORECASE)
_DATE = re.compile(r"(\d{1,2})/(\d{1,2})/(\d{4})")
_YEAR = re.compile(r"(\d{4})")

# Export column positions, used when the header row is not recognised.
_POSITIONS = {
    "member_id": 0,
    "first_name": 1,
    "middle_name": 3,
    "last_name": 4,
    "advancement_type": 5,
    "advancement": 6,
    "version": 7,
    "awarded": 8,
    "date_completed": 9,
    "approved": 10,
    "marked_completed_date": 11,
    "awarded_date": 19,
}

_HEADERS = {
    "member_id": ("bsa_member_id", "bsamemberid", "member_id", "memberid", "scouting_member_id"),
    "first_name": ("first_name", "firstname", "first"),
    "middle_name": ("middle_name", "middlename", "middle"),
    "last_name": ("last_name", "lastname", "last"),
    "advancement_type": ("advancement_type", "advancementtype", "type"),
    "advancement": ("advancement",),
    "version": ("version",),
    "awarded": ("awarded",),
    "date_completed": ("date_completed", "datecompleted", "completed"),
    "approved": ("approved",),
    "marked_completed_date": ("marked_completed_date", "markedcompleteddate"),
    "awarded_date": ("awarded_date", "awardeddate"),
}


@dataclass
class ParsedRank:
    name: str
    code: str
    version: int | None
    awarded_date: str | None


@dataclass
class ParsedRankRequirement:
    rank_code: str
    requirement_number: str
    version: int | None
    completed_date: str | None


@dataclass
class ParsedBadge:
    name: str
    normalized_name: str
    version: int | None
    awarded_date: str | None


@dataclass
class ParsedBadgeRequirement:
    badge_name: str
    normalized_name: str
    requirement_number: str
    version: int | None
    completed_date: str | None


@dataclass
class ParsedScout:
    member_id: str
    first_name: str
    middle_name: str
    last_name: str
    ranks: list = field(default_factory=list)
    rank_requirements: list = field(default_factory=list)
    merit_badges: list = field(default_factory=list)
    merit_badge_requirements: list = field(default_factory=list)

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class ParsedExport:
    scouts: dict
    errors: list
    summary: dict


def parse_date(value):
    """'3/7/2023' -> '2023-03-07'. Blank or placeholder dates give None."""
    m = _DATE.search(value or "")
    if not m:
        return None
    month, day, year = m.groups()
    return f"{year}-{int(month):02d}-{int(day):02d}"


def parse_version(value):
    m = _YEAR.search(value or "")
    return int(m.group(1)) if m else None


def _truthy(value):
    return (value or "").strip().lower() in ("1", "true", "yes", "y", "x")


def _column_map(header):
    normalized = {
        re.sub(r"[^a-z0-9]+", "_", h.strip().lower()).strip("_"): i
        for i, h in enumerate(header)
    }
    columns = {}
    for key, candidates in _HEADERS.items():
        for candidate in candidates:
            if candidate in normalized:
                columns[key] = normalized[candidate]
                break
    if {"member_id", "advancement_type", "advancement"} <= columns.keys():
        return columns
    if len(header) > _POSITIONS["marked_completed_date"]:
        return dict(_POSITIONS)
    raise ValueError(
        "CSV must have 'BSA Member ID', 'Advancement Type' and 'Advancement' columns. "
        f"Found columns: {header}"
    )


def parse_troop_advancement(text):
    """Parse export text into a ``ParsedExport`` keyed by member ID."""
    reader = csv.reader(io.StringIO(text.lstrip("\ufeff")))
    header = next(reader, None)
    if header is None:
        return ParsedExport({}, ["The file is empty"], _empty_summary())
    columns = _column_map(header)

    def _get(parts, key):
        i = columns.get(key)
        if i is None or i >= len(parts):
            return ""
        return parts[i].strip()

    scouts = {}
    errors = []
    summary = _empty_summary()
    seen = set()
    unknown_ranks = set()

    for line_no, parts in enumerate(reader, start=2):
        if not any(p.strip() for p in parts):
            continue
        summary["total_rows"] += 1
        member_id = _get(parts, "member_id")
        if not member_id.isdigit():
            summary["skipped_rows"] += 1
            continue

        scout = scouts.get(member_id)
        if scout is None:
            scout = ParsedScout(
                member_id=member_id,
                first_name=_get(parts, "first_name"),
                middle_name=_get(parts, "middle_name"),
                last_name=_get(parts, "last_name"),
            )
            scouts[member_id] = scout

        adv_type = _get(parts, "advancement_type")
        advancement = _get(parts, "advancement")
        version = parse_version(_get(parts, "version"))
        awarded_date = parse_date(_get(parts, "awarded_date"))
        completed_date = parse_date(_get(parts, "date_completed"))
        awarded = _truthy(_get(parts, "awarded")) or bool(awarded_date)
        done = bool(completed_date) or _truthy(_get(parts, "approved"))
        lower_type = adv_type.lower()

        if lower_type == "rank":
            if not awarded:
                summary["skipped_rows"] += 1
                continue
            code = RANK_NAME_TO_CODE.get(advancement.lower())
            if not code:
                if advancement.lower() not in unknown_ranks:
                    unknown_ranks.add(advancement.lower())
                    errors.append(f"Line {line_no}: unknown rank {advancement!r}")
                continue
            key = (member_id, "rank", code)
            if key not in seen:
                seen.add(key)
                scout.ranks.append(ParsedRank(advancement, code, version,
                                              awarded_date or completed_date))
                summary["ranks"] += 1

        elif lower_type in ("merit badge", "merit badges"):
            if not awarded:
                summary["skipped_rows"] += 1
                continue
            normalized = normalize_badge_name(advancement)
            key = (member_id, "badge", normalized)
            if key not in seen:
                seen.add(key)
                scout.merit_badges.append(ParsedBadge(advancement, normalized, version,
                                                      awarded_date or completed_date))
                summary["merit_badges"] += 1

        elif _RANK_REQUIREMENTS.match(adv_type):
            rank_name = _RANK_REQUIREMENTS.match(adv_type).group(1)
            code = RANK_NAME_TO_CODE.get(rank_name.lower())
            if not code or not advancement or not done:
                summary["skipped_rows"] += 1
                continue
            key = (member_id, "rank_req", code, advancement)
            if key not in seen:
                seen.add(key)
                scout.rank_requirements.append(ParsedRankRequirement(
                    code, advancement, version,
                    completed_date or parse_date(_get(parts, "marked_completed_date")),
                ))
                summary["rank_requirements"] += 1

        elif _BADGE_REQUIREMENTS.match(adv_type):
            badge_name = _BADGE_REQUIREMENTS.match(adv_type).group(1).strip()
            if not advancement or not done:
                summary["skipped_rows"] += 1
                continue
            normalized = normalize_badge_name(badge_name)
            key = (member_id, "badge_req", normalized, advancement)
            if key not in seen:
                seen.add(key)
                scout.merit_badge_requirements.append(ParsedBadgeRequirement(
                    badge_name, normalized, advancement, version,
                    completed_date or parse_date(_get(parts, "marked_completed_date")),
                ))
                summary["merit_badge_requirements"] += 1

        else:
            summary["other_rows"] += 1

    summary["scouts"] = len(scouts)
    return ParsedExport(scouts, errors, summary)


def read_troop_advancement(csv_path):
    with open(csv_path, newline="", encoding="utf-8-sig") as f:
        return parse_troop_advancement(f.read())


def _empty_summary():
    return {
        "scouts": 0,
        "total_rows": 0,
        "skipped_rows": 0,
        "other_rows": 0,
        "ranks": 0,
        "rank_requirements": 0,
        "merit_badges": 0,
        "merit_badge_requirements": 0,
    }


def validate_parsed_data(parsed):
    """Return blocking problems with a parsed export (empty when importable).

    Line-level problems in ``parsed.errors`` are not repeated here.
    """
    errors = []
    if not parsed.scouts:
        errors.append("No scouts found in the file")
    total = sum(parsed.summary[k] for k in
                ("ranks", "rank_requirements", "merit_badges", "merit_badge_requirements"))
    if total == 0:
        errors.append("No advancement data found in the file")
    return errors
