"""Normalization of external requirement numbers and merit badge names.

Roster exports number sub-requirements in several incompatible ways:

- ``2b[1]``   bracketed option index under a lettered requirement
- ``2b(1)``   the same index in parentheses
- ``6a[1]a``  doubly nested option, often followed by a label (``Aerobic``)
- ``2a1``     letter and digit run together
- ``1a.``     trailing period

``requirement_candidates`` turns one such string into an ordered list of
catalog-style numbers to try, most specific first.
"""

import re

# Historical and renamed badges: normalized export name -> normalized catalog name.
MERIT_BADGE_ALIASES = {
    "fish_and_wildlife_management": "fish_wildlife_management",
    # American Indian Lore was renamed American Indian Culture; catalogs may hold either
    "american_indian_lore": "american_indian_culture",
    "american_indian_culture": "american_indian_lore",
    "atomic_energy": "nuclear_science",
    "consumer_buying": "personal_management",
    "world_brotherhood": "citizenship_in_the_world",
    "farm_arrangement": "farm_mechanics",
    "pigeon_raising": "bird_study",
    "rabbit_raising": "animal_science",
    "nut_culture": "plant_science",
    "bee_keeping": "beekeeping",
    "life_saving": "lifesaving",
    "first_aid_to_animals": "veterinary_medicine",
    "signaling": "signs_signals_codes",
    "machinery": "farm_mechanics",
    "physical_development": "personal_fitness",
    "safety": "emergency_preparedness",
}

_TRAILING_TEXT = re.compile(r"^(\S+)\s+[^\d\s]")
_LETTER_BRACKET = re.compile(r"^(\d+)([a-z])\[(\d+)\]$", re.IGNORECASE)
_NESTED = re.compile(r"^(\d+)([a-z])\[(\d+)\]([a-z])$", re.IGNORECASE)
_LETTER_PAREN = re.compile(r"^(\d+)[a-z]\((\d+)\)$", re.IGNORECASE)
_RUN_ON = re.compile(r"^(\d+)([a-z])(\d+)$", re.IGNORECASE)
_BASE_NUMBER = re.compile(r"^(\d+)")


def requirement_candidates(number):
    """Return catalog-style candidates for an external requirement number.

    The input itself is not included; callers try it directly first.
    Candidates are distinct and ordered most specific first.
    """
    raw = (number or "").strip()
    candidates = []

    cleaned = raw
    m = _TRAILING_TEXT.match(cleaned)
    if m:
        cleaned = m.group(1)
        candidates.append(cleaned)

    if cleaned.endswith("."):
        cleaned = cleaned[:-1]
        candidates.append(cleaned)

    if "[" in cleaned:
        candidates.append(cleaned.replace("[", "(").replace("]", ")"))

    m = _LETTER_BRACKET.match(cleaned)
    if m:
        num, letter, idx = m.groups()
        candidates.append(f"{num}({idx})")
        candidates.append(f"{num}[{idx}]")
        candidates.append(f"{num}{letter}")

    m = _NESTED.match(cleaned)
    if m:
        num, first, _, second = m.groups()
        candidates.append(f"{num}{first.upper()}{second.lower()}")
        candidates.append(f"{num}{first.lower()}")

    m = _LETTER_PAREN.match(cleaned)
    if m:
        num, idx = m.groups()
        candidates.append(f"{num}({idx})")

    m = _RUN_ON.match(cleaned)
    if m:
        num, letter, digit = m.groups()
        candidates.append(f"{num}({digit})")
        candidates.append(f"{num}{letter}")

    m = _LETTER_BRACKET.match(cleaned)
    if m:
        num, letter, idx = m.groups()
        candidates.append(f"{num}{letter.upper()}({idx})")

    m = _BASE_NUMBER.match(cleaned)
    if m:
        candidates.append(m.group(1))

    return [c for c in dict.fromkeys(candidates) if c and c != raw]


def normalize_badge_name(name):
    """'Fish & Wildlife Management MB' -> 'fish_wildlife_management'."""
    name = (name or "").strip()
    name = re.sub(r"\s+(MB|Merit Badge)$", "", name, flags=re.IGNORECASE)
    name = re.sub(r"[^a-z0-9]+", "_", name.lower())
    return name.strip("_")


def badge_name_keys(name):
    """Normalized lookup keys for a badge name: itself, then its alias."""
    key = normalize_badge_name(name)
    keys = [key]
    alias = MERIT_BADGE_ALIASES.get(key)
    if alias:
        keys.append(alias)
    return keys
