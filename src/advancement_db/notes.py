"""Append-only note log stored as JSON in a progress row's ``notes`` column.

Each entry is ``{id, text, author, authorId, type, timestamp}`` with ``type``
one of completion, undo or general. Entries are only ever appended.
"""

import json
import uuid

from advancement_db.db import now_iso

NOTE_TYPES = ("completion", "undo", "general")


def parse_notes(serialized):
    """Return the list of note entries held in ``serialized``.

    Empty values give an empty list; legacy plain-text notes become a single
    general entry.
    """
    if not serialized:
        return []
    try:
        parsed = json.loads(serialized)
    except (TypeError, ValueError):
        parsed = None
    if isinstance(parsed, list):
        return parsed
    return [{
        "id": "legacy",
        "text": serialized,
        "author": "Unknown",
        "authorId": None,
        "type": "general",
        "timestamp": None,
    }]


def make_note(text, author, author_id, note_type="general", timestamp=None):
    if note_type not in NOTE_TYPES:
        raise ValueError(f"Unknown note type: {note_type}")
    return {
        "id": str(uuid.uuid4()),
        "text": text,
        "author": author,
        "authorId": author_id,
        "type": note_type,
        "timestamp": timestamp or now_iso(),
    }


def append_note(serialized, entry):
    """Return ``serialized`` with ``entry`` appended, as a JSON string."""
    notes = parse_notes(serialized)
    notes.append(entry)
    return json.dumps(notes)


def append_auth_note(serialized, auth, text, note_type="general"):
    return append_note(
        serialized, make_note(text, auth.display_name, auth.actor_id, note_type)
    )
