"""Resolve the acting profile into an authorization context."""

from typing import NamedTuple

from advancement_db.errors import NotAuthenticated, NotFound, PermissionDenied

LEADER_ROLES = ("admin", "treasurer", "leader")


class AuthContext(NamedTuple):
    actor_id: int
    role: str
    display_name: str


def _load_profile(conn, profile_id):
    if profile_id is None:
        raise NotAuthenticated("Not authenticated")
    row = conn.execute(
        "SELECT id, first_name, last_name FROM profiles WHERE id = ?", (profile_id,)
    ).fetchone()
    if not row:
        raise NotAuthenticated("Profile not found")
    return row


def _display_name(profile):
    name = f"{profile['first_name'] or ''} {profile['last_name'] or ''}".strip()
    return name or f"Profile {profile['id']}"


def require_leader(conn, profile_id, unit_id):
    """Return the context of an active admin/treasurer/leader of the unit."""
    profile = _load_profile(conn, profile_id)
    membership = conn.execute(
        """SELECT role FROM unit_memberships
           WHERE unit_id = ? AND profile_id = ? AND status = 'active'""",
        (unit_id, profile_id),
    ).fetchone()
    if not membership or membership["role"] not in LEADER_ROLES:
        raise PermissionDenied("Only leaders can manage advancement")
    return AuthContext(profile["id"], membership["role"], _display_name(profile))


def require_guardian(conn, profile_id, scout_id):
    """Return the context of a verified guardian of the Scout."""
    profile = _load_profile(conn, profile_id)
    link = conn.execute(
        "SELECT 1 FROM scout_guardians WHERE scout_id = ? AND profile_id = ?",
        (scout_id, profile_id),
    ).fetchone()
    if not link:
        raise PermissionDenied("Only a guardian of this Scout can submit progress")
    return AuthContext(profile["id"], "parent", _display_name(profile))


def load_unit_scout(conn, scout_id, unit_id):
    """Fetch a Scout row, checking it belongs to the unit."""
    scout = conn.execute(
        "SELECT id, unit_id, first_name, last_name, rank FROM scouts WHERE id = ?",
        (scout_id,),
    ).fetchone()
    if not scout:
        raise NotFound(f"Scout {scout_id} not found")
    if scout["unit_id"] != unit_id:
        raise PermissionDenied(f"Scout {scout_id} is not in this unit")
    return scout
