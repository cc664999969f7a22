from dataclasses import dataclass, field
from functools import wraps
from flask import g, jsonify, request
from utils.roles import parse_roles


@dataclass(frozen=True)
class CurrentUser:
    id: str
    roles: frozenset = field(default_factory=frozenset)


def load_current_user():
    # identity is asserted by the upstream auth provider
    user_id = (request.headers.get("X-User-Id") or "").strip()
    if not user_id:
        g.user = None
        return
    g.user = CurrentUser(id=user_id, roles=parse_roles(request.headers.get("X-User-Roles")))

def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if getattr(g, "user", None) is None:
            return jsonify(error="Authentication required"), 401
        return fn(*args, **kwargs)
    return wrapper
