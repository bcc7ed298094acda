# Overview: Request identity decorators. Authentication happens upstream; the gateway forwards
# the resolved user as X-User-Id / X-User-Role headers.

from functools import wraps
from flask import request, jsonify, g


STAFF_ROLES = {"admin", "staff"}


def _load_identity() -> None:
    raw_user_id = request.headers.get("X-User-Id", "").strip()
    g.current_user_id = int(raw_user_id) if raw_user_id.isdigit() else None
    role = request.headers.get("X-User-Role", "").strip().lower()
    g.current_role = role or ("customer" if g.current_user_id is not None else "guest")


def load_identity(f):
    """
    Establish the caller's identity (guests allowed).

    Sets:
    - g.current_user_id: int or None for guest checkout
    - g.current_role: "guest", "customer", "staff" or "admin"
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        _load_identity()
        return f(*args, **kwargs)

    return decorated_function


def require_user(f):
    """Require a signed-in customer or staff member."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        _load_identity()
        if g.current_user_id is None:
            return jsonify({"error": "Authentication required"}), 401
        return f(*args, **kwargs)

    return decorated_function


def require_staff(f):
    """Require a back-office role."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        _load_identity()
        if g.current_user_id is None:
            return jsonify({"error": "Authentication required"}), 401
        if g.current_role not in STAFF_ROLES:
            return jsonify({"error": "Staff access required"}), 403
        return f(*args, **kwargs)

    return decorated_function


def is_staff() -> bool:
    return getattr(g, "current_role", None) in STAFF_ROLES
