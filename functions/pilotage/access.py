"""
Role checks for callable functions.

Roles live on ``users/{uid}.userType`` (admin, pilot, viewer, ...). Every
callable checks before it touches anything else.
"""

import logging

from firebase_functions import https_fn

from pilotage.config import USERS
from pilotage.models import Actor

logger = logging.getLogger("pilotage.access")

ADMIN = "admin"
PILOT = "pilot"


def user_role(db, uid):
    snap = db.collection(USERS).document(uid).get()
    if not snap.exists:
        return None
    return (snap.to_dict() or {}).get("userType")


def require_signed_in(auth):
    if auth is None or not getattr(auth, "uid", None):
        raise https_fn.HttpsError(
            code=https_fn.FunctionsErrorCode.UNAUTHENTICATED,
            message="Sign in required.",
        )
    return auth.uid


def require_role(db, auth, roles, location=None):
    """
    Return an Actor for the caller, or raise HttpsError.

    ``roles`` is an iterable of accepted userType values; an empty one
    accepts any signed-in user.
    """
    uid = require_signed_in(auth)
    roles = tuple(roles or ())
    if roles:
        role = user_role(db, uid)
        if role not in roles:
            logger.warning(f"User {uid} with role {role!r} denied (needs one of {roles})")
            raise https_fn.HttpsError(
                code=https_fn.FunctionsErrorCode.PERMISSION_DENIED,
                message=f"Only {' or '.join(roles)} users can do this.",
            )
    return Actor(user_id=uid, location=location)
