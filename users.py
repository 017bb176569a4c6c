import logging
from typing import Optional

from config import MIN_PASSWORD_LENGTH
from database import paginate, to_object_id, utcnow
from errors import Forbidden, InvalidCredentials, InvalidInput, NotFound
from schemas import ROLES
from security import CurrentUser, get_password_hash, sanitize_user, verify_password

logger = logging.getLogger(__name__)

USER_EDITABLE_FIELDS = ("name", "phone", "address")
ADMIN_ONLY_FIELDS = ("role", "is_active", "is_email_verified")


def _as_bool(value) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    return str(value).lower() == "true"


def _load(db, user_id):
    user = db["user"].find_one({"_id": to_object_id(user_id)})
    if not user:
        raise NotFound("User not found")
    return user


def list_users(db, role=None, is_active=None, search=None, limit=50, skip=0, sort_by="created_at", sort_order=-1):
    query = {}
    if role:
        query["role"] = role
    if is_active is not None:
        query["is_active"] = _as_bool(is_active)
    if search:
        query["$or"] = [
            {"name": {"$regex": search, "$options": "i"}},
            {"username": {"$regex": search, "$options": "i"}},
            {"email": {"$regex": search, "$options": "i"}},
        ]
    page = paginate(db["user"], query, limit, skip, sort_by, sort_order)
    return {
        "users": [sanitize_user(u) for u in page["items"]],
        "total": page["total"],
        "page": page["page"],
        "total_pages": page["total_pages"],
    }


def get_user(db, user_id):
    return sanitize_user(_load(db, user_id))


def update_user(db, user_id: str, data: dict, requester: CurrentUser):
    is_own_profile = str(user_id) == requester.id
    if not is_own_profile and not requester.is_admin:
        raise Forbidden("You can only update your own profile")

    user = _load(db, user_id)
    allowed = USER_EDITABLE_FIELDS + (ADMIN_ONLY_FIELDS if requester.is_admin else ())
    if user.get("role") == "super_admin" and requester.role != "super_admin":
        if data.get("role") is not None or data.get("is_active") is not None:
            raise Forbidden("Only a super admin can change a super admin's role or status")

    changes = {}
    for field in allowed:
        if data.get(field) is None:
            continue
        value = data[field]
        if field == "address" and isinstance(value, dict):
            value = {**(user.get("address") or {}), **value}
        if field == "role":
            if value not in ROLES:
                raise InvalidInput("Invalid role")
            if value == "super_admin" and requester.role != "super_admin":
                raise Forbidden("Only a super admin can grant super admin")
        changes[field] = value

    password = data.get("password")
    if password:
        if is_own_profile:
            if not verify_password(data.get("current_password") or "", user.get("password_hash")):
                raise InvalidCredentials("Current password is incorrect")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise InvalidInput(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
        changes["password_hash"] = get_password_hash(password)

    if changes:
        changes["updated_at"] = utcnow()
        db["user"].update_one({"_id": user["_id"]}, {"$set": changes})
    return sanitize_user(db["user"].find_one({"_id": user["_id"]}))


def delete_user(db, user_id):
    user = _load(db, user_id)
    if user.get("role") == "super_admin":
        raise Forbidden("Cannot delete super admin")
    db["user"].delete_one({"_id": user["_id"]})
    logger.info("Deleted user %s", user_id)
    return {"message": "User deleted successfully"}


def toggle_user_status(db, user_id):
    user = _load(db, user_id)
    if user.get("role") == "super_admin":
        raise Forbidden("Cannot deactivate super admin")
    is_active = not user.get("is_active", True)
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"is_active": is_active, "updated_at": utcnow()}})
    return {
        "message": f"User {'activated' if is_active else 'deactivated'} successfully",
        "is_active": is_active,
    }


def user_stats(db):
    by_role = {role: db["user"].count_documents({"role": role}) for role in ROLES}
    recent = db["user"].find({}, {"name": 1, "email": 1, "role": 1, "created_at": 1}).sort([("created_at", -1)]).limit(10)
    return {
        "total": db["user"].count_documents({}),
        "active": db["user"].count_documents({"is_active": True}),
        "verified": db["user"].count_documents({"is_email_verified": True}),
        "by_role": by_role,
        "recent": [sanitize_user(u) for u in recent],
    }
