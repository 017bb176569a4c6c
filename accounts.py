"""
Account lifecycle: registration, email OTP verification, login and
password recovery.

OTP fields (otp, otp_expires, otp_last_sent_at) are always written and
cleared together.
"""
import logging
import math
import secrets
from datetime import timedelta

from pymongo.errors import DuplicateKeyError

from config import MIN_PASSWORD_LENGTH, OTP_EXPIRY_MINUTES, OTP_RESEND_COOLDOWN_MINUTES
from database import as_utc, to_object_id, utcnow
from errors import (
    AlreadyVerified,
    Conflict,
    Forbidden,
    InvalidCredentials,
    InvalidInput,
    InvalidOTP,
    NotFound,
    OTPExpired,
    RateLimited,
    Unverified,
)
from notifications import OTP, PASSWORD_RESET, WELCOME
from schemas import ADMIN_ROLES, User
from security import get_password_hash, sanitize_user, token_for_user, verify_password

logger = logging.getLogger(__name__)

FORGOT_PASSWORD_MESSAGE = "If an account exists with this email, a password reset code has been sent"
CLEAR_OTP = {"otp": None, "otp_expires": None, "otp_last_sent_at": None}


def generate_otp() -> str:
    return f"{secrets.randbelow(10 ** 6):06d}"


def _normalize_email(email) -> str:
    return (email or "").strip().lower()


def _check_password_length(password):
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise InvalidInput(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")


def _fresh_otp_fields():
    now = utcnow()
    return {
        "otp": generate_otp(),
        "otp_expires": now + timedelta(minutes=OTP_EXPIRY_MINUTES),
        "otp_last_sent_at": now,
    }


def _enforce_cooldown(user):
    last_sent = as_utc(user.get("otp_last_sent_at"))
    if last_sent is None:
        return
    remaining = timedelta(minutes=OTP_RESEND_COOLDOWN_MINUTES) - (utcnow() - last_sent)
    if remaining.total_seconds() > 0:
        minutes = math.ceil(remaining.total_seconds() / 60)
        raise RateLimited(f"Please wait {minutes} minute(s) before requesting a new OTP")


def _check_otp(user, code):
    if not user.get("otp") or not user.get("otp_expires"):
        raise InvalidOTP("No active OTP. Please request a new one")
    if utcnow() > as_utc(user["otp_expires"]):
        raise OTPExpired("OTP has expired. Please request a new one")
    if str(code or "").strip() != user["otp"]:
        raise InvalidOTP("Invalid OTP")


def register(db, notifier, username: str, email: str, password: str, phone: str = None) -> dict:
    username = (username or "").strip()
    email = _normalize_email(email)
    if not username or not email or not password:
        raise InvalidInput("username, email and password are required")
    _check_password_length(password)

    if db["user"].find_one({"$or": [{"username": username}, {"email": email}]}):
        raise Conflict("Username or email already in use")

    otp_fields = _fresh_otp_fields()
    user = User(
        username=username,
        name=username,
        email=email,
        phone=phone,
        password_hash=get_password_hash(password),
        **otp_fields,
    )
    data = user.model_dump()
    now = utcnow()
    data["created_at"] = now
    data["updated_at"] = now
    try:
        data["_id"] = db["user"].insert_one(data).inserted_id
    except DuplicateKeyError:
        raise Conflict("Username or email already in use")

    logger.info("Registered user %s <%s>", username, email)
    notifier.enqueue(email, OTP, {"otp": otp_fields["otp"], "name": username})
    return sanitize_user(data)


def verify_otp(db, notifier, email: str, code: str) -> dict:
    email = _normalize_email(email)
    if not email or not code:
        raise InvalidInput("Email and OTP are required")
    user = db["user"].find_one({"email": email})
    if not user:
        raise NotFound("User not found")
    if user.get("is_email_verified"):
        raise AlreadyVerified("Email is already verified")
    _check_otp(user, code)

    # only the holder of this exact code flips the flag
    result = db["user"].update_one(
        {"_id": user["_id"], "otp": user["otp"], "is_email_verified": False},
        {"$set": {"is_email_verified": True, "updated_at": utcnow(), **CLEAR_OTP}},
    )
    if result.modified_count == 0:
        raise AlreadyVerified("Email is already verified")
    user = db["user"].find_one({"_id": user["_id"]})

    logger.info("Verified email for user %s", user.get("username"))
    notifier.enqueue(email, WELCOME, {"name": user.get("name")})
    return {
        "message": "Email verified successfully",
        "token": token_for_user(user),
        "user": sanitize_user(user),
    }


def resend_otp(db, notifier, email: str) -> dict:
    email = _normalize_email(email)
    if not email:
        raise InvalidInput("Email is required")
    user = db["user"].find_one({"email": email})
    if not user:
        raise NotFound("User not found")
    if user.get("is_email_verified"):
        raise AlreadyVerified("Email is already verified")
    _enforce_cooldown(user)

    otp_fields = _fresh_otp_fields()
    db["user"].update_one({"_id": user["_id"]}, {"$set": {**otp_fields, "updated_at": utcnow()}})
    notifier.enqueue(email, OTP, {"otp": otp_fields["otp"], "name": user.get("name")})
    return {"message": "A new OTP has been sent to your email"}


def authenticate(db, identifier: str, password: str, admin_only: bool = False) -> dict:
    identifier = (identifier or "").strip()
    if not identifier or not password:
        raise InvalidInput("Missing credentials")
    user = db["user"].find_one({"$or": [{"username": identifier}, {"email": identifier}]})
    if not user:
        raise InvalidCredentials("User not found")
    if not verify_password(password, user.get("password_hash")):
        raise InvalidCredentials("Invalid credentials")
    if admin_only and user.get("role") not in ADMIN_ROLES:
        raise Forbidden("Admin access required")
    if not user.get("is_email_verified"):
        raise Unverified("Please verify your email before logging in")
    if not user.get("is_active", True):
        raise Forbidden("Account is deactivated")

    now = utcnow()
    try:
        db["user"].update_one({"_id": user["_id"]}, {"$set": {"last_login": now}})
        user["last_login"] = now
    except Exception as e:
        logger.warning("Could not record last login for %s: %s", user["_id"], e)

    return {"token": token_for_user(user), "user": sanitize_user(user)}


def forgot_password(db, notifier, email: str) -> dict:
    email = _normalize_email(email)
    if not email:
        raise InvalidInput("Email is required")
    user = db["user"].find_one({"email": email})
    if user:
        _enforce_cooldown(user)
        otp_fields = _fresh_otp_fields()
        db["user"].update_one({"_id": user["_id"]}, {"$set": {**otp_fields, "updated_at": utcnow()}})
        notifier.enqueue(email, PASSWORD_RESET, {"otp": otp_fields["otp"], "name": user.get("name")})
    return {"message": FORGOT_PASSWORD_MESSAGE}


def reset_password_with_otp(db, email: str, otp: str, new_password: str) -> dict:
    email = _normalize_email(email)
    if not email or not otp or not new_password:
        raise InvalidInput("Email, OTP and new password are required")
    _check_password_length(new_password)
    user = db["user"].find_one({"email": email})
    if not user:
        raise NotFound("User not found")
    _check_otp(user, otp)

    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": get_password_hash(new_password), "updated_at": utcnow(), **CLEAR_OTP}},
    )
    logger.info("Password reset for user %s", user.get("username"))
    return {"message": "Password has been reset successfully"}


def change_password(db, user_id: str, current_password: str, new_password: str) -> dict:
    if not current_password or not new_password:
        raise InvalidInput("Current password and new password are required")
    user = db["user"].find_one({"_id": to_object_id(user_id)})
    if not user:
        raise NotFound("User not found")
    if not verify_password(current_password, user.get("password_hash")):
        raise InvalidCredentials("Current password is incorrect")
    if current_password == new_password:
        raise InvalidInput("New password must be different from the current password")
    _check_password_length(new_password)

    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": get_password_hash(new_password), "updated_at": utcnow()}},
    )
    return {"message": "Password changed successfully"}
