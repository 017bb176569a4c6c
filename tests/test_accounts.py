from datetime import timedelta

import pytest

import accounts
from conftest import PASSWORD, make_user
from database import utcnow
from errors import (
    AlreadyVerified,
    Conflict,
    Forbidden,
    InvalidCredentials,
    InvalidInput,
    InvalidOTP,
    OTPExpired,
    RateLimited,
    Unverified,
)
from notifications import OTP, PASSWORD_RESET, WELCOME
from security import decode_access_token


def register_alice(db, notifier):
    return accounts.register(db, notifier, "alice", "alice@x.com", "secret1")


def other_code(code):
    return "000000" if code != "000000" else "111111"


def test_generate_otp_is_six_digits():
    for _ in range(50):
        code = accounts.generate_otp()
        assert len(code) == 6 and code.isdigit()


def test_register_stores_unverified_user_and_sends_otp(db, notifier):
    user = register_alice(db, notifier)

    assert user["is_email_verified"] is False
    assert "password_hash" not in user and "otp" not in user
    stored = db["user"].find_one({"email": "alice@x.com"})
    assert stored["otp"] and stored["otp_expires"] and stored["otp_last_sent_at"]
    sent = notifier.last(OTP)
    assert sent.to == "alice@x.com"
    assert sent.data["otp"] == stored["otp"]


def test_register_rejects_duplicates_and_short_passwords(db, notifier):
    register_alice(db, notifier)
    with pytest.raises(Conflict):
        accounts.register(db, notifier, "alice", "other@x.com", "secret1")
    with pytest.raises(Conflict):
        accounts.register(db, notifier, "alice2", "ALICE@x.com", "secret1")
    with pytest.raises(InvalidInput):
        accounts.register(db, notifier, "carol", "carol@x.com", "123")


def test_alice_verification_scenario(db, notifier):
    register_alice(db, notifier)
    code = notifier.last(OTP).data["otp"]

    with pytest.raises(InvalidOTP) as exc:
        accounts.verify_otp(db, notifier, "alice@x.com", other_code(code))
    assert exc.value.detail == "Invalid OTP"

    result = accounts.verify_otp(db, notifier, "alice@x.com", code)
    assert result["user"]["is_email_verified"] is True
    current = decode_access_token(result["token"])
    assert current.id == result["user"]["id"]
    assert current.role == "user"

    stored = db["user"].find_one({"email": "alice@x.com"})
    assert stored["otp"] is None and stored["otp_expires"] is None and stored["otp_last_sent_at"] is None
    assert notifier.last(WELCOME).to == "alice@x.com"

    with pytest.raises(AlreadyVerified):
        accounts.verify_otp(db, notifier, "alice@x.com", code)


def test_expired_otp(db, notifier):
    register_alice(db, notifier)
    code = notifier.last(OTP).data["otp"]
    db["user"].update_one({"email": "alice@x.com"}, {"$set": {"otp_expires": utcnow() - timedelta(minutes=1)}})

    with pytest.raises(OTPExpired):
        accounts.verify_otp(db, notifier, "alice@x.com", code)


def test_resend_is_throttled_for_ten_minutes(db, notifier):
    register_alice(db, notifier)

    with pytest.raises(RateLimited) as exc:
        accounts.resend_otp(db, notifier, "alice@x.com")
    assert "10 minute(s)" in exc.value.detail

    db["user"].update_one({"email": "alice@x.com"}, {"$set": {"otp_last_sent_at": utcnow() - timedelta(minutes=11)}})
    accounts.resend_otp(db, notifier, "alice@x.com")
    assert len([n for n in notifier.sent if n.kind == OTP]) == 2

    with pytest.raises(RateLimited):
        accounts.resend_otp(db, notifier, "alice@x.com")


def test_resend_after_verification_fails(db, notifier):
    register_alice(db, notifier)
    accounts.verify_otp(db, notifier, "alice@x.com", notifier.last(OTP).data["otp"])
    with pytest.raises(AlreadyVerified):
        accounts.resend_otp(db, notifier, "alice@x.com")


def test_login_by_username_or_email(db, user):
    by_name = accounts.authenticate(db, "bob", PASSWORD)
    by_email = accounts.authenticate(db, "bob@example.com", PASSWORD)

    assert by_name["user"]["id"] == by_email["user"]["id"] == str(user["_id"])
    assert db["user"].find_one({"_id": user["_id"]})["last_login"] is not None


def test_login_failures(db):
    make_user(db, "dave", verified=False)
    make_user(db, "erin", active=False)
    make_user(db, "frank")

    with pytest.raises(InvalidCredentials) as exc:
        accounts.authenticate(db, "nobody", PASSWORD)
    assert exc.value.detail == "User not found"
    with pytest.raises(Unverified):
        accounts.authenticate(db, "dave", PASSWORD)
    with pytest.raises(Forbidden):
        accounts.authenticate(db, "erin", PASSWORD)
    with pytest.raises(InvalidCredentials):
        accounts.authenticate(db, "frank", "wrong-password")
    with pytest.raises(Forbidden):
        accounts.authenticate(db, "frank", PASSWORD, admin_only=True)


def test_admin_login(db, admin):
    result = accounts.authenticate(db, "root", PASSWORD, admin_only=True)
    assert decode_access_token(result["token"]).is_admin


def test_admin_login_checks_password_before_role(db, user):
    with pytest.raises(InvalidCredentials):
        accounts.authenticate(db, "bob", "wrong-password", admin_only=True)
    with pytest.raises(Forbidden):
        accounts.authenticate(db, "bob", PASSWORD, admin_only=True)


def test_forgot_password_does_not_reveal_accounts(db, notifier):
    result = accounts.forgot_password(db, notifier, "ghost@example.com")
    assert result["message"] == accounts.FORGOT_PASSWORD_MESSAGE
    assert notifier.sent == []


def test_forgot_then_reset_password(db, notifier, user):
    result = accounts.forgot_password(db, notifier, "bob@example.com")
    assert result["message"] == accounts.FORGOT_PASSWORD_MESSAGE
    code = notifier.last(PASSWORD_RESET).data["otp"]

    with pytest.raises(InvalidOTP):
        accounts.reset_password_with_otp(db, "bob@example.com", other_code(code), "brand-new")
    accounts.reset_password_with_otp(db, "bob@example.com", code, "brand-new")

    assert accounts.authenticate(db, "bob", "brand-new")["token"]
    with pytest.raises(InvalidCredentials):
        accounts.authenticate(db, "bob", PASSWORD)
    with pytest.raises(InvalidOTP):
        accounts.reset_password_with_otp(db, "bob@example.com", code, "another-one")


def test_change_password(db, user):
    user_id = str(user["_id"])
    with pytest.raises(InvalidCredentials):
        accounts.change_password(db, user_id, "not-it", "newpass1")
    with pytest.raises(InvalidInput):
        accounts.change_password(db, user_id, PASSWORD, PASSWORD)

    accounts.change_password(db, user_id, PASSWORD, "newpass1")
    assert accounts.authenticate(db, "bob", "newpass1")["user"]["id"] == user_id
