import pytest

import contacts
from errors import InvalidInput, NotFound


def submit(db, name="Jane", email="jane@example.com", message="Do you ship abroad?", **extra):
    return contacts.create_contact(db, name, email, message, **extra)


def test_submission_is_trimmed_and_new(db):
    result = submit(db, name="  Jane  ", email=" Jane@Example.com ", message="  Hello  ", subject="Shipping")

    contact = contacts.get_contact(db, result["contact"]["id"])
    assert contact["name"] == "Jane"
    assert contact["email"] == "jane@example.com"
    assert contact["message"] == "Hello"
    assert contact["status"] == "new"
    assert contact["replied"] is False
    assert result["contact"]["subject"] == "Shipping"


@pytest.mark.parametrize("name, email, message", [
    ("", "jane@example.com", "hi"),
    ("Jane", "", "hi"),
    ("Jane", "jane@example.com", "   "),
    ("Jane", "not-an-email", "hi"),
    ("Jane", "jane@example", "hi"),
])
def test_invalid_submissions(db, name, email, message):
    with pytest.raises(InvalidInput):
        contacts.create_contact(db, name, email, message)


def test_triage_flow(db):
    contact_id = submit(db)["contact"]["id"]

    assert contacts.update_contact_status(db, contact_id, "in-progress")["status"] == "in-progress"
    with pytest.raises(InvalidInput):
        contacts.update_contact_status(db, contact_id, "archived")

    noted = contacts.update_contact_notes(db, contact_id, "  called back  ")
    assert noted["notes"] == "called back"

    with pytest.raises(InvalidInput):
        contacts.reply_to_contact(db, contact_id, "  ", "admin-1")
    replied = contacts.reply_to_contact(db, contact_id, "Yes, we do.", "admin-1")
    assert replied["replied"] is True
    assert replied["reply_message"] == "Yes, we do."
    assert replied["replied_by"] == "admin-1"
    assert replied["replied_at"] is not None
    assert replied["status"] == "resolved"


def test_listing_and_stats(db):
    first = submit(db, name="Jane")["contact"]["id"]
    submit(db, name="Omar", email="omar@example.com", message="Wholesale prices?")
    third = submit(db, name="Lee", email="lee@example.com")["contact"]["id"]
    contacts.reply_to_contact(db, first, "Sure", "admin-1")
    contacts.update_contact_status(db, third, "closed")

    assert contacts.list_contacts(db, status="new")["total"] == 1
    assert contacts.list_contacts(db, replied=True)["total"] == 1
    assert contacts.list_contacts(db, search="wholesale")["contacts"][0]["name"] == "Omar"

    stats = contacts.contact_stats(db)
    assert stats == {
        "total": 3,
        "new": 1,
        "in_progress": 0,
        "resolved": 1,
        "closed": 1,
        "replied": 1,
        "not_replied": 2,
    }


def test_delete(db):
    contact_id = submit(db)["contact"]["id"]
    contacts.delete_contact(db, contact_id)
    with pytest.raises(NotFound):
        contacts.get_contact(db, contact_id)
    with pytest.raises(NotFound):
        contacts.delete_contact(db, contact_id)
