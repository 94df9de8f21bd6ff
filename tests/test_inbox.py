from datetime import datetime, timezone

import pytest

from chat import (
    Category,
    ContactCache,
    Participant,
    append_message,
    build_inbox,
    resolve_conversation,
)

ALICE = Participant("u1", "alice@campus.edu")
BOB = Participant("u2", "bob@campus.edu")
CAROL = Participant("u3", "carol@campus.edu")


def _insert_chat(db, key, last_updated=None, messages=(), participants=("u1", "u2"),
                 contacts=("alice@campus.edu", "bob@campus.edu"), **extra):
    db["chats"].insert_one({
        "_id": key,
        "participant_ids": list(participants),
        "participant_contacts": list(contacts),
        "messages": list(messages),
        "last_updated": last_updated,
        **extra,
    })


def _msg(sender, text):
    return {"sender_id": sender, "text": text, "timestamp": "2024-05-01T10:00:00+00:00"}


def test_inbox_orders_by_last_activity_not_store_order(db):
    t1 = datetime(2024, 5, 3, 9, 0)
    t2 = datetime(2024, 5, 1, 9, 0)
    t3 = datetime(2024, 5, 2, 9, 0)
    _insert_chat(db, "c2", last_updated=t2)
    _insert_chat(db, "c1", last_updated=t1)
    _insert_chat(db, "c3", last_updated=t3)

    inbox = build_inbox(db, "u1")

    assert [e.key for e in inbox.entries] == ["c1", "c3", "c2"]


def test_conversations_without_activity_sort_last(db):
    _insert_chat(db, "never", last_updated=None)
    _insert_chat(db, "recent", last_updated=datetime(2024, 5, 1, tzinfo=timezone.utc))

    assert [e.key for e in build_inbox(db, "u1").entries] == ["recent", "never"]


def test_only_the_viewers_conversations_are_listed(db):
    _insert_chat(db, "mine", last_updated=datetime(2024, 5, 1))
    _insert_chat(db, "theirs", last_updated=datetime(2024, 5, 2), participants=("u2", "u3"),
                 contacts=("bob@campus.edu", "carol@campus.edu"))

    assert [e.key for e in build_inbox(db, "u1").entries] == ["mine"]


def test_unread_is_set_when_someone_else_spoke_last(db):
    _insert_chat(db, "replied", last_updated=datetime(2024, 5, 2), messages=[_msg("u2", "hi"), _msg("u1", "hey")])
    _insert_chat(db, "waiting", last_updated=datetime(2024, 5, 1), messages=[_msg("u1", "hi"), _msg("u2", "got it")])

    inbox = build_inbox(db, "u1")
    flags = {e.key: e.unread for e in inbox.entries}

    assert flags == {"replied": False, "waiting": True}
    assert inbox.unread_count == 1
    assert build_inbox(db, "u2").unread_count == 1


def test_preview_is_last_message_or_placeholder(db):
    resolve_conversation(db, Category.GENERAL, ALICE, BOB)
    resolve_conversation(db, Category.MARKETPLACE, ALICE, CAROL, item_id="lamp")
    resolve_conversation(db, Category.LOST_FOUND, BOB, ALICE, item_id="keys")
    append_message(db, "u1_u2", "u2", "first")
    append_message(db, "u1_u2", "u1", "second")

    previews = {e.key: e.preview for e in build_inbox(db, "u1").entries}

    assert previews == {
        "u1_u2": "second",
        "lamp_u1_u3": "Negotiation started...",
        "LF_keys_u2_u1": "New Chat",
    }


def test_empty_conversation_is_not_unread(db):
    resolve_conversation(db, Category.GENERAL, ALICE, BOB)

    entry = build_inbox(db, "u2").entries[0]

    assert entry.unread is False


@pytest.mark.parametrize(
    "category,expected",
    [
        (Category.GENERAL, ["u1_u2"]),
        (Category.MARKETPLACE, ["lamp_u1_u3"]),
        (Category.LOST_FOUND, ["LF_keys_u2_u1"]),
        (None, ["LF_keys_u2_u1", "lamp_u1_u3", "u1_u2"]),
    ],
)
def test_category_filter(db, category, expected):
    resolve_conversation(db, Category.GENERAL, ALICE, BOB)
    resolve_conversation(db, Category.MARKETPLACE, ALICE, CAROL, item_id="lamp")
    resolve_conversation(db, Category.LOST_FOUND, BOB, ALICE, item_id="keys")

    keys = [e.key for e in build_inbox(db, "u1", category=category).entries]

    assert sorted(keys) == sorted(expected)


def test_legacy_records_are_filtered_by_key_shape(db):
    _insert_chat(db, "LF_keys_u1_u2", last_updated=datetime(2024, 5, 1), item_id="keys")
    _insert_chat(db, "lamp_u1_u2", last_updated=datetime(2024, 5, 2), item_id="lamp")
    _insert_chat(db, "u1_u2", last_updated=datetime(2024, 5, 3))

    assert [e.key for e in build_inbox(db, "u1", Category.LOST_FOUND).entries] == ["LF_keys_u1_u2"]
    assert [e.key for e in build_inbox(db, "u1", Category.MARKETPLACE).entries] == ["lamp_u1_u2"]
    assert [e.key for e in build_inbox(db, "u1", Category.GENERAL).entries] == ["u1_u2"]


def test_label_uses_counterpart_contact(db):
    resolve_conversation(db, Category.GENERAL, ALICE, BOB)

    alice_view = build_inbox(db, "u1").entries[0]
    bob_view = build_inbox(db, "u2").entries[0]

    assert (alice_view.counterpart_id, alice_view.counterpart_contact, alice_view.display_name) == (
        "u2", "bob@campus.edu", "bob")
    assert (bob_view.counterpart_id, bob_view.display_name) == ("u1", "alice")


def test_label_falls_back_when_contacts_are_missing(db):
    _insert_chat(db, "u1_u2", last_updated=datetime(2024, 5, 1), contacts=())

    entry = build_inbox(db, "u1").entries[0]

    assert entry.counterpart_contact == "User"
    assert entry.display_name == "User"


def test_label_prefers_profile_name_from_contact_cache(db):
    db["users"].insert_one({"_id": "u2", "name": "Bob Builder", "email": "bob@campus.edu"})
    resolve_conversation(db, Category.GENERAL, ALICE, BOB)
    resolve_conversation(db, Category.GENERAL, ALICE, CAROL)
    contacts = ContactCache(db)

    names = {e.counterpart_id: e.display_name for e in build_inbox(db, "u1", contacts=contacts).entries}

    assert names == {"u2": "Bob Builder", "u3": "User"}


def test_contact_cache_is_not_invalidated(db):
    db["users"].insert_one({"_id": "u2", "name": "Bob", "profile_pic": "https://img/bob.png"})
    contacts = ContactCache(db)

    first = contacts.lookup("u2")
    db["users"].update_one({"_id": "u2"}, {"$set": {"name": "Robert"}})
    second = contacts.lookup("u2")

    assert first == second
    assert second.name == "Bob"
    assert second.picture == "https://img/bob.png"
    assert "u2" in contacts and len(contacts) == 1


def test_contact_cache_defaults(db):
    contact = ContactCache(db).lookup("ghost")

    assert contact.name == "User"
    assert contact.picture == "https://via.placeholder.com/40"


def test_inbox_to_dict(db):
    resolve_conversation(db, Category.MARKETPLACE, BOB, ALICE, item_id="lamp")
    append_message(db, "lamp_u2_u1", "u2", "still for sale?")

    payload = build_inbox(db, "u1").to_dict()

    assert payload["unread_count"] == 1
    entry = payload["conversations"][0]
    assert entry["id"] == "lamp_u2_u1"
    assert entry["category"] == "marketplace"
    assert entry["item_id"] == "lamp"
    assert entry["preview"] == "still for sale?"
    assert entry["unread"] is True
    assert isinstance(entry["last_updated"], str)


def test_naive_timestamps_serialize_with_utc_offset(db):
    _insert_chat(db, "stamped", last_updated=datetime(2024, 5, 1, 9, 30))

    entry = build_inbox(db, "u1").to_dict()["conversations"][0]

    assert entry["last_updated"] == "2024-05-01T09:30:00+00:00"
