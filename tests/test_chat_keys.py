from unittest.mock import MagicMock

import pytest

from chat import (
    Category,
    ChatError,
    Participant,
    SelfConversationError,
    classify,
    conversation_key,
    resolve_conversation,
)


def test_general_key_is_the_same_from_both_sides():
    assert conversation_key(Category.GENERAL, "u1", "u2") == "u1_u2"
    assert conversation_key(Category.GENERAL, "u2", "u1") == "u1_u2"


@pytest.mark.parametrize(
    "a,b",
    [
        ("alice", "bob"),
        ("Zed", "amy"),
        ("64f1c2a9e1b2c3d4e5f60718", "64a0c2a9e1b2c3d4e5f60718"),
    ],
)
def test_general_key_sorts_lexicographically(a, b):
    expected = "_".join(sorted([a, b]))
    assert conversation_key(Category.GENERAL, a, b) == expected
    assert conversation_key(Category.GENERAL, b, a) == expected


def test_marketplace_key_keeps_buyer_then_seller():
    key = conversation_key(Category.MARKETPLACE, "buyer", "seller", item_id="itemA")

    assert key == "itemA_buyer_seller"
    assert key != conversation_key(Category.MARKETPLACE, "seller", "buyer", item_id="itemA")


def test_lost_found_key_has_prefix():
    assert conversation_key(Category.LOST_FOUND, "u1", "u2", item_id="itemA") == "LF_itemA_u1_u2"


def test_same_parties_get_distinct_keys_per_category():
    keys = {
        conversation_key(Category.GENERAL, "u1", "u2"),
        conversation_key(Category.MARKETPLACE, "u1", "u2", item_id="itemA"),
        conversation_key(Category.LOST_FOUND, "u1", "u2", item_id="itemA"),
    }
    assert len(keys) == 3


def test_each_initiator_gets_its_own_item_thread():
    first = conversation_key(Category.MARKETPLACE, "u1", "seller", item_id="itemA")
    second = conversation_key(Category.MARKETPLACE, "u2", "seller", item_id="itemA")
    assert first != second


@pytest.mark.parametrize("category", list(Category))
def test_self_conversation_is_rejected(category):
    with pytest.raises(SelfConversationError):
        conversation_key(category, "u1", "u1", item_id="itemA")


def test_self_conversation_is_rejected_before_store_access():
    db = MagicMock()
    me = Participant("u1", "alice@campus.edu")

    with pytest.raises(SelfConversationError):
        resolve_conversation(db, Category.LOST_FOUND, me, me, item_id="itemA")

    db.__getitem__.assert_not_called()


@pytest.mark.parametrize("category", [Category.MARKETPLACE, Category.LOST_FOUND])
def test_item_threads_need_an_item(category):
    with pytest.raises(ChatError):
        conversation_key(category, "u1", "u2")


def test_missing_participant_is_rejected():
    with pytest.raises(ChatError):
        conversation_key(Category.GENERAL, "", "u2")


def test_explicit_category_wins_over_key_shape():
    record = {"_id": "LF_itemA_u1_u2", "item_id": "itemA", "category": "marketplace"}
    assert classify(record) is Category.MARKETPLACE


@pytest.mark.parametrize(
    "record,expected",
    [
        ({"_id": "LF_itemA_u1_u2", "item_id": "itemA"}, Category.LOST_FOUND),
        ({"_id": "itemA_u1_u2", "item_id": "itemA"}, Category.MARKETPLACE),
        ({"_id": "u1_u2"}, Category.GENERAL),
        ({"_id": "u1_u2", "category": "bogus"}, Category.GENERAL),
    ],
)
def test_records_without_category_are_classified_by_shape(record, expected):
    assert classify(record) is expected


@pytest.mark.parametrize(
    "category,initiator,counterpart,item_id",
    [
        (Category.GENERAL, "a_b", "c", None),
        (Category.MARKETPLACE, "b", "c", "a_x"),
        (Category.LOST_FOUND, "y", "z_w", "x"),
    ],
)
def test_ids_containing_the_separator_are_rejected(category, initiator, counterpart, item_id):
    with pytest.raises(ChatError):
        conversation_key(category, initiator, counterpart, item_id)


def test_contextual_thread_never_reuses_a_general_record(db):
    resolve_conversation(db, Category.MARKETPLACE, Participant("b", "b@x"), Participant("c", "c@x"), item_id="a")

    with pytest.raises(ChatError):
        resolve_conversation(db, Category.GENERAL, Participant("a_b", "ab@x"), Participant("c", "c@x"))

    assert classify(db["chats"].find_one({"_id": "a_b_c"})) is Category.MARKETPLACE
