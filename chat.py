"""
Conversation identity and inbox aggregation.

Every two-party thread lives in the "chats" collection under a key derived from
who is talking and, for marketplace and lost-and-found threads, which item they
are talking about:

    general      sorted(a, b) joined with "_"       u1_u2
    marketplace  item, buyer, seller                itemA_u1_u2
    lost-found   "LF", item, requester, reporter    LF_itemA_u1_u2

Contextual keys keep role order because buyer/seller and finder/owner are
different roles, and one item can have a thread per initiator.
"""
import itertools
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from database import as_utc, now_utc
from errors import InvalidInput, NotFound, PermissionDenied
from logging_setup import get_logger
from schemas import Conversation, Message

logger = get_logger("chat")

CHATS = "chats"
USERS = "users"
KEY_SEPARATOR = "_"
LOST_FOUND_PREFIX = "LF"
DEFAULT_NAME = "User"
DEFAULT_PICTURE = "https://via.placeholder.com/40"
SEARCH_MIN_LENGTH = 2
SEARCH_SCAN_LIMIT = 50


class Category(str, Enum):
    GENERAL = "general"
    MARKETPLACE = "marketplace"
    LOST_FOUND = "lost-found"


PLACEHOLDERS = {
    Category.GENERAL: "New Chat",
    Category.MARKETPLACE: "Negotiation started...",
    Category.LOST_FOUND: "New Chat",
}


class ChatError(InvalidInput):
    reason = "chat_error"


class SelfConversationError(ChatError):
    reason = "Cannot start conversation with self"


class EmptyMessageError(ChatError):
    reason = "Message text is empty"


class ConversationNotFound(NotFound):
    reason = "Conversation not found"


class NotParticipantError(PermissionDenied):
    reason = "Sender not in conversation"


class Participant(NamedTuple):
    id: str
    contact: str


class Resolution(NamedTuple):
    key: str
    created: bool


# Keys and classification

def conversation_key(
    category: Category,
    initiator: str,
    counterpart: str,
    item_id: Optional[str] = None,
) -> str:
    category = Category(category)
    initiator, counterpart = str(initiator), str(counterpart)
    if not initiator or not counterpart:
        raise ChatError("Both participants are required")
    if initiator == counterpart:
        raise SelfConversationError()
    # key segments never contain the separator
    for part in (initiator, counterpart, str(item_id or "")):
        if KEY_SEPARATOR in part:
            raise ChatError(f"Ids may not contain {KEY_SEPARATOR!r}: {part}")

    if category is Category.GENERAL:
        return KEY_SEPARATOR.join(sorted((initiator, counterpart)))

    if not item_id:
        raise ChatError(f"{category.value} conversations need an item id")
    parts = [str(item_id), initiator, counterpart]
    if category is Category.LOST_FOUND:
        parts.insert(0, LOST_FOUND_PREFIX)
    return KEY_SEPARATOR.join(parts)


def classify(record: Dict[str, Any]) -> Category:
    """Category of a stored conversation.

    Uses the ``category`` field written at creation; records written before
    that field existed are classified from the key shape.
    """
    tag = record.get("category")
    if tag in _CATEGORY_VALUES:
        return Category(tag)
    if str(record.get("_id", "")).startswith(LOST_FOUND_PREFIX + KEY_SEPARATOR):
        return Category.LOST_FOUND
    if record.get("item_id"):
        return Category.MARKETPLACE
    return Category.GENERAL


_CATEGORY_VALUES = {c.value for c in Category}


def chat_topic(key: str) -> str:
    return f"chat:{key}"


def inbox_topic(user_id: str) -> str:
    return f"inbox:{user_id}"


# Live updates

class ChangeFeed:
    """In-process publish/subscribe keyed by topic.

    subscribe() returns a handle that detaches the callback when called.
    Callbacks run on the publishing thread; a failing callback is logged and
    does not affect the writer or other subscribers.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count()
        self._listeners: Dict[str, Dict[int, Callable[[Any], None]]] = {}

    def subscribe(self, topic: str, callback: Callable[[Any], None]) -> Callable[[], None]:
        with self._lock:
            token = next(self._ids)
            self._listeners.setdefault(topic, {})[token] = callback

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(topic)
                if listeners is None:
                    return
                listeners.pop(token, None)
                if not listeners:
                    del self._listeners[topic]

        return unsubscribe

    def publish(self, topic: str, payload: Any = None) -> int:
        with self._lock:
            callbacks = list(self._listeners.get(topic, {}).values())
        for callback in callbacks:
            try:
                callback(payload)
            except Exception:
                logger.exception("Listener for %s failed", topic)
        return len(callbacks)

    def listener_count(self, topic: str) -> int:
        with self._lock:
            return len(self._listeners.get(topic, {}))


def _publish_inbox(feed: Optional[ChangeFeed], participant_ids: List[str], key: str) -> None:
    if feed is None:
        return
    for user_id in participant_ids:
        feed.publish(inbox_topic(user_id), key)


# Store operations

def resolve_conversation(
    db: Database,
    category: Category,
    initiator: Participant,
    counterpart: Participant,
    item_id: Optional[str] = None,
    feed: Optional[ChangeFeed] = None,
) -> Resolution:
    """Get-or-create the conversation between two participants.

    The insert is a single upsert with $setOnInsert, so repeated or concurrent
    first contacts never create a second record or touch existing messages.
    """
    category = Category(category)
    key = conversation_key(category, initiator.id, counterpart.id, item_id)

    initial = Conversation(
        participant_ids=[initiator.id, counterpart.id],
        participant_contacts=[initiator.contact, counterpart.contact],
        category=category.value,
        item_id=item_id,
    ).model_dump()
    stamp = now_utc()
    initial["created_at"] = stamp
    initial["last_updated"] = stamp

    result = db[CHATS].update_one({"_id": key}, {"$setOnInsert": initial}, upsert=True)
    created = result.upserted_id is not None
    if created:
        logger.info("Created %s conversation %s", category.value, key)
        _publish_inbox(feed, initial["participant_ids"], key)
    return Resolution(key, created)


def get_conversation(db: Database, key: str, viewer_id: Optional[str] = None) -> Dict[str, Any]:
    record = db[CHATS].find_one({"_id": key})
    if record is None:
        raise ConversationNotFound()
    if viewer_id is not None and viewer_id not in record.get("participant_ids", []):
        raise NotParticipantError("Not a participant of this conversation")
    return record


def append_message(
    db: Database,
    key: str,
    sender_id: str,
    text: str,
    feed: Optional[ChangeFeed] = None,
) -> Dict[str, Any]:
    """Append one message to the tail of a conversation and bump its activity time."""
    body = (text or "").strip()
    if not body:
        raise EmptyMessageError()

    stamp = now_utc()
    message = Message(sender_id=sender_id, text=body, timestamp=stamp.isoformat()).model_dump()

    # $push is applied server-side, so appends from both participants never overwrite each other
    record = db[CHATS].find_one_and_update(
        {"_id": key, "participant_ids": sender_id},
        {"$push": {"messages": message}, "$set": {"last_updated": stamp}},
        projection={"participant_ids": 1},
        return_document=ReturnDocument.AFTER,
    )
    if record is None:
        if db[CHATS].find_one({"_id": key}, {"_id": 1}) is None:
            raise ConversationNotFound()
        logger.warning("Rejected message from %s to %s: not a participant", sender_id, key)
        raise NotParticipantError()

    logger.debug("Appended message from %s to %s", sender_id, key)
    if feed is not None:
        feed.publish(chat_topic(key), message)
        _publish_inbox(feed, record.get("participant_ids", []), key)
    return message


# Inbox

class Contact(NamedTuple):
    name: str
    picture: str


class ContactCache:
    """Read-through cache of other users' display details.

    Entries are loaded on first use and kept for the life of the cache.
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._entries: Dict[str, Contact] = {}

    def lookup(self, user_id: str) -> Contact:
        contact = self._entries.get(user_id)
        if contact is None:
            doc = self._db[USERS].find_one({"_id": user_id}, {"name": 1, "profile_pic": 1}) or {}
            contact = Contact(
                name=doc.get("name") or DEFAULT_NAME,
                picture=doc.get("profile_pic") or DEFAULT_PICTURE,
            )
            self._entries[user_id] = contact
        return contact

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class InboxEntry:
    key: str
    category: Category
    counterpart_id: Optional[str]
    counterpart_contact: str
    display_name: str
    preview: str
    unread: bool
    last_updated: Optional[datetime]
    item_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.key,
            "category": self.category.value,
            "counterpart_id": self.counterpart_id,
            "counterpart_contact": self.counterpart_contact,
            "display_name": self.display_name,
            "preview": self.preview,
            "unread": self.unread,
            "last_updated": as_utc(self.last_updated).isoformat() if isinstance(self.last_updated, datetime) else None,
            "item_id": self.item_id,
        }


@dataclass
class Inbox:
    entries: List[InboxEntry]

    @property
    def unread_count(self) -> int:
        return sum(1 for entry in self.entries if entry.unread)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversations": [entry.to_dict() for entry in self.entries],
            "unread_count": self.unread_count,
        }


def _activity(record: Dict[str, Any]) -> datetime:
    stamp = record.get("last_updated")
    if not isinstance(stamp, datetime):
        return datetime.min
    if stamp.tzinfo is not None:
        stamp = stamp.astimezone(timezone.utc).replace(tzinfo=None)
    return stamp


def _local_part(contact: str) -> str:
    return contact.split("@")[0] if "@" in contact else contact


def _entry_for(record: Dict[str, Any], viewer_id: str, contacts: Optional[ContactCache]) -> InboxEntry:
    category = classify(record)
    participants = record.get("participant_ids", [])
    emails = record.get("participant_contacts", [])

    counterpart_id = next((p for p in participants if p != viewer_id), None)
    counterpart_contact = DEFAULT_NAME
    if counterpart_id is not None:
        index = participants.index(counterpart_id)
        if index < len(emails) and emails[index]:
            counterpart_contact = emails[index]

    if contacts is not None and counterpart_id is not None:
        display_name = contacts.lookup(counterpart_id).name
    else:
        display_name = _local_part(counterpart_contact)

    messages = record.get("messages") or []
    last = messages[-1] if messages else None

    return InboxEntry(
        key=record["_id"],
        category=category,
        counterpart_id=counterpart_id,
        counterpart_contact=counterpart_contact,
        display_name=display_name,
        preview=last["text"] if last else PLACEHOLDERS[category],
        unread=bool(last) and last.get("sender_id") != viewer_id,
        last_updated=record.get("last_updated"),
        item_id=record.get("item_id"),
    )


def build_inbox(
    db: Database,
    viewer_id: str,
    category: Optional[Category] = None,
    contacts: Optional[ContactCache] = None,
) -> Inbox:
    """All of a viewer's conversations, newest activity first.

    Ordering is computed here from each record's last_updated rather than
    taken from the query, whose index can lag just after a write.
    """
    wanted = Category(category) if category is not None else None
    records = [
        record for record in db[CHATS].find({"participant_ids": viewer_id})
        if wanted is None or classify(record) is wanted
    ]
    records.sort(key=_activity, reverse=True)
    return Inbox(entries=[_entry_for(record, viewer_id, contacts) for record in records])


def search_users(db: Database, viewer_id: str, query: str) -> List[Dict[str, Any]]:
    """People the viewer can start a general chat with."""
    needle = (query or "").strip().lower()
    if len(needle) < SEARCH_MIN_LENGTH:
        return []
    matches = []
    for doc in db[USERS].find({}, {"name": 1, "email": 1}).limit(SEARCH_SCAN_LIMIT):
        if doc["_id"] == viewer_id:
            continue
        name = (doc.get("name") or "").lower()
        email = (doc.get("email") or "").lower()
        if needle in name or needle in email:
            matches.append({"id": doc["_id"], "name": doc.get("name") or DEFAULT_NAME, "email": doc.get("email")})
    return matches


# Per-viewer context

class _Subscription(NamedTuple):
    listener: Callable[[Any], None]
    unsubscribe: Callable[[], None]


class ChatSession:
    """What one signed-in viewer's chat screen holds between requests.

    At most one conversation subscription and one inbox subscription are
    attached at a time; opening another conversation or switching category
    detaches the previous one first.
    """

    def __init__(self, db: Database, viewer_id: str, feed: ChangeFeed) -> None:
        self.db = db
        self.viewer_id = viewer_id
        self.feed = feed
        self.active_key: Optional[str] = None
        self.active_category = Category.GENERAL
        self.contacts = ContactCache(db)
        self._lock = threading.RLock()
        self._conversation: Optional[_Subscription] = None
        self._inbox: Optional[_Subscription] = None

    def start(
        self,
        category: Category,
        me: Participant,
        counterpart: Participant,
        item_id: Optional[str] = None,
    ) -> Resolution:
        resolution = resolve_conversation(self.db, category, me, counterpart, item_id, feed=self.feed)
        self.active_key = resolution.key
        return resolution

    def open(self, key: str, on_change: Optional[Callable[[Any], None]] = None) -> Dict[str, Any]:
        record = get_conversation(self.db, key, viewer_id=self.viewer_id)
        with self._lock:
            # re-reading the open conversation keeps its live view attached
            if key != self.active_key or on_change is not None:
                self.detach_conversation()
            self.active_key = key
            if on_change is not None:
                self._conversation = _Subscription(on_change, self.feed.subscribe(chat_topic(key), on_change))
        return record

    def send(self, text: str, key: Optional[str] = None) -> Dict[str, Any]:
        key = key or self.active_key
        if key is None:
            raise ChatError("No conversation is open")
        return append_message(self.db, key, self.viewer_id, text, feed=self.feed)

    def switch_category(self, category: Category, on_change: Optional[Callable[[Any], None]] = None) -> Inbox:
        with self._lock:
            self.detach_inbox()
            self.active_category = Category(category)
            if on_change is not None:
                self._inbox = _Subscription(on_change, self.feed.subscribe(inbox_topic(self.viewer_id), on_change))
        return self.inbox()

    def inbox(self, category: Optional[Category] = None, all_categories: bool = False) -> Inbox:
        if not all_categories and category is None:
            category = self.active_category
        return build_inbox(self.db, self.viewer_id, category, self.contacts)

    def detach_conversation(self, listener: Optional[Callable[[Any], None]] = None) -> bool:
        """Drop the conversation subscription.

        With ``listener``, only drops it if that callback is still the attached
        one, so a replaced live view cannot detach its replacement.
        """
        with self._lock:
            current = self._conversation
            if current is None or (listener is not None and current.listener != listener):
                return False
            self._conversation = None
        current.unsubscribe()
        return True

    def detach_inbox(self, listener: Optional[Callable[[Any], None]] = None) -> bool:
        with self._lock:
            current = self._inbox
            if current is None or (listener is not None and current.listener != listener):
                return False
            self._inbox = None
        current.unsubscribe()
        return True

    def close(self) -> None:
        self.detach_conversation()
        self.detach_inbox()
        self.active_key = None


class ChatSessions:
    """ChatSession objects keyed by sign-in token."""

    def __init__(self, feed: ChangeFeed) -> None:
        self.feed = feed
        self._lock = threading.Lock()
        self._sessions: Dict[str, ChatSession] = {}

    def get(self, token: str, db: Database, viewer_id: str) -> ChatSession:
        with self._lock:
            session = self._sessions.get(token)
            if session is None or session.viewer_id != viewer_id or session.db is not db:
                if session is not None:
                    session.close()
                session = ChatSession(db, viewer_id, self.feed)
                self._sessions[token] = session
            return session

    def drop(self, token: str) -> None:
        with self._lock:
            session = self._sessions.pop(token, None)
        if session is not None:
            session.close()

    def __contains__(self, token: str) -> bool:
        return token in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
