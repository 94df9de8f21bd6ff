"""
Accounts and sign-in sessions.

Passwords are stored as argon2 hashes in "users". A sign-in issues an opaque
bearer token; only its sha256 is kept in "sessions". Sign-in and sign-out are
announced on the change feed under SESSION_TOPIC as SessionChange values.
"""
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, NamedTuple, Optional

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from bson.objectid import ObjectId
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from chat import ChangeFeed
from database import as_utc, create_document, now_utc
from errors import EmailInUse, InvalidCredentials, PermissionDenied, WeakPassword
from logging_setup import get_logger
from schemas import User
from settings import settings

logger = get_logger("identity")

USERS = "users"
SESSIONS = "sessions"
SESSION_TOPIC = "session"
MIN_PASSWORD_LENGTH = 6

PASSWORD_HASHER = PasswordHasher()


@dataclass
class Account:
    id: str
    name: str
    email: str
    role: str = "student"
    profile_pic: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Account":
        return cls(
            id=doc["_id"],
            name=doc.get("name") or "User",
            email=doc.get("email", ""),
            role=doc.get("role", "student"),
            profile_pic=doc.get("profile_pic"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "profile_pic": self.profile_pic,
        }


@dataclass
class Session:
    token: str
    account: Account
    expires_at: datetime


class SessionChange(NamedTuple):
    token: str
    account: Optional[Account]


def _token_hash(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def require_admin(account: Account) -> Account:
    if not account.is_admin:
        logger.warning("Refused admin action for %s", account.id)
        raise PermissionDenied()
    return account


class IdentityService:
    def __init__(self, db: Database, feed: Optional[ChangeFeed] = None, session_ttl: Optional[timedelta] = None):
        self.db = db
        self.feed = feed
        self.session_ttl = session_ttl or timedelta(hours=settings.session_ttl_hours)

    def register(self, name: str, email: str, password: str) -> Account:
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise WeakPassword()
        email = normalize_email(email)
        name = (name or "").strip()
        if self.db[USERS].find_one({"email": email}, {"_id": 1}) is not None:
            raise EmailInUse()

        profile = User(name=name, name_lowercase=name.lower(), email=email).model_dump()
        user_id = str(ObjectId())
        try:
            create_document(self.db, USERS, {
                "_id": user_id,
                **profile,
                "password_hash": PASSWORD_HASHER.hash(password),
            })
        except DuplicateKeyError:
            raise EmailInUse()
        logger.info("Registered account %s", user_id)
        return Account(id=user_id, name=profile["name"], email=email, role=profile["role"])

    def authenticate(self, email: str, password: str) -> Session:
        doc = self.db[USERS].find_one({"email": normalize_email(email)})
        if doc is None or not doc.get("password_hash"):
            raise InvalidCredentials()
        try:
            PASSWORD_HASHER.verify(doc["password_hash"], password or "")
        except (VerificationError, InvalidHashError):
            raise InvalidCredentials()

        account = Account.from_document(doc)
        token = secrets.token_urlsafe(32)
        stamp = now_utc()
        expires_at = stamp + self.session_ttl
        self.db[SESSIONS].insert_one({
            "_id": _token_hash(token),
            "user_id": account.id,
            "created_at": stamp,
            "expires_at": expires_at,
        })
        logger.info("Signed in %s", account.id)
        self._announce(token, account)
        return Session(token=token, account=account, expires_at=expires_at)

    def current(self, token: Optional[str]) -> Optional[Account]:
        if not token:
            return None
        session = self.db[SESSIONS].find_one({"_id": _token_hash(token)})
        if session is None:
            return None
        if as_utc(session["expires_at"]) <= now_utc():
            self.db[SESSIONS].delete_one({"_id": session["_id"]})
            return None
        doc = self.db[USERS].find_one({"_id": session["user_id"]})
        return Account.from_document(doc) if doc else None

    def sign_out(self, token: str) -> None:
        result = self.db[SESSIONS].delete_one({"_id": _token_hash(token)})
        if result.deleted_count:
            logger.info("Signed out a session")
        self._announce(token, None)

    def on_session_change(self, callback: Callable[[SessionChange], None]) -> Callable[[], None]:
        if self.feed is None:
            raise RuntimeError("IdentityService was created without a change feed")
        return self.feed.subscribe(SESSION_TOPIC, callback)

    def _announce(self, token: str, account: Optional[Account]) -> None:
        if self.feed is not None:
            self.feed.publish(SESSION_TOPIC, SessionChange(token, account))
