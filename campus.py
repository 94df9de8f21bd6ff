"""
Campus board: mess menus and meal ratings, announcements, utility status,
complaints, map landmarks, profiles and the admin directory.
"""
from typing import Any, Dict, List, Optional

from pymongo.database import Database

from database import create_document, get_documents, now_utc, parse_object_id
from errors import InvalidInput, NotFound
from identity import SESSIONS, USERS, Account, require_admin
from logging_setup import get_logger
from schemas import Announcement, CampusLocation, Complaint, Menu, Rating
from uploads import ImageFile, ImageUploader

logger = get_logger("campus")

MENUS = "menus"
RATINGS = "ratings"
ANNOUNCEMENTS = "announcements"
UTILITIES = "utility_status"
COMPLAINTS = "complaints"
LOCATIONS = "campus_locations"

DAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
CURRENT_MENU = "current_menu"
EMPTY_MEAL = "-"
ANNOUNCEMENT_FEED_SIZE = 5

MODERATED_COLLECTIONS = (
    "marketplace_items",
    "lost_found_items",
    ANNOUNCEMENTS,
    RATINGS,
    COMPLAINTS,
    LOCATIONS,
)


def _find(db: Database, collection: str, doc_id: str, what: str) -> Dict[str, Any]:
    doc = db[collection].find_one({"_id": parse_object_id(doc_id)})
    if doc is None:
        raise NotFound(f"{what} not found")
    return doc


# Mess menu

def publish_menu(db: Database, admin: Account, day: str, breakfast: str, lunch: str, dinner: str) -> Dict[str, Any]:
    """Replace the menu for one day (or today's special)."""
    require_admin(admin)
    day = (day or "").strip().lower()
    if day not in DAYS and day != CURRENT_MENU:
        raise InvalidInput(f"Unknown menu day: {day}")
    doc = Menu(breakfast=breakfast, lunch=lunch, dinner=dinner, published_by=admin.email).model_dump()
    doc["timestamp"] = now_utc()
    db[MENUS].replace_one({"_id": day}, doc, upsert=True)
    logger.info("Menu for %s published by %s", day, admin.id)
    return {"_id": day, **doc}


def todays_menu(db: Database) -> Optional[Dict[str, Any]]:
    return db[MENUS].find_one({"_id": CURRENT_MENU})


def weekly_menu(db: Database) -> List[Dict[str, str]]:
    by_day = {str(doc["_id"]).lower(): doc for doc in db[MENUS].find({"_id": {"$in": list(DAYS)}})}
    week = []
    for day in DAYS:
        doc = by_day.get(day, {})
        week.append({
            "day": day,
            "breakfast": doc.get("breakfast", EMPTY_MEAL),
            "lunch": doc.get("lunch", EMPTY_MEAL),
            "dinner": doc.get("dinner", EMPTY_MEAL),
        })
    return week


def submit_rating(db: Database, account: Account, meal: str, rating: int, comments: str = "") -> Dict[str, Any]:
    doc = Rating(meal=meal, rating=rating, comments=comments, submitted_by=account.email).model_dump()
    doc["timestamp"] = now_utc()
    rating_id = create_document(db, RATINGS, doc)
    return _find(db, RATINGS, rating_id, "Rating")


# Announcements

def post_announcement(
    db: Database,
    admin: Account,
    title: str,
    text: str,
    category: Optional[str] = None,
) -> Dict[str, Any]:
    require_admin(admin)
    doc = Announcement(title=title, text=text, category=category, posted_by=admin.email).model_dump()
    doc["timestamp"] = now_utc()
    announcement_id = create_document(db, ANNOUNCEMENTS, doc)
    logger.info("Announcement %s posted by %s", announcement_id, admin.id)
    return _find(db, ANNOUNCEMENTS, announcement_id, "Announcement")


def latest_announcements(db: Database, limit: int = ANNOUNCEMENT_FEED_SIZE) -> List[Dict[str, Any]]:
    return get_documents(db, ANNOUNCEMENTS, limit=limit, sort=[("timestamp", -1)])


def delete_announcement(db: Database, admin: Account, announcement_id: str) -> None:
    require_admin(admin)
    doc = _find(db, ANNOUNCEMENTS, announcement_id, "Announcement")
    db[ANNOUNCEMENTS].delete_one({"_id": doc["_id"]})


# Utilities

def list_utilities(db: Database) -> List[Dict[str, Any]]:
    return get_documents(db, UTILITIES, sort=[("name", 1)])


def toggle_utility(db: Database, admin: Account, utility_id: str) -> Dict[str, Any]:
    require_admin(admin)
    doc = _find(db, UTILITIES, utility_id, "Utility")
    operational = not doc.get("is_operational", True)
    db[UTILITIES].update_one({"_id": doc["_id"]}, {"$set": {"is_operational": operational}})
    doc["is_operational"] = operational
    logger.info("Utility %s set operational=%s by %s", doc.get("name"), operational, admin.id)
    return doc


# Complaints

def submit_complaint(db: Database, account: Account, utility_type: str, description: str) -> Dict[str, Any]:
    doc = Complaint(utility_type=utility_type, description=description, submitted_by=account.email).model_dump()
    complaint_id = create_document(db, COMPLAINTS, doc)
    return _find(db, COMPLAINTS, complaint_id, "Complaint")


def list_complaints(db: Database, admin: Account) -> List[Dict[str, Any]]:
    require_admin(admin)
    return get_documents(db, COMPLAINTS, sort=[("created_at", -1)])


def resolve_complaint(db: Database, admin: Account, complaint_id: str) -> Dict[str, Any]:
    require_admin(admin)
    doc = _find(db, COMPLAINTS, complaint_id, "Complaint")
    db[COMPLAINTS].update_one({"_id": doc["_id"]}, {"$set": {"status": "Resolved"}})
    doc["status"] = "Resolved"
    return doc


# Map landmarks

def add_location(db: Database, admin: Account, name: str, lat: float, lng: float) -> Dict[str, Any]:
    require_admin(admin)
    doc = CampusLocation(name=name, lat=lat, lng=lng).model_dump()
    doc["timestamp"] = now_utc()
    location_id = create_document(db, LOCATIONS, doc)
    return _find(db, LOCATIONS, location_id, "Location")


def list_locations(db: Database) -> List[Dict[str, Any]]:
    return get_documents(db, LOCATIONS, sort=[("timestamp", -1)])


def delete_location(db: Database, admin: Account, location_id: str) -> None:
    require_admin(admin)
    doc = _find(db, LOCATIONS, location_id, "Location")
    db[LOCATIONS].delete_one({"_id": doc["_id"]})


# Profiles

def get_profile(db: Database, account: Account) -> Dict[str, Any]:
    doc = db[USERS].find_one({"_id": account.id}, {"password_hash": 0})
    if doc is None:
        raise NotFound("Profile not found")
    return doc


def update_profile(
    db: Database,
    account: Account,
    name: str,
    image: Optional[ImageFile] = None,
    uploader: Optional[ImageUploader] = None,
) -> Dict[str, Any]:
    """Merge a new display name (and optionally a new picture) into the profile."""
    name = (name or "").strip()
    if not name:
        raise InvalidInput("Name is required")
    changes: Dict[str, Any] = {
        "name": name,
        "name_lowercase": name.lower(),
        "email": account.email,
        "updated_at": now_utc(),
    }
    if image is not None and image.content:
        if uploader is None:
            raise InvalidInput("No uploader configured for profile pictures")
        changes["profile_pic"] = uploader.upload(image)
    db[USERS].update_one({"_id": account.id}, {"$set": changes})
    return get_profile(db, account)


# Admin directory

def list_users(db: Database, admin: Account, query: str = "") -> List[Dict[str, Any]]:
    require_admin(admin)
    needle = (query or "").strip().lower()
    users = list(db[USERS].find({}, {"password_hash": 0}).sort("name_lowercase", 1))
    if not needle:
        return users
    return [
        u for u in users
        if needle in (u.get("name") or "").lower() or needle in (u.get("email") or "").lower()
    ]


def remove_user(db: Database, admin: Account, user_id: str) -> None:
    require_admin(admin)
    result = db[USERS].delete_one({"_id": user_id})
    if not result.deleted_count:
        raise NotFound("User not found")
    db[SESSIONS].delete_many({"user_id": user_id})
    logger.info("User %s removed by %s", user_id, admin.id)


def delete_content(db: Database, admin: Account, collection: str, doc_id: str) -> None:
    require_admin(admin)
    if collection not in MODERATED_COLLECTIONS:
        raise InvalidInput(f"Collection {collection} is not moderated")
    doc = _find(db, collection, doc_id, "Entry")
    db[collection].delete_one({"_id": doc["_id"]})
    logger.info("Removed %s/%s by %s", collection, doc_id, admin.id)
