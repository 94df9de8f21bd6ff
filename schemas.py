"""
Database Schemas for the Campus Utilities Hub

Each Pydantic model describes the documents of one MongoDB collection. Feature
modules validate through these models before writing; timestamps are stamped by
the database helpers.
"""
from pydantic import BaseModel, Field
from typing import Literal, Optional, List

ConversationCategory = Literal["general", "marketplace", "lost-found"]


class User(BaseModel):
    """
    Student and admin accounts
    Collection: "users"
    """
    name: str = Field(..., min_length=1, max_length=80, description="Display name")
    name_lowercase: str = Field(..., description="Lower-cased name for search")
    email: str = Field(..., description="Sign-in email, stored lower-cased")
    role: Literal["student", "admin"] = Field("student", description="Access role")
    profile_pic: Optional[str] = Field(None, description="Profile picture URL")


class Message(BaseModel):
    """
    One entry of a conversation's message list (embedded, not a collection)
    """
    sender_id: str = Field(..., description="Sender account ID")
    text: str = Field(..., min_length=1, max_length=4000, description="Message text")
    timestamp: str = Field(..., description="ISO-8601 time the message was written")


class Conversation(BaseModel):
    """
    A two-party thread, keyed by its derived conversation key
    Collection: "chats"
    """
    participant_ids: List[str] = Field(..., min_length=2, max_length=2, description="Initiator, counterpart")
    participant_contacts: List[str] = Field(..., min_length=2, max_length=2, description="Contact emails, parallel to participant_ids")
    category: ConversationCategory = Field(..., description="Thread category")
    item_id: Optional[str] = Field(None, description="Marketplace or lost-and-found item the thread is about")
    messages: List[Message] = Field(default_factory=list, description="Append-only message list")


class MarketplaceItem(BaseModel):
    """
    Items students list for sale
    Collection: "marketplace_items"
    """
    item_name: str = Field(..., min_length=1, max_length=120)
    price: float = Field(..., ge=0)
    description: str = Field("", max_length=2000)
    image_url: str = Field(..., description="Hosted product photo")
    seller_id: str
    seller_email: str
    status: Literal["available", "sold"] = "available"


class LostFoundItem(BaseModel):
    """
    Lost or found item reports
    Collection: "lost_found_items"
    """
    item_name: str = Field(..., min_length=1, max_length=120)
    description: str = Field("", max_length=2000)
    status: Literal["lost", "found", "returned"]
    image_url: str
    reporter_id: str
    reported_by: str = Field(..., description="Reporter email")


class Menu(BaseModel):
    """
    Mess menu for one day, keyed by day name
    Collection: "menus"
    """
    breakfast: str = Field(..., max_length=500)
    lunch: str = Field(..., max_length=500)
    dinner: str = Field(..., max_length=500)
    published_by: str


class Rating(BaseModel):
    """
    Meal feedback
    Collection: "ratings"
    """
    meal: str = Field(..., min_length=1, max_length=40)
    rating: int = Field(..., ge=1, le=5)
    comments: str = Field("", max_length=1000)
    submitted_by: str


class Announcement(BaseModel):
    """
    Campus-wide broadcasts
    Collection: "announcements"
    """
    title: str = Field(..., min_length=1, max_length=200)
    text: str = Field(..., min_length=1, max_length=4000)
    category: Optional[str] = Field(None, max_length=40)
    posted_by: str


class UtilityStatus(BaseModel):
    """
    Live status of a campus utility (Water, Electricity, Laundry, Wi-Fi)
    Collection: "utility_status"
    """
    name: str = Field(..., min_length=1, max_length=60)
    is_operational: bool = True


class Complaint(BaseModel):
    """
    Utility complaints raised by students
    Collection: "complaints"
    """
    utility_type: str = Field(..., min_length=1, max_length=60)
    description: str = Field(..., min_length=1, max_length=2000)
    status: Literal["Pending", "Resolved"] = "Pending"
    submitted_by: str


class CampusLocation(BaseModel):
    """
    Landmarks shown on the campus map
    Collection: "campus_locations"
    """
    name: str = Field(..., min_length=1, max_length=120)
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
