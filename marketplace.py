"""
Student marketplace: listings with hosted photos, sold-status management and
buyer-to-seller chats.
"""
from typing import Any, Dict, List, Optional

from pymongo.database import Database

from chat import Category, ChangeFeed, Participant, Resolution, resolve_conversation
from database import create_document, get_documents, parse_object_id
from errors import ItemUnavailable, MissingImage, NotFound, PermissionDenied
from identity import Account
from logging_setup import get_logger
from schemas import MarketplaceItem
from uploads import ImageFile, ImageUploader

logger = get_logger("marketplace")

COLLECTION = "marketplace_items"


def get_listing(db: Database, item_id: str) -> Dict[str, Any]:
    item = db[COLLECTION].find_one({"_id": parse_object_id(item_id)})
    if item is None:
        raise NotFound("Listing not found")
    return item


def create_listing(
    db: Database,
    seller: Account,
    item_name: str,
    price: float,
    description: str,
    image: Optional[ImageFile],
    uploader: ImageUploader,
) -> Dict[str, Any]:
    if image is None or not image.content:
        raise MissingImage()

    # validate before spending an upload on a listing that would be rejected
    draft = MarketplaceItem(
        item_name=item_name,
        price=price,
        description=description,
        image_url="pending",
        seller_id=seller.id,
        seller_email=seller.email,
    )
    data = draft.model_dump()
    data["image_url"] = uploader.upload(image)

    item_id = create_document(db, COLLECTION, data)
    logger.info("Listing %s posted by %s", item_id, seller.id)
    return get_listing(db, item_id)


def list_listings(db: Database, hide_sold: bool = False) -> List[Dict[str, Any]]:
    filt = {"status": "available"} if hide_sold else None
    return get_documents(db, COLLECTION, filt, sort=[("created_at", -1)])


def mark_sold(db: Database, seller: Account, item_id: str) -> Dict[str, Any]:
    item = get_listing(db, item_id)
    if item["seller_id"] != seller.id:
        raise PermissionDenied("Only the seller can mark this item as sold")
    db[COLLECTION].update_one({"_id": item["_id"]}, {"$set": {"status": "sold"}})
    item["status"] = "sold"
    return item


def contact_seller(
    db: Database,
    buyer: Account,
    item_id: str,
    feed: Optional[ChangeFeed] = None,
) -> Resolution:
    """Open (or resume) the buyer's thread with the seller about one listing."""
    item = get_listing(db, item_id)
    if item.get("status") != "available":
        raise ItemUnavailable()
    return resolve_conversation(
        db,
        Category.MARKETPLACE,
        Participant(buyer.id, buyer.email),
        Participant(item["seller_id"], item["seller_email"]),
        item_id=str(item["_id"]),
        feed=feed,
    )
