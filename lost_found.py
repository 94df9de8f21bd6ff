"""Lost & found reports and the chats that connect finders with owners."""
from typing import Any, Dict, List, Optional

from pymongo.database import Database

from chat import Category, ChangeFeed, Participant, Resolution, resolve_conversation
from database import create_document, get_documents, parse_object_id
from errors import InvalidInput, NotFound, PermissionDenied
from identity import Account
from logging_setup import get_logger
from schemas import LostFoundItem
from uploads import ImageFile, ImageUploader

logger = get_logger("lost_found")

COLLECTION = "lost_found_items"
PLACEHOLDER_IMAGE = "https://via.placeholder.com/300?text=No+Image"
REPORT_STATUSES = ("lost", "found")


def get_report(db: Database, report_id: str) -> Dict[str, Any]:
    report = db[COLLECTION].find_one({"_id": parse_object_id(report_id)})
    if report is None:
        raise NotFound("Report not found")
    return report


def report_item(
    db: Database,
    reporter: Account,
    item_name: str,
    description: str,
    status: str,
    image: Optional[ImageFile],
    uploader: ImageUploader,
) -> Dict[str, Any]:
    if status not in REPORT_STATUSES:
        raise InvalidInput(f"status must be one of {', '.join(REPORT_STATUSES)}")

    draft = LostFoundItem(
        item_name=item_name,
        description=description,
        status=status,
        image_url=PLACEHOLDER_IMAGE,
        reporter_id=reporter.id,
        reported_by=reporter.email,
    )
    data = draft.model_dump()
    if image is not None and image.content:
        data["image_url"] = uploader.upload(image)

    report_id = create_document(db, COLLECTION, data)
    logger.info("%s report %s filed by %s", status, report_id, reporter.id)
    return get_report(db, report_id)


def list_reports(db: Database, status: str = "all", search: str = "") -> List[Dict[str, Any]]:
    filt = None if status == "all" else {"status": status}
    term = (search or "").strip().lower()
    reports = get_documents(db, COLLECTION, filt, sort=[("created_at", -1)])
    if not term:
        return reports
    return [
        r for r in reports
        if term in (r.get("item_name") or "").lower() or term in (r.get("description") or "").lower()
    ]


def _owned_report(db: Database, account: Account, report_id: str) -> Dict[str, Any]:
    report = get_report(db, report_id)
    if report["reporter_id"] != account.id:
        raise PermissionDenied("Only the reporter can change this report")
    return report


def mark_returned(db: Database, account: Account, report_id: str) -> Dict[str, Any]:
    report = _owned_report(db, account, report_id)
    db[COLLECTION].update_one({"_id": report["_id"]}, {"$set": {"status": "returned"}})
    report["status"] = "returned"
    return report


def remove_report(db: Database, account: Account, report_id: str) -> None:
    report = _owned_report(db, account, report_id)
    db[COLLECTION].delete_one({"_id": report["_id"]})
    logger.info("Report %s removed by %s", report_id, account.id)


def contact_reporter(
    db: Database,
    requester: Account,
    report_id: str,
    feed: Optional[ChangeFeed] = None,
) -> Resolution:
    report = get_report(db, report_id)
    return resolve_conversation(
        db,
        Category.LOST_FOUND,
        Participant(requester.id, requester.email),
        Participant(report["reporter_id"], report["reported_by"]),
        item_id=str(report["_id"]),
        feed=feed,
    )
