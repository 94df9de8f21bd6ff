import asyncio
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from bson.objectid import ObjectId
from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ValidationError
from pymongo.database import Database
from starlette.requests import HTTPConnection

import campus
import database
import lost_found
import marketplace
from chat import (
    Category,
    ChangeFeed,
    ChatSession,
    ChatSessions,
    Participant,
    build_inbox,
    get_conversation,
    search_users,
)
from errors import (
    DatabaseUnavailable,
    HubError,
    IdentityError,
    InvalidCredentials,
    NotAuthenticated,
    NotFound,
    PermissionDenied,
    UploadFailed,
)
from identity import SESSION_TOPIC, USERS, Account, IdentityService, SessionChange
from logging_setup import get_logger, setup_logging
from settings import settings
from uploads import ImageFile, ImageUploader

setup_logging(settings.log_level)
logger = get_logger("api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        await run_in_threadpool(database.ensure_indexes, database.db)
    yield


app = FastAPI(title="Campus Utilities Hub", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.feed = ChangeFeed()
app.state.chat_sessions = ChatSessions(app.state.feed)


def _drop_chat_session(change: SessionChange) -> None:
    if change.account is None:
        app.state.chat_sessions.drop(change.token)


app.state.feed.subscribe(SESSION_TOPIC, _drop_chat_session)


# Utilities

def to_str_id(doc):
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    # Convert datetimes and ObjectIds to JSON-friendly strings
    for k, v in list(d.items()):
        if isinstance(v, datetime):
            d[k] = v.isoformat()
        elif isinstance(v, ObjectId):
            d[k] = str(v)
    d.pop("password_hash", None)
    return d


def _image_from(upload: Optional[UploadFile]) -> Optional[ImageFile]:
    if upload is None or not upload.filename:
        return None
    return ImageFile(upload.filename, upload.file.read(), upload.content_type or "application/octet-stream")


# Error mapping

def _status_for(exc: HubError) -> int:
    if isinstance(exc, (InvalidCredentials, NotAuthenticated)):
        return 401
    if isinstance(exc, IdentityError):
        return 400
    if isinstance(exc, PermissionDenied):
        return 403
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, UploadFailed):
        return 502
    if isinstance(exc, DatabaseUnavailable):
        return 503
    return 400


@app.exception_handler(HubError)
async def hub_error_handler(request: Request, exc: HubError):
    return JSONResponse(status_code=_status_for(exc), content={"detail": exc.reason})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    errors = exc.errors(include_url=False, include_context=False)
    return JSONResponse(status_code=422, content={"detail": "validation_error", "errors": errors})


# Dependencies

bearer = HTTPBearer(auto_error=False)


def get_feed(connection: HTTPConnection) -> ChangeFeed:
    return connection.app.state.feed


def get_chat_sessions(connection: HTTPConnection) -> ChatSessions:
    return connection.app.state.chat_sessions


def get_uploader() -> ImageUploader:
    return ImageUploader()


def get_identity(
    db: Database = Depends(database.get_db),
    feed: ChangeFeed = Depends(get_feed),
) -> IdentityService:
    return IdentityService(db, feed)


def get_token(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> Optional[str]:
    return credentials.credentials if credentials else None


def current_account(
    token: Optional[str] = Depends(get_token),
    identity: IdentityService = Depends(get_identity),
) -> Account:
    account = identity.current(token)
    if account is None:
        raise HTTPException(status_code=401, detail="Not signed in")
    return account


def current_chat(
    token: Optional[str] = Depends(get_token),
    account: Account = Depends(current_account),
    db: Database = Depends(database.get_db),
    sessions: ChatSessions = Depends(get_chat_sessions),
) -> ChatSession:
    return sessions.get(token, db, account.id)


# Schemas for requests
class Register(BaseModel):
    name: str
    email: str
    password: str


class Login(BaseModel):
    email: str
    password: str


class StartConversation(BaseModel):
    counterpart_id: str


class SendMessage(BaseModel):
    text: str


class PublishMenu(BaseModel):
    breakfast: str
    lunch: str
    dinner: str


class SubmitRating(BaseModel):
    meal: str
    rating: int
    comments: Optional[str] = ""


class PostAnnouncement(BaseModel):
    title: str
    text: str
    category: Optional[str] = None


class SubmitComplaint(BaseModel):
    utility_type: str
    description: str


class AddLocation(BaseModel):
    name: str
    lat: float
    lng: float


@app.get("/")
def read_root():
    return {"message": "Campus Utilities Hub API ready"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    if database.db is None:
        return response
    try:
        response["collections"] = database.db.list_collection_names()
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except Exception as e:
        logger.warning("Database check failed: %s", e)
        response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    return response


# Auth
@app.post("/auth/register")
def register(payload: Register, identity: IdentityService = Depends(get_identity)):
    account = identity.register(payload.name, payload.email, payload.password)
    return account.to_dict()


@app.post("/auth/login")
def login(payload: Login, identity: IdentityService = Depends(get_identity)):
    session = identity.authenticate(payload.email, payload.password)
    return {
        "token": session.token,
        "expires_at": session.expires_at.isoformat(),
        "account": session.account.to_dict(),
    }


@app.post("/auth/logout")
def logout(
    token: Optional[str] = Depends(get_token),
    account: Account = Depends(current_account),
    identity: IdentityService = Depends(get_identity),
):
    identity.sign_out(token)
    return {"signed_out": True}


@app.get("/auth/me")
def me(account: Account = Depends(current_account)):
    return account.to_dict()


# Profile
@app.get("/profile")
def read_profile(account: Account = Depends(current_account), db: Database = Depends(database.get_db)):
    return to_str_id(campus.get_profile(db, account))


@app.put("/profile")
def edit_profile(
    name: str = Form(...),
    picture: Optional[UploadFile] = File(None),
    account: Account = Depends(current_account),
    db: Database = Depends(database.get_db),
    uploader: ImageUploader = Depends(get_uploader),
):
    return to_str_id(campus.update_profile(db, account, name, _image_from(picture), uploader))


# Chats
@app.get("/users/search")
def find_people(q: str = "", account: Account = Depends(current_account), db: Database = Depends(database.get_db)):
    return search_users(db, account.id, q)


@app.post("/chats")
def start_conversation(
    payload: StartConversation,
    account: Account = Depends(current_account),
    chat: ChatSession = Depends(current_chat),
    db: Database = Depends(database.get_db),
):
    if payload.counterpart_id == account.id:
        raise HTTPException(status_code=400, detail="Cannot start conversation with self")
    other = db[USERS].find_one({"_id": payload.counterpart_id}, {"email": 1})
    if other is None:
        raise HTTPException(status_code=404, detail="User not found")
    resolution = chat.start(
        Category.GENERAL,
        Participant(account.id, account.email),
        Participant(other["_id"], other.get("email", "")),
    )
    return {"id": resolution.key, "created": resolution.created}


@app.get("/chats")
def inbox(category: str = "all", chat: ChatSession = Depends(current_chat)):
    if category == "all":
        return chat.inbox(all_categories=True).to_dict()
    try:
        wanted = Category(category)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown category: {category}")
    return chat.inbox(wanted).to_dict()


@app.get("/chats/{key}")
def open_conversation(key: str, chat: ChatSession = Depends(current_chat)):
    return to_str_id(chat.open(key))


@app.post("/chats/{key}/messages")
def send_message(key: str, payload: SendMessage, chat: ChatSession = Depends(current_chat)):
    return chat.send(payload.text, key=key)


def _push_on_change(websocket: WebSocket, render):
    """Callback that renders a fresh snapshot and sends it over the socket."""
    loop = asyncio.get_running_loop()

    async def push():
        try:
            snapshot = await run_in_threadpool(render)
            await websocket.send_json(snapshot)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug("Dropped live update: %s", e)

    def on_change(_payload):
        asyncio.run_coroutine_threadsafe(push(), loop)

    return push, on_change


async def _hold_open(websocket: WebSocket):
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass


@app.websocket("/ws/chats/{key}")
async def conversation_socket(
    websocket: WebSocket,
    key: str,
    token: Optional[str] = None,
    db: Database = Depends(database.get_db),
):
    feed = websocket.app.state.feed
    account = await run_in_threadpool(IdentityService(db, feed).current, token)
    await websocket.accept()
    if account is None:
        await websocket.close(code=4401)
        return

    chat = websocket.app.state.chat_sessions.get(token, db, account.id)
    push, on_change = _push_on_change(websocket, lambda: to_str_id(get_conversation(db, key)))
    try:
        await run_in_threadpool(chat.open, key, on_change)
    except HubError as e:
        await websocket.close(code=4404 if isinstance(e, NotFound) else 4403)
        return

    try:
        await push()
        await _hold_open(websocket)
    finally:
        chat.detach_conversation(on_change)


@app.websocket("/ws/inbox")
async def inbox_socket(
    websocket: WebSocket,
    token: Optional[str] = None,
    category: str = Category.GENERAL.value,
    db: Database = Depends(database.get_db),
):
    feed = websocket.app.state.feed
    account = await run_in_threadpool(IdentityService(db, feed).current, token)
    await websocket.accept()
    if account is None:
        await websocket.close(code=4401)
        return
    if category not in {c.value for c in Category}:
        await websocket.close(code=4400)
        return

    chat = websocket.app.state.chat_sessions.get(token, db, account.id)
    wanted = Category(category)
    push, on_change = _push_on_change(
        websocket, lambda: build_inbox(db, account.id, wanted, chat.contacts).to_dict()
    )
    await run_in_threadpool(chat.switch_category, wanted, on_change)
    try:
        await push()
        await _hold_open(websocket)
    finally:
        chat.detach_inbox(on_change)


# Marketplace
@app.post("/marketplace/items")
def create_listing(
    item_name: str = Form(...),
    price: float = Form(...),
    description: str = Form(""),
    image: Optional[UploadFile] = File(None),
    account: Account = Depends(current_account),
    db: Database = Depends(database.get_db),
    uploader: ImageUploader = Depends(get_uploader),
):
    item = marketplace.create_listing(db, account, item_name, price, description, _image_from(image), uploader)
    return to_str_id(item)


@app.get("/marketplace/items")
def list_listings(hide_sold: bool = False, db: Database = Depends(database.get_db)):
    return [to_str_id(d) for d in marketplace.list_listings(db, hide_sold)]


@app.post("/marketplace/items/{item_id}/sold")
def mark_sold(item_id: str, account: Account = Depends(current_account), db: Database = Depends(database.get_db)):
    return to_str_id(marketplace.mark_sold(db, account, item_id))


@app.post("/marketplace/items/{item_id}/contact")
def contact_seller(
    item_id: str,
    account: Account = Depends(current_account),
    chat: ChatSession = Depends(current_chat),
    db: Database = Depends(database.get_db),
    feed: ChangeFeed = Depends(get_feed),
):
    resolution = marketplace.contact_seller(db, account, item_id, feed=feed)
    chat.active_key = resolution.key
    return {"id": resolution.key, "created": resolution.created}


# Lost & found
@app.post("/lost-found/items")
def report_item(
    item_name: str = Form(...),
    status: str = Form(...),
    description: str = Form(""),
    photo: Optional[UploadFile] = File(None),
    account: Account = Depends(current_account),
    db: Database = Depends(database.get_db),
    uploader: ImageUploader = Depends(get_uploader),
):
    report = lost_found.report_item(db, account, item_name, description, status, _image_from(photo), uploader)
    return to_str_id(report)


@app.get("/lost-found/items")
def list_reports(status: str = "all", q: str = "", db: Database = Depends(database.get_db)):
    return [to_str_id(d) for d in lost_found.list_reports(db, status, q)]


@app.post("/lost-found/items/{report_id}/returned")
def mark_returned(report_id: str, account: Account = Depends(current_account), db: Database = Depends(database.get_db)):
    return to_str_id(lost_found.mark_returned(db, account, report_id))


@app.delete("/lost-found/items/{report_id}")
def remove_report(report_id: str, account: Account = Depends(current_account), db: Database = Depends(database.get_db)):
    lost_found.remove_report(db, account, report_id)
    return {"deleted": True}


@app.post("/lost-found/items/{report_id}/contact")
def contact_reporter(
    report_id: str,
    account: Account = Depends(current_account),
    chat: ChatSession = Depends(current_chat),
    db: Database = Depends(database.get_db),
    feed: ChangeFeed = Depends(get_feed),
):
    resolution = lost_found.contact_reporter(db, account, report_id, feed=feed)
    chat.active_key = resolution.key
    return {"id": resolution.key, "created": resolution.created}


# Mess menu & ratings
@app.put("/menus/{day}")
def publish_menu(
    day: str,
    payload: PublishMenu,
    account: Account = Depends(current_account),
    db: Database = Depends(database.get_db),
):
    return to_str_id(campus.publish_menu(db, account, day, payload.breakfast, payload.lunch, payload.dinner))


@app.get("/menus/today")
def todays_menu(db: Database = Depends(database.get_db)):
    menu = campus.todays_menu(db)
    if menu is None:
        return {"message": "The menu is currently being updated."}
    return to_str_id(menu)


@app.get("/menus/week")
def weekly_menu(db: Database = Depends(database.get_db)) -> List[dict]:
    return campus.weekly_menu(db)


@app.post("/ratings")
def submit_rating(payload: SubmitRating, account: Account = Depends(current_account), db: Database = Depends(database.get_db)):
    return to_str_id(campus.submit_rating(db, account, payload.meal, payload.rating, payload.comments or ""))


# Announcements
@app.post("/announcements")
def post_announcement(
    payload: PostAnnouncement,
    account: Account = Depends(current_account),
    db: Database = Depends(database.get_db),
):
    return to_str_id(campus.post_announcement(db, account, payload.title, payload.text, payload.category))


@app.get("/announcements")
def announcements(db: Database = Depends(database.get_db)):
    return [to_str_id(d) for d in campus.latest_announcements(db)]


@app.delete("/announcements/{announcement_id}")
def delete_announcement(
    announcement_id: str,
    account: Account = Depends(current_account),
    db: Database = Depends(database.get_db),
):
    campus.delete_announcement(db, account, announcement_id)
    return {"deleted": True}


# Utilities & complaints
@app.get("/utilities")
def utilities(db: Database = Depends(database.get_db)):
    return [to_str_id(d) for d in campus.list_utilities(db)]


@app.post("/utilities/{utility_id}/toggle")
def toggle_utility(utility_id: str, account: Account = Depends(current_account), db: Database = Depends(database.get_db)):
    return to_str_id(campus.toggle_utility(db, account, utility_id))


@app.post("/complaints")
def submit_complaint(
    payload: SubmitComplaint,
    account: Account = Depends(current_account),
    db: Database = Depends(database.get_db),
):
    return to_str_id(campus.submit_complaint(db, account, payload.utility_type, payload.description))


@app.get("/complaints")
def complaints(account: Account = Depends(current_account), db: Database = Depends(database.get_db)):
    return [to_str_id(d) for d in campus.list_complaints(db, account)]


@app.post("/complaints/{complaint_id}/resolve")
def resolve_complaint(
    complaint_id: str,
    account: Account = Depends(current_account),
    db: Database = Depends(database.get_db),
):
    return to_str_id(campus.resolve_complaint(db, account, complaint_id))


# Map landmarks
@app.post("/locations")
def add_location(payload: AddLocation, account: Account = Depends(current_account), db: Database = Depends(database.get_db)):
    return to_str_id(campus.add_location(db, account, payload.name, payload.lat, payload.lng))


@app.get("/locations")
def locations(db: Database = Depends(database.get_db)):
    return [to_str_id(d) for d in campus.list_locations(db)]


@app.delete("/locations/{location_id}")
def delete_location(location_id: str, account: Account = Depends(current_account), db: Database = Depends(database.get_db)):
    campus.delete_location(db, account, location_id)
    return {"deleted": True}


# Admin
@app.get("/admin/users")
def admin_users(q: str = "", account: Account = Depends(current_account), db: Database = Depends(database.get_db)):
    return [to_str_id(d) for d in campus.list_users(db, account, q)]


@app.delete("/admin/users/{user_id}")
def admin_remove_user(user_id: str, account: Account = Depends(current_account), db: Database = Depends(database.get_db)):
    campus.remove_user(db, account, user_id)
    return {"deleted": True}


@app.delete("/admin/content/{collection}/{doc_id}")
def admin_delete_content(
    collection: str,
    doc_id: str,
    account: Account = Depends(current_account),
    db: Database = Depends(database.get_db),
):
    campus.delete_content(db, account, collection, doc_id)
    return {"deleted": True}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
