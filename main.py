import asyncio
import logging
import os
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, WebSocket
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketDisconnect
from pydantic import EmailStr, Field, ValidationError
from pymongo.database import Database
from pymongo.errors import PyMongoError

from admin import AdminService
from ads import AdService
from auth import Identity, decode_token, get_current_user, get_identity, load_profile
from conversations import ConversationService
from database import get_db
from errors import MarketplaceError, PermissionDenied, PermissionErrorChannel, log_permission_error
from feed import ChangeFeed, Subscription
from inflight import InFlightGuard
from notifications import NotificationService
from schemas import CATEGORIES, AdForm, AdStatus, IssueStatus, StoredModel
from support import SupportService

logger = logging.getLogger(__name__)

# Request bodies
class ProfileBody(StoredModel):
    name: Optional[str] = Field(None, max_length=100)
    mobile_number: Optional[str] = None
    photo_url: Optional[str] = Field(None, alias='photoURL')


class RejectBody(StoredModel):
    reason: str


class StartConversationBody(StoredModel):
    ad_id: str


class SendMessageBody(StoredModel):
    text: str = Field(..., max_length=5000)


class BroadcastBody(StoredModel):
    title: str
    message: str


class IssueBody(StoredModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    description: str = Field(..., min_length=1)


class IssueStatusBody(StoredModel):
    status: IssueStatus


class HelpMessageBody(StoredModel):
    message: str


class AdvertisementBody(StoredModel):
    image_url: str


class PaymentBody(StoredModel):
    upi_id: Optional[str] = None
    qr_code_url: Optional[str] = None


# Application-scoped state and services
def get_feed(request: Request) -> ChangeFeed:
    return request.app.state.feed


def get_inflight(request: Request) -> InFlightGuard:
    return request.app.state.inflight


def get_notification_service(db: Database = Depends(get_db), feed: ChangeFeed = Depends(get_feed)) -> NotificationService:
    return NotificationService(db, feed)


def get_ad_service(
    db: Database = Depends(get_db),
    feed: ChangeFeed = Depends(get_feed),
    notifications: NotificationService = Depends(get_notification_service),
) -> AdService:
    return AdService(db, feed, notifications)


def get_conversation_service(db: Database = Depends(get_db), feed: ChangeFeed = Depends(get_feed)) -> ConversationService:
    return ConversationService(db, feed)


def get_support_service(
    db: Database = Depends(get_db),
    feed: ChangeFeed = Depends(get_feed),
    notifications: NotificationService = Depends(get_notification_service),
) -> SupportService:
    return SupportService(db, feed, notifications)


def get_admin_service(db: Database = Depends(get_db)) -> AdminService:
    return AdminService(db)


router = APIRouter(prefix="/api")


# Profiles & access management
@router.get("/users/me")
def read_profile(user: Dict[str, Any] = Depends(get_current_user)):
    return user


@router.put("/users/me")
def update_profile(body: ProfileBody, identity: Identity = Depends(get_identity),
                   admin: AdminService = Depends(get_admin_service)):
    return admin.upsert_profile(identity, body.name, body.mobile_number, body.photo_url)


@router.get("/users")
def list_users(user: Dict[str, Any] = Depends(get_current_user), admin: AdminService = Depends(get_admin_service)):
    return {"items": admin.list_users(user)}


@router.post("/users/{uid}/toggle-disabled")
def toggle_user(uid: str, user: Dict[str, Any] = Depends(get_current_user),
                admin: AdminService = Depends(get_admin_service)):
    return admin.toggle_disabled(user, uid)


# Ads
@router.get("/categories")
def list_categories():
    return {"items": [{"name": name, "subcategories": subs} for name, subs in CATEGORIES.items()]}


@router.get("/ads")
def browse_ads(q: Optional[str] = None, category: Optional[str] = None,
               limit: int = Query(50, ge=1, le=200), ads: AdService = Depends(get_ad_service)):
    return {"items": ads.browse(category=category, q=q, limit=limit)}


@router.post("/ads")
def create_ad(body: AdForm, user: Dict[str, Any] = Depends(get_current_user),
              ads: AdService = Depends(get_ad_service), inflight: InFlightGuard = Depends(get_inflight)):
    with inflight.hold(f"{user['uid']}:create-ad"):
        ad_id = ads.create(user, body)
    return {"id": ad_id, "status": "pending"}


@router.get("/ads/mine")
def my_ads(user: Dict[str, Any] = Depends(get_current_user), ads: AdService = Depends(get_ad_service)):
    return {"items": ads.list_mine(user)}


@router.get("/admin/ads")
def moderation_queue(status: Optional[AdStatus] = None, user: Dict[str, Any] = Depends(get_current_user),
                     ads: AdService = Depends(get_ad_service)):
    return {"items": ads.list_for_moderation(user, status=status)}


@router.get("/ads/{ad_id}")
def read_ad(ad_id: str, user: Dict[str, Any] = Depends(get_current_user), ads: AdService = Depends(get_ad_service)):
    return ads.get(user, ad_id)


@router.put("/ads/{ad_id}")
def edit_ad(ad_id: str, body: AdForm, user: Dict[str, Any] = Depends(get_current_user),
            ads: AdService = Depends(get_ad_service)):
    return ads.update(user, ad_id, body)


@router.delete("/ads/{ad_id}")
def delete_ad(ad_id: str, user: Dict[str, Any] = Depends(get_current_user), ads: AdService = Depends(get_ad_service)):
    ads.delete(user, ad_id)
    return {"status": "deleted"}


@router.post("/ads/{ad_id}/approve")
def approve_ad(ad_id: str, user: Dict[str, Any] = Depends(get_current_user), ads: AdService = Depends(get_ad_service)):
    return ads.approve(user, ad_id)


@router.post("/ads/{ad_id}/reject")
def reject_ad(ad_id: str, body: RejectBody, user: Dict[str, Any] = Depends(get_current_user),
              ads: AdService = Depends(get_ad_service)):
    return ads.reject(user, ad_id, body.reason)


# Saved ads
@router.get("/saved")
def saved_ads(user: Dict[str, Any] = Depends(get_current_user), ads: AdService = Depends(get_ad_service)):
    return {"items": ads.list_saved(user)}


@router.put("/saved/{ad_id}")
def save_ad(ad_id: str, user: Dict[str, Any] = Depends(get_current_user), ads: AdService = Depends(get_ad_service)):
    created = ads.save(user, ad_id)
    return {"status": "saved" if created else "already_saved"}


@router.delete("/saved/{ad_id}")
def unsave_ad(ad_id: str, user: Dict[str, Any] = Depends(get_current_user), ads: AdService = Depends(get_ad_service)):
    ads.unsave(user, ad_id)
    return {"status": "removed"}


# Messaging
@router.post("/conversations")
def start_conversation(body: StartConversationBody, user: Dict[str, Any] = Depends(get_current_user),
                       conversations: ConversationService = Depends(get_conversation_service),
                       inflight: InFlightGuard = Depends(get_inflight)):
    with inflight.hold(f"{user['uid']}:start:{body.ad_id}"):
        conversation_id = conversations.start(user, body.ad_id)
    return {"id": conversation_id}


@router.get("/conversations")
def list_conversations(user: Dict[str, Any] = Depends(get_current_user),
                       conversations: ConversationService = Depends(get_conversation_service)):
    return {"items": conversations.list_for_user(user)}


@router.get("/conversations/{conversation_id}")
def open_conversation(conversation_id: str, user: Dict[str, Any] = Depends(get_current_user),
                      conversations: ConversationService = Depends(get_conversation_service)):
    return conversations.open(user, conversation_id)


@router.get("/conversations/{conversation_id}/messages")
def get_messages(conversation_id: str, limit: Optional[int] = Query(None, ge=1, le=500),
                 user: Dict[str, Any] = Depends(get_current_user),
                 conversations: ConversationService = Depends(get_conversation_service)):
    return {"items": conversations.list_messages(user, conversation_id, limit=limit)}


@router.post("/conversations/{conversation_id}/messages")
def send_message(conversation_id: str, body: SendMessageBody, user: Dict[str, Any] = Depends(get_current_user),
                 conversations: ConversationService = Depends(get_conversation_service),
                 inflight: InFlightGuard = Depends(get_inflight)):
    with inflight.hold(f"{user['uid']}:send:{conversation_id}", draft=body.text):
        return conversations.send(user, conversation_id, body.text)


# Notifications
@router.get("/notifications")
def list_notifications(user: Dict[str, Any] = Depends(get_current_user),
                       notifications: NotificationService = Depends(get_notification_service)):
    return {
        "items": notifications.list_for_user(user["uid"]),
        "unread": notifications.unread_count(user["uid"]),
    }


@router.post("/notifications/read-all")
def mark_all_notifications_read(user: Dict[str, Any] = Depends(get_current_user),
                                notifications: NotificationService = Depends(get_notification_service)):
    return {"updated": notifications.mark_all_read(user)}


@router.post("/notifications/broadcast")
def broadcast(body: BroadcastBody, user: Dict[str, Any] = Depends(get_current_user),
              notifications: NotificationService = Depends(get_notification_service),
              inflight: InFlightGuard = Depends(get_inflight)):
    with inflight.hold(f"{user['uid']}:broadcast"):
        sent = notifications.broadcast(user, body.title, body.message)
    return {"sent": sent}


@router.post("/notifications/{notification_id}/read")
def mark_notification_read(notification_id: str, user: Dict[str, Any] = Depends(get_current_user),
                           notifications: NotificationService = Depends(get_notification_service)):
    return notifications.mark_read(user, notification_id)


@router.delete("/notifications/{notification_id}")
def delete_notification(notification_id: str, user: Dict[str, Any] = Depends(get_current_user),
                        notifications: NotificationService = Depends(get_notification_service)):
    notifications.delete(user, notification_id)
    return {"status": "deleted"}


# Support desk
@router.post("/issues")
def report_issue(body: IssueBody, user: Dict[str, Any] = Depends(get_current_user),
                 support: SupportService = Depends(get_support_service),
                 inflight: InFlightGuard = Depends(get_inflight)):
    with inflight.hold(f"{user['uid']}:report-issue"):
        issue_id = support.report_issue(user, body.name, body.email, body.description)
    return {"id": issue_id}


@router.get("/issues/mine")
def my_issues(user: Dict[str, Any] = Depends(get_current_user), support: SupportService = Depends(get_support_service)):
    return {"items": support.list_mine(user)}


@router.get("/issues")
def all_issues(user: Dict[str, Any] = Depends(get_current_user), support: SupportService = Depends(get_support_service)):
    return {"items": support.list_all(user)}


@router.post("/issues/{issue_id}/status")
def update_issue_status(issue_id: str, body: IssueStatusBody, user: Dict[str, Any] = Depends(get_current_user),
                        support: SupportService = Depends(get_support_service)):
    return support.update_status(user, issue_id, body.status)


@router.post("/help-messages")
def send_help_message(body: HelpMessageBody, user: Dict[str, Any] = Depends(get_current_user),
                      support: SupportService = Depends(get_support_service)):
    return {"id": support.send_help_message(user, body.message)}


@router.get("/help-messages")
def list_help_messages(user: Dict[str, Any] = Depends(get_current_user),
                       support: SupportService = Depends(get_support_service)):
    return {"items": support.list_help_messages(user)}


# Site configuration
@router.get("/config/advertisement")
def read_advertisement(admin: AdminService = Depends(get_admin_service)):
    return {"advertisement": admin.get_advertisement()}


@router.put("/config/advertisement")
def set_advertisement(body: AdvertisementBody, user: Dict[str, Any] = Depends(get_current_user),
                      admin: AdminService = Depends(get_admin_service)):
    return admin.set_advertisement(user, body.image_url)


@router.post("/config/advertisement/toggle")
def toggle_advertisement(user: Dict[str, Any] = Depends(get_current_user),
                         admin: AdminService = Depends(get_admin_service)):
    return admin.toggle_advertisement(user)


@router.get("/config/payment")
def read_payment(admin: AdminService = Depends(get_admin_service)):
    return admin.get_payment()


@router.put("/config/payment")
def set_payment(body: PaymentBody, user: Dict[str, Any] = Depends(get_current_user),
                admin: AdminService = Depends(get_admin_service)):
    return admin.set_payment(user, body.upi_id, body.qr_code_url)


# Live snapshot streams
async def _authenticate_ws(websocket: WebSocket, db: Database) -> Optional[Dict[str, Any]]:
    token = websocket.query_params.get("token")
    try:
        if not token:
            raise HTTPException(status_code=401, detail="Missing token")
        return await run_in_threadpool(load_profile, db, decode_token(token))
    except (HTTPException, PermissionDenied) as e:
        logger.info("Websocket refused: %s", getattr(e, "detail", None) or getattr(e, "message", ""))
        await websocket.close(code=1008)
        return None


async def _stream_snapshots(websocket: WebSocket, sub: Subscription) -> None:
    """Send a full snapshot on connect and after every change until the client leaves."""

    async def watch_disconnect():
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
        finally:
            sub.close()

    watcher = asyncio.create_task(watch_disconnect())
    try:
        while not sub.closed:
            snapshot = await sub.next_snapshot()
            if snapshot is None:
                break
            await websocket.send_json(jsonable_encoder(snapshot))
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("Snapshot stream ended: %s", e)
    finally:
        sub.close()
        watcher.cancel()


ws_router = APIRouter(prefix="/ws")


@ws_router.websocket("/conversations")
async def stream_conversations(websocket: WebSocket, db: Database = Depends(get_db)):
    await websocket.accept()
    user = await _authenticate_ws(websocket, db)
    if user is None:
        return
    conversations = ConversationService(db, websocket.app.state.feed)
    sub = websocket.app.state.feed.subscribe(
        [f"inbox:{user['uid']}"], lambda: {"items": conversations.list_for_user(user)}
    )
    await _stream_snapshots(websocket, sub)


@ws_router.websocket("/conversations/{conversation_id}/messages")
async def stream_messages(websocket: WebSocket, conversation_id: str, db: Database = Depends(get_db)):
    await websocket.accept()
    user = await _authenticate_ws(websocket, db)
    if user is None:
        return
    conversations = ConversationService(db, websocket.app.state.feed)
    try:
        await run_in_threadpool(conversations.open, user, conversation_id)
    except MarketplaceError as e:
        logger.info("Message stream refused for %s: %s", conversation_id, e.message)
        await websocket.close(code=1008)
        return

    def snapshot():
        # The viewer is looking at the thread, so anything new counts as read
        conversations.open(user, conversation_id)
        return {"items": conversations.list_messages(user, conversation_id)}

    sub = websocket.app.state.feed.subscribe(
        [f"messages:{conversation_id}", f"conversation:{conversation_id}"], snapshot
    )
    await _stream_snapshots(websocket, sub)


@ws_router.websocket("/notifications")
async def stream_notifications(websocket: WebSocket, db: Database = Depends(get_db)):
    await websocket.accept()
    user = await _authenticate_ws(websocket, db)
    if user is None:
        return
    notifications = NotificationService(db, websocket.app.state.feed)
    sub = websocket.app.state.feed.subscribe(
        [f"notifications:{user['uid']}"],
        lambda: {"items": notifications.list_for_user(user["uid"]), "unread": notifications.unread_count(user["uid"])},
    )
    await _stream_snapshots(websocket, sub)


@ws_router.websocket("/ads/mine")
async def stream_my_ads(websocket: WebSocket, db: Database = Depends(get_db)):
    await websocket.accept()
    user = await _authenticate_ws(websocket, db)
    if user is None:
        return
    ads = AdService(db, websocket.app.state.feed)
    sub = websocket.app.state.feed.subscribe([f"ads:{user['uid']}"], lambda: {"items": ads.list_mine(user)})
    await _stream_snapshots(websocket, sub)


# Error handling
def register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(MarketplaceError)
    async def marketplace_error_handler(request: Request, exc: MarketplaceError):
        if isinstance(exc, PermissionDenied):
            request.app.state.permission_errors.emit(exc)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(PyMongoError)
    async def database_error_handler(request: Request, exc: PyMongoError):
        logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable. Please try again."})

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        errors = [{"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]} for e in exc.errors()]
        return JSONResponse(status_code=422, content={"detail": errors})


def create_app() -> FastAPI:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = FastAPI(title="Gaon Bazaar API", version="1.0.0")
    app.state.feed = ChangeFeed()
    app.state.inflight = InFlightGuard()
    app.state.permission_errors = PermissionErrorChannel()
    app.state.permission_errors.subscribe(log_permission_error)

    origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)
    app.include_router(router)
    app.include_router(ws_router)

    @app.get("/")
    def read_root():
        return {"message": "Gaon Bazaar backend running"}

    @app.get("/health")
    def health(db: Database = Depends(get_db)):
        response = {"backend": "running", "database": "unavailable", "collections": []}
        try:
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "connected"
        except PyMongoError as e:
            response["database"] = f"error: {str(e)[:50]}"
        return response

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
