"""
Notification Service

Per-user informational records created as side effects of moderation and
support-desk status changes, plus administrator broadcasts.
"""

import logging
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pymongo.database import Database
from pymongo.errors import PyMongoError

from auth import ensure_admin, is_admin
from database import create_document, get_documents, serialize, server_timestamp, to_object_id
from errors import BackendUnavailable, InvalidInput, NotFound, PermissionDenied
from feed import ChangeFeed
from schemas import Notification

logger = logging.getLogger(__name__)


class NotificationService:
    """Service for creating and managing notifications"""

    def __init__(self, db: Database, feed: Optional[ChangeFeed] = None):
        self.db = db
        self.feed = feed or ChangeFeed()

    def notify(self, user_id: str, title: str, message: str, type: str, link: Optional[str] = None) -> str:
        """Create one notification for one recipient."""
        notification = Notification(user_id=user_id, title=title, message=message, link=link, type=type)
        notification_id = create_document(self.db, "notifications", notification)
        logger.info("Notification %s (%s) created for user %s", notification_id, type, user_id)
        self.feed.publish(f"notifications:{user_id}")
        return notification_id

    def broadcast(self, admin: Dict[str, Any], title: str, message: str) -> int:
        """
        Send one notification to every user that exists right now.

        All notifications go out as a single batch sharing a batchId. If the
        batch fails part way, whatever landed is removed again so the outcome
        is all or nothing. Returns the number of notifications created.
        """
        ensure_admin(admin, path="notifications", operation="broadcast", payload={"title": title})

        title = (title or "").strip()
        message = (message or "").strip()
        if not title or not message:
            raise InvalidInput("Title and message are required.")

        try:
            user_ids = [u["_id"] for u in self.db.users.find({}, {"_id": 1})]
        except PyMongoError as e:
            logger.error("Broadcast aborted, could not enumerate users: %s", e)
            raise BackendUnavailable("Could not send the broadcast. Please try again.")

        if not user_ids:
            logger.info("Broadcast skipped: no users")
            return 0

        batch_id = uuid4().hex
        created_at = server_timestamp()
        docs = []
        for uid in user_ids:
            doc = Notification(
                user_id=uid, title=title, message=message, type="broadcast", batch_id=batch_id
            ).model_dump(by_alias=True, mode="json", exclude_none=True)
            doc["createdAt"] = created_at
            doc["updatedAt"] = created_at
            docs.append(doc)

        try:
            self.db.notifications.insert_many(docs, ordered=True)
        except PyMongoError as e:
            logger.error("Broadcast batch %s failed: %s", batch_id, e)
            self._discard_batch(batch_id)
            raise BackendUnavailable("Could not send the broadcast. Please try again.")

        logger.info("Broadcast batch %s sent to %d users", batch_id, len(docs))
        self.feed.publish(*[f"notifications:{uid}" for uid in user_ids])
        return len(docs)

    def _discard_batch(self, batch_id: str) -> None:
        try:
            removed = self.db.notifications.delete_many({"batchId": batch_id}).deleted_count
            if removed:
                logger.warning("Removed %d partial notifications of batch %s", removed, batch_id)
        except PyMongoError:
            logger.exception("Could not remove partial broadcast batch %s", batch_id)

    def list_for_user(self, user_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return get_documents(
            self.db, "notifications", {"userId": user_id},
            sort=[("createdAt", -1), ("_id", -1)], limit=limit,
        )

    def unread_count(self, user_id: str) -> int:
        return self.db.notifications.count_documents({"userId": user_id, "isRead": False})

    def _get_owned(self, user: Dict[str, Any], notification_id: str, operation: str) -> Dict[str, Any]:
        doc = self.db.notifications.find_one({"_id": to_object_id(notification_id, "Notification")})
        if not doc:
            raise NotFound("Notification not found")
        if doc["userId"] != user["uid"] and not (operation == "delete" and is_admin(user)):
            raise PermissionDenied(
                "This notification belongs to another user.",
                path=f"notifications/{notification_id}",
                operation=operation,
            )
        return doc

    def mark_read(self, user: Dict[str, Any], notification_id: str) -> Dict[str, Any]:
        doc = self._get_owned(user, notification_id, "update")
        if not doc.get("isRead"):
            self.db.notifications.update_one({"_id": doc["_id"]}, {"$set": {"isRead": True}})
            doc["isRead"] = True
            self.feed.publish(f"notifications:{doc['userId']}")
        return serialize(doc)

    def mark_all_read(self, user: Dict[str, Any]) -> int:
        result = self.db.notifications.update_many(
            {"userId": user["uid"], "isRead": False}, {"$set": {"isRead": True}}
        )
        if result.modified_count:
            self.feed.publish(f"notifications:{user['uid']}")
        return result.modified_count

    def delete(self, user: Dict[str, Any], notification_id: str) -> None:
        doc = self._get_owned(user, notification_id, "delete")
        self.db.notifications.delete_one({"_id": doc["_id"]})
        logger.info("Notification %s deleted by %s", notification_id, user["uid"])
        self.feed.publish(f"notifications:{doc['userId']}")
