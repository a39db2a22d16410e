"""
Ad Service

Ad CRUD, visibility rules, the moderation state machine and saved ads.

Moderation: pending -> approved | rejected. Both transitions are admin-only,
both notify the owner, and neither state can be left again.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from pymongo.database import Database
from pymongo.errors import PyMongoError

from auth import ensure_admin, is_admin
from database import create_document, get_documents, serialize, server_timestamp, to_object_id
from errors import InvalidInput, NotFound, PermissionDenied
from feed import ChangeFeed
from notifications import NotificationService
from schemas import Ad, AdForm, SavedAd

logger = logging.getLogger(__name__)


def is_visible_to(ad: Dict[str, Any], uid: Optional[str]) -> bool:
    return ad.get("status") == "approved" or (uid is not None and ad.get("userId") == uid)


class AdService:
    """Service for managing ads"""

    def __init__(self, db: Database, feed: Optional[ChangeFeed] = None,
                 notifications: Optional[NotificationService] = None):
        self.db = db
        self.feed = feed or ChangeFeed()
        self.notifications = notifications or NotificationService(db, self.feed)

    def _load(self, ad_id: str) -> Dict[str, Any]:
        ad = self.db.ads.find_one({"_id": to_object_id(ad_id, "Ad")})
        if not ad:
            raise NotFound("Ad not found")
        return ad

    def create(self, user: Dict[str, Any], form: AdForm) -> str:
        ad = Ad(
            **form.model_dump(),
            user_id=user["uid"],
            user_name=user.get("name") or user.get("email", ""),
            status="pending",
        )
        ad_id = create_document(self.db, "ads", ad)
        logger.info("Ad %s submitted by %s for review", ad_id, user["uid"])
        self.feed.publish(f"ads:{user['uid']}")
        return ad_id

    def get(self, user: Dict[str, Any], ad_id: str) -> Dict[str, Any]:
        """Fetch one ad. Non-owners only ever see approved ads."""
        ad = self._load(ad_id)
        if not is_visible_to(ad, user["uid"]):
            raise NotFound("This ad is not currently available for viewing.")
        return serialize(ad)

    def browse(self, category: Optional[str] = None, q: Optional[str] = None,
               limit: int = 50) -> List[Dict[str, Any]]:
        filter_q: Dict[str, Any] = {"status": "approved"}
        if category:
            filter_q["category"] = category
        if q and q.strip():
            pattern = {"$regex": re.escape(q.strip()), "$options": "i"}
            filter_q["$or"] = [{"title": pattern}, {"description": pattern}, {"location": pattern}]
        return get_documents(self.db, "ads", filter_q, sort=[("createdAt", -1), ("_id", -1)], limit=limit)

    def list_mine(self, user: Dict[str, Any]) -> List[Dict[str, Any]]:
        return get_documents(self.db, "ads", {"userId": user["uid"]}, sort=[("createdAt", -1), ("_id", -1)])

    def list_for_moderation(self, admin: Dict[str, Any], status: Optional[str] = None) -> List[Dict[str, Any]]:
        ensure_admin(admin, path="ads", operation="list")
        filter_q = {"status": status} if status else {}
        ads = get_documents(self.db, "ads", filter_q, sort=[("createdAt", -1), ("_id", -1)])

        owner_ids = list({ad["userId"] for ad in ads})
        emails = {u["_id"]: u.get("email") for u in self.db.users.find({"_id": {"$in": owner_ids}})}
        for ad in ads:
            ad["userEmail"] = emails.get(ad["userId"]) or "Unknown User"
        return ads

    def update(self, user: Dict[str, Any], ad_id: str, form: AdForm) -> Dict[str, Any]:
        """Owner edit. Replaces the form fields; moderation status is untouched."""
        ad = self._load(ad_id)
        changes = form.model_dump(by_alias=True, mode="json")
        if ad["userId"] != user["uid"]:
            raise PermissionDenied(
                "Only the owner can edit this ad.",
                path=f"ads/{ad_id}",
                operation="update",
                payload=changes,
            )
        changes["updatedAt"] = server_timestamp()
        self.db.ads.update_one({"_id": ad["_id"]}, {"$set": changes})
        ad.update(changes)
        self.feed.publish(f"ads:{ad['userId']}")
        return serialize(ad)

    def delete(self, user: Dict[str, Any], ad_id: str) -> None:
        ad = self._load(ad_id)
        if ad["userId"] != user["uid"] and not is_admin(user):
            raise PermissionDenied(
                "Only the owner or an administrator can delete this ad.",
                path=f"ads/{ad_id}",
                operation="delete",
            )
        self.db.ads.delete_one({"_id": ad["_id"]})
        self.db.saved_ads.delete_many({"adId": ad_id})
        logger.info("Ad %s deleted by %s", ad_id, user["uid"])
        self.feed.publish(f"ads:{ad['userId']}")

    # Moderation

    def _transition(self, admin: Dict[str, Any], ad_id: str, status: str,
                    extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        changes = {"status": status, "updatedAt": server_timestamp()}
        changes.update(extra or {})
        ensure_admin(admin, path=f"ads/{ad_id}", operation="update", payload=changes)

        ad = self._load(ad_id)
        if ad.get("status") != "pending":
            raise InvalidInput(f"Ad has already been {ad.get('status')}.")

        # Conditional on pending so two moderators cannot both transition it
        result = self.db.ads.update_one({"_id": ad["_id"], "status": "pending"}, {"$set": changes})
        if result.matched_count == 0:
            current = self._load(ad_id)
            raise InvalidInput(f"Ad has already been {current.get('status')}.")

        ad.update(changes)
        logger.info("Ad %s %s by %s", ad_id, status, admin["uid"])
        self.feed.publish(f"ads:{ad['userId']}")
        return ad

    def _notify_owner(self, ad: Dict[str, Any], title: str, message: str, link: str) -> None:
        # Runs after the status change is committed
        try:
            self.notifications.notify(ad["userId"], title=title, message=message, type="ad_status", link=link)
        except PyMongoError as e:
            logger.error("Ad %s is %s but its owner was not notified: %s", ad["_id"], ad["status"], e)

    def approve(self, admin: Dict[str, Any], ad_id: str) -> Dict[str, Any]:
        ad = self._transition(admin, ad_id, "approved")
        self._notify_owner(
            ad,
            title="Your ad was approved",
            message=f'Your ad "{ad.get("title", "")}" is now live.',
            link=f"/ad/{ad_id}",
        )
        return serialize(ad)

    def reject(self, admin: Dict[str, Any], ad_id: str, reason: str) -> Dict[str, Any]:
        ensure_admin(admin, path=f"ads/{ad_id}", operation="update", payload={"status": "rejected"})
        reason = (reason or "").strip()
        if not reason:
            raise InvalidInput("A rejection reason is required.")

        ad = self._transition(admin, ad_id, "rejected", {"rejectionReason": reason})
        self._notify_owner(
            ad,
            title="Your ad was rejected",
            message=f'Your ad "{ad.get("title", "")}" was rejected. Reason: {reason}',
            link="/my-ads",
        )
        return serialize(ad)

    # Saved ads

    def save(self, user: Dict[str, Any], ad_id: str) -> bool:
        """Save an ad for later. Returns False when it was already saved."""
        ad = self._load(ad_id)
        if not is_visible_to(ad, user["uid"]):
            raise NotFound("This ad is not currently available for viewing.")

        saved = SavedAd(user_id=user["uid"], ad_id=ad_id).model_dump(by_alias=True)
        saved["createdAt"] = server_timestamp()
        result = self.db.saved_ads.update_one(
            {"_id": f"{user['uid']}:{ad_id}"}, {"$setOnInsert": saved}, upsert=True
        )
        return result.upserted_id is not None

    def unsave(self, user: Dict[str, Any], ad_id: str) -> None:
        self.db.saved_ads.delete_one({"_id": f"{user['uid']}:{ad_id}"})

    def list_saved(self, user: Dict[str, Any]) -> List[Dict[str, Any]]:
        saved = list(self.db.saved_ads.find({"userId": user["uid"]}).sort([("createdAt", -1), ("_id", -1)]))
        object_ids = [to_object_id(s["adId"], "Ad") for s in saved]
        ads = {str(a["_id"]): a for a in self.db.ads.find({"_id": {"$in": object_ids}})}

        # Ads deleted or taken out of view since saving are skipped
        out = []
        for s in saved:
            ad = ads.get(s["adId"])
            if ad and is_visible_to(ad, user["uid"]):
                out.append(serialize(ad))
        return out
