"""
Conversation Service

Buyer/seller chat scoped to one ad and exactly two participants.

A conversation record carries denormalized display data (ad title and photo,
both participants' names and photos) and a summary of the last message, so
an inbox renders from one query. ``unreadBy`` holds one flag per participant
and is only ever written field by field (``unreadBy.<uid>``), which lets the
sender's and the reader's writes merge instead of overwriting each other.
"""

import hashlib
import logging
from typing import Any, Dict, List, Optional

from pymongo.database import Database
from pymongo.errors import PyMongoError

from ads import is_visible_to
from database import serialize, server_timestamp, to_object_id
from errors import InvalidInput, MessageNotSent, NotFound, PermissionDenied
from feed import ChangeFeed
from schemas import Conversation, Message, ParticipantProfile

logger = logging.getLogger(__name__)


def conversation_id_for(ad_id: str, a: str, b: str) -> str:
    """Stable id for the (ad, unordered pair) combination."""
    first, second = sorted([a, b])
    return hashlib.sha256(f"{ad_id}|{first}|{second}".encode("utf-8")).hexdigest()


class ConversationService:
    """Service for managing conversations and messages"""

    def __init__(self, db: Database, feed: Optional[ChangeFeed] = None):
        self.db = db
        self.feed = feed or ChangeFeed()

    def _publish(self, conversation: Dict[str, Any], messages: bool = False) -> None:
        topics = [f"conversation:{conversation['_id']}"]
        topics += [f"inbox:{uid}" for uid in conversation["participants"]]
        if messages:
            topics.append(f"messages:{conversation['_id']}")
        self.feed.publish(*topics)

    def _find_existing(self, ad_id: str, viewer_id: str, owner_id: str) -> Optional[Dict[str, Any]]:
        existing = self.db.conversations.find_one({"_id": conversation_id_for(ad_id, viewer_id, owner_id)})
        if existing:
            return existing
        # Records created before ids were derived from the pair
        for convo in self.db.conversations.find({"adId": ad_id, "participants": viewer_id}):
            if owner_id in convo.get("participants", []):
                return convo
        return None

    def _profile(self, uid: str) -> ParticipantProfile:
        profile = self.db.users.find_one({"_id": uid})
        if not profile:
            raise NotFound("Could not load the participant's profile.")
        photo = profile.get("photoURL")
        return ParticipantProfile(name=profile.get("name") or profile.get("email", ""), photoURL=photo)

    def start(self, viewer: Dict[str, Any], ad_id: str) -> str:
        """
        Return the conversation between the viewer and the ad's owner,
        creating it on first contact.

        Repeated calls return the same id. The insert is an upsert keyed by
        the derived id, so two simultaneous first contacts converge on one
        record. No record is written unless both profiles could be read.
        """
        ad = self.db.ads.find_one({"_id": to_object_id(ad_id, "Ad")})
        if not ad:
            raise NotFound("Ad not found")
        viewer_id = viewer["uid"]
        if not is_visible_to(ad, viewer_id):
            raise NotFound("This ad is not currently available for viewing.")
        owner_id = ad["userId"]
        if viewer_id == owner_id:
            raise InvalidInput("You cannot start a conversation about your own ad.")

        existing = self._find_existing(ad_id, viewer_id, owner_id)
        if existing:
            return str(existing["_id"])

        profiles = {viewer_id: self._profile(viewer_id), owner_id: self._profile(owner_id)}
        photos = ad.get("photos") or []
        conversation = Conversation(
            ad_id=ad_id,
            ad_title=ad.get("title", ""),
            ad_photo=photos[0] if photos else "",
            participants=[viewer_id, owner_id],
            participant_profiles=profiles,
            unread_by={viewer_id: False, owner_id: True},
        )
        doc = conversation.model_dump(by_alias=True)
        doc["lastMessageTimestamp"] = None
        doc["createdAt"] = server_timestamp()

        conversation_id = conversation_id_for(ad_id, viewer_id, owner_id)
        result = self.db.conversations.update_one(
            {"_id": conversation_id}, {"$setOnInsert": doc}, upsert=True
        )
        if result.upserted_id is not None:
            logger.info("Conversation %s created for ad %s", conversation_id, ad_id)
            doc["_id"] = conversation_id
            self._publish(doc)
        return conversation_id

    def _load(self, user: Dict[str, Any], conversation_id: str, operation: str = "get") -> Dict[str, Any]:
        convo = self.db.conversations.find_one({"_id": conversation_id})
        if not convo:
            raise NotFound("Conversation not found")
        if user["uid"] not in convo.get("participants", []):
            raise PermissionDenied(
                "You are not part of this conversation.",
                path=f"conversations/{conversation_id}",
                operation=operation,
            )
        return convo

    def open(self, user: Dict[str, Any], conversation_id: str) -> Dict[str, Any]:
        """
        Return a conversation for one of its participants and clear their
        unread flag. Clearing is best effort: a failed write is logged and the
        conversation is still returned.
        """
        convo = self._load(user, conversation_id)
        uid = user["uid"]
        if convo.get("unreadBy", {}).get(uid):
            try:
                self.db.conversations.update_one({"_id": conversation_id}, {"$set": {f"unreadBy.{uid}": False}})
                convo["unreadBy"][uid] = False
                self._publish(convo)
            except PyMongoError as e:
                logger.warning("Could not mark conversation %s read for %s: %s", conversation_id, uid, e)
        return serialize(convo)

    def list_for_user(self, user: Dict[str, Any]) -> List[Dict[str, Any]]:
        cursor = self.db.conversations.find({"participants": user["uid"]})
        convos = [serialize(c) for c in cursor]
        # Newest activity first; conversations without messages go last
        with_messages = [c for c in convos if c.get("lastMessageTimestamp") is not None]
        without = [c for c in convos if c.get("lastMessageTimestamp") is None]
        with_messages.sort(key=lambda c: c["lastMessageTimestamp"], reverse=True)
        return with_messages + without

    def list_messages(self, user: Dict[str, Any], conversation_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        self._load(user, conversation_id)
        return self._messages(conversation_id, limit)

    def _messages(self, conversation_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        cursor = self.db.messages.find({"conversationId": conversation_id}).sort([("timestamp", 1), ("_id", 1)])
        if limit:
            cursor = cursor.limit(limit)
        return [serialize(m) for m in cursor]

    def send(self, user: Dict[str, Any], conversation_id: str, text: str) -> Dict[str, Any]:
        """
        Append a message, then update the conversation summary.

        If the message insert fails the summary is left alone and
        MessageNotSent carries the text back for the sender to retry.
        """
        text = (text or "").strip()
        if not text:
            raise InvalidInput("Message text is required.")

        convo = self._load(user, conversation_id, operation="create")
        sender_id = user["uid"]
        recipient_id = next(p for p in convo["participants"] if p != sender_id)

        message = Message(conversation_id=conversation_id, text=text, sender_id=sender_id)
        doc = message.model_dump(by_alias=True)
        doc["timestamp"] = server_timestamp()
        try:
            result = self.db.messages.insert_one(doc)
        except PyMongoError as e:
            logger.error("Message to conversation %s not sent: %s", conversation_id, e)
            raise MessageNotSent("Failed to send the message. Please try again.", draft=text)
        doc["_id"] = result.inserted_id

        summary = {
            "lastMessage": text,
            "lastMessageSenderId": sender_id,
            "lastMessageTimestamp": doc["timestamp"],
            f"unreadBy.{recipient_id}": True,
        }
        try:
            self.db.conversations.update_one({"_id": conversation_id}, {"$set": summary})
        except PyMongoError:
            # The message itself is stored; only the inbox preview is stale
            logger.exception("Conversation %s summary not updated after message %s", conversation_id, doc["_id"])
        self._publish(convo, messages=True)
        return serialize(doc)
