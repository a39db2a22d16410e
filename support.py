"""Support desk: reported issues and help messages."""

import logging
from typing import Any, Dict, List, Optional

from pymongo.database import Database
from pymongo.errors import PyMongoError

from auth import ensure_admin
from database import create_document, get_documents, serialize, server_timestamp, to_object_id
from errors import InvalidInput, NotFound
from feed import ChangeFeed
from notifications import NotificationService
from schemas import ISSUE_STATUS_ORDER, HelpMessage, Issue

logger = logging.getLogger(__name__)

ISSUE_STATUS_LABELS = {
    'new': 'New',
    'in-progress': 'In progress',
    'resolved': 'Resolved',
}


class SupportService:
    def __init__(self, db: Database, feed: Optional[ChangeFeed] = None,
                 notifications: Optional[NotificationService] = None):
        self.db = db
        self.feed = feed or ChangeFeed()
        self.notifications = notifications or NotificationService(db, self.feed)

    def report_issue(self, user: Dict[str, Any], name: str, email: str, description: str) -> str:
        issue = Issue(name=name.strip(), email=email, description=description.strip(), user_id=user["uid"])
        issue_id = create_document(self.db, "issues", issue)
        logger.info("Issue %s reported by %s", issue_id, user["uid"])
        return issue_id

    def list_mine(self, user: Dict[str, Any]) -> List[Dict[str, Any]]:
        return get_documents(self.db, "issues", {"userId": user["uid"]}, sort=[("createdAt", -1), ("_id", -1)])

    def list_all(self, admin: Dict[str, Any]) -> List[Dict[str, Any]]:
        ensure_admin(admin, path="issues", operation="list")
        return get_documents(self.db, "issues", {}, sort=[("createdAt", -1), ("_id", -1)])

    def update_status(self, admin: Dict[str, Any], issue_id: str, status: str) -> Dict[str, Any]:
        """Advance an issue and tell the reporter. Issues never move backwards."""
        ensure_admin(admin, path=f"issues/{issue_id}", operation="update", payload={"status": status})
        if status not in ISSUE_STATUS_ORDER:
            raise InvalidInput(f"Unknown issue status: {status}")

        issue = self.db.issues.find_one({"_id": to_object_id(issue_id, "Issue")})
        if not issue:
            raise NotFound("Issue not found")

        current = issue.get("status", "new")
        if ISSUE_STATUS_ORDER.index(status) <= ISSUE_STATUS_ORDER.index(current):
            raise InvalidInput(f"Issue is already {current}.")

        changes = {"status": status, "updatedAt": server_timestamp()}
        result = self.db.issues.update_one({"_id": issue["_id"], "status": current}, {"$set": changes})
        if result.matched_count == 0:
            raise InvalidInput("Issue status changed meanwhile; reload and try again.")
        issue.update(changes)
        logger.info("Issue %s moved %s -> %s by %s", issue_id, current, status, admin["uid"])

        if issue.get("userId"):
            try:
                self.notifications.notify(
                    issue["userId"],
                    title="Your issue status was updated",
                    message=f'Your issue is now "{ISSUE_STATUS_LABELS[status]}".',
                    type="issue_status",
                    link="/my-issues",
                )
            except PyMongoError as e:
                logger.error("Issue %s is %s but the reporter was not notified: %s", issue_id, status, e)
        return serialize(issue)

    def send_help_message(self, user: Dict[str, Any], message: str) -> str:
        message = (message or "").strip()
        if not message:
            raise InvalidInput("Message is required.")
        help_message = HelpMessage(user_id=user["uid"], user_email=user["email"], message=message)
        return create_document(self.db, "help_messages", help_message)

    def list_help_messages(self, admin: Dict[str, Any]) -> List[Dict[str, Any]]:
        ensure_admin(admin, path="help_messages", operation="list")
        return get_documents(self.db, "help_messages", {}, sort=[("createdAt", -1), ("_id", -1)])
