"""Administration: profiles, access management and site configuration."""

import logging
from typing import Any, Dict, List, Optional

from pymongo.database import Database

from auth import Identity, ensure_admin
from database import server_timestamp
from errors import InvalidInput, NotFound
from schemas import AdvertisementConfig, PaymentConfig, UserProfile

logger = logging.getLogger(__name__)


def _profile_out(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(doc)
    out["uid"] = out.pop("_id")
    return out


class AdminService:
    def __init__(self, db: Database):
        self.db = db

    # Profiles

    def upsert_profile(self, identity: Identity, name: Optional[str], mobile_number: Optional[str],
                       photo_url: Optional[str] = None) -> Dict[str, Any]:
        """
        Create or update the caller's own profile.

        New profiles always start as Farmer; role and disabled are never
        writable here.
        """
        existing = self.db.users.find_one({"_id": identity.uid})
        email = (existing or {}).get("email") or identity.email
        if not email:
            raise InvalidInput("An email address is required to create a profile.")

        profile = UserProfile(email=email, name=name, mobile_number=mobile_number, photo_url=photo_url)
        changes = profile.model_dump(by_alias=True, mode="json", exclude_none=True, exclude={"role", "disabled"})
        changes["updatedAt"] = server_timestamp()
        self.db.users.update_one(
            {"_id": identity.uid},
            {"$set": changes, "$setOnInsert": {"role": "Farmer", "disabled": False, "createdAt": server_timestamp()}},
            upsert=True,
        )
        if not existing:
            logger.info("Profile created for %s", identity.uid)
        return self.get_profile(identity.uid)

    def get_profile(self, uid: str) -> Dict[str, Any]:
        doc = self.db.users.find_one({"_id": uid})
        if not doc:
            raise NotFound("User not found")
        return _profile_out(doc)

    # Access management

    def list_users(self, admin: Dict[str, Any]) -> List[Dict[str, Any]]:
        ensure_admin(admin, path="users", operation="list")
        return [_profile_out(u) for u in self.db.users.find({}).sort([("createdAt", -1), ("_id", 1)])]

    def toggle_disabled(self, admin: Dict[str, Any], uid: str) -> Dict[str, Any]:
        """Flip a user's disabled flag and return the stored profile."""
        ensure_admin(admin, path=f"users/{uid}", operation="update", payload={"field": "disabled"})
        if uid == admin["uid"]:
            raise InvalidInput("You cannot disable your own account.")
        user = self.db.users.find_one({"_id": uid})
        if not user:
            raise NotFound("User not found")

        disabled = not user.get("disabled", False)
        self.db.users.update_one({"_id": uid}, {"$set": {"disabled": disabled}})
        logger.info("User %s %s by %s", uid, "disabled" if disabled else "enabled", admin["uid"])
        return self.get_profile(uid)

    # Site configuration

    def get_advertisement(self) -> Optional[Dict[str, Any]]:
        """Return the banner only while it is enabled."""
        doc = self.db.config.find_one({"_id": "advertisement"})
        if not doc or not doc.get("enabled", True):
            return None
        doc.pop("_id")
        return doc

    def set_advertisement(self, admin: Dict[str, Any], image_url: str) -> Dict[str, Any]:
        ensure_admin(admin, path="config/advertisement", operation="write", payload={"imageUrl": image_url})
        data = AdvertisementConfig(image_url=image_url).model_dump(by_alias=True, mode="json")
        data["lastUpdated"] = server_timestamp()
        self.db.config.update_one({"_id": "advertisement"}, {"$set": data}, upsert=True)
        return self._config("advertisement")

    def toggle_advertisement(self, admin: Dict[str, Any]) -> Dict[str, Any]:
        ensure_admin(admin, path="config/advertisement", operation="update", payload={"field": "enabled"})
        doc = self.db.config.find_one({"_id": "advertisement"})
        if not doc:
            raise NotFound("No advertisement has been configured.")
        enabled = not doc.get("enabled", True)
        self.db.config.update_one(
            {"_id": "advertisement"}, {"$set": {"enabled": enabled, "lastUpdated": server_timestamp()}}
        )
        return self._config("advertisement")

    def get_payment(self) -> Dict[str, Any]:
        doc = self.db.config.find_one({"_id": "payment"}) or {}
        doc.pop("_id", None)
        return doc

    def set_payment(self, admin: Dict[str, Any], upi_id: Optional[str], qr_code_url: Optional[str]) -> Dict[str, Any]:
        ensure_admin(admin, path="config/payment", operation="write", payload={"upiId": upi_id})
        data = PaymentConfig(upi_id=upi_id, qr_code_url=qr_code_url).model_dump(by_alias=True, mode="json", exclude_none=True)
        if data:
            self.db.config.update_one({"_id": "payment"}, {"$set": data}, upsert=True)
        return self.get_payment()

    def _config(self, name: str) -> Dict[str, Any]:
        doc = self.db.config.find_one({"_id": name})
        doc.pop("_id")
        return doc
