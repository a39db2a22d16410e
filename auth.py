"""Caller identity for FastAPI routes.

The identity provider signs a bearer token whose ``sub`` claim is the caller's
uid. Sign-in itself happens elsewhere; this module only answers "who is
calling" and "what may they do".
"""
import logging
import os
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Request, status
from jose import JWTError, jwt
from pydantic import BaseModel
from pymongo.database import Database

from database import get_db
from errors import PermissionDenied

logger = logging.getLogger(__name__)

AUTH_SECRET = os.getenv("AUTH_SECRET", "dev-secret-change-me")
AUTH_ALGORITHM = os.getenv("AUTH_ALGORITHM", "HS256")


class Identity(BaseModel):
    """Caller information extracted from the token."""
    uid: str
    email: Optional[str] = None


def decode_token(token: str) -> Identity:
    try:
        payload = jwt.decode(token, AUTH_SECRET, algorithms=[AUTH_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )

    uid = payload.get("sub")
    if not uid:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing user ID",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return Identity(uid=uid, email=payload.get("email"))


def get_identity(request: Request) -> Identity:
    auth_header = request.headers.get("authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid Authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return decode_token(auth_header[7:])


def load_profile(database: Database, identity: Identity) -> Dict[str, Any]:
    """Return the caller's profile, refusing unknown or disabled accounts."""
    profile = database.users.find_one({"_id": identity.uid})
    if not profile:
        raise PermissionDenied(
            "Create your profile first.",
            path=f"users/{identity.uid}",
            operation="get",
        )
    if profile.get("disabled"):
        raise PermissionDenied(
            "This account has been disabled.",
            path=f"users/{identity.uid}",
            operation="get",
        )
    profile["uid"] = profile.pop("_id")
    return profile


def get_current_user(identity: Identity = Depends(get_identity), database: Database = Depends(get_db)) -> Dict[str, Any]:
    return load_profile(database, identity)


def is_admin(user: Dict[str, Any]) -> bool:
    return user.get("role") == "Admin"


def ensure_admin(user: Dict[str, Any], path: str, operation: str, payload: Optional[Dict[str, Any]] = None) -> None:
    """Fail fast before an admin-only write instead of relying on the store to refuse it."""
    if not is_admin(user):
        logger.info("Non-admin %s attempted %s on %s", user.get("uid"), operation, path)
        raise PermissionDenied(
            "You do not have permission to perform this action.",
            path=path,
            operation=operation,
            payload=payload,
        )

