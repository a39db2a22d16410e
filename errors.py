"""Error taxonomy shared by the services and the HTTP layer."""

import logging
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class MarketplaceError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message}


class PermissionDenied(MarketplaceError):
    """Caller lacks the role or ownership for the attempted operation."""

    status_code = 403

    def __init__(self, message: str, *, path: str, operation: str, payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.path = path
        self.operation = operation
        self.payload = payload or {}

    def context(self) -> Dict[str, Any]:
        return {"path": self.path, "operation": self.operation, "payload": self.payload}

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "path": self.path, "operation": self.operation}


class NotFound(MarketplaceError):
    status_code = 404


class InvalidInput(MarketplaceError):
    status_code = 422


class Conflict(MarketplaceError):
    status_code = 409

    def __init__(self, message: str, draft: Optional[str] = None):
        super().__init__(message)
        self.draft = draft

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.draft is not None:
            body["draft"] = self.draft
        return body


class BackendUnavailable(MarketplaceError):
    status_code = 503


class MessageNotSent(BackendUnavailable):
    """A message insert failed; ``draft`` holds the text so the sender can retry."""

    def __init__(self, message: str, draft: str):
        super().__init__(message)
        self.draft = draft

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "draft": self.draft}


PermissionListener = Callable[[PermissionDenied], None]


class PermissionErrorChannel:
    """
    Dedicated channel for permission errors.

    The HTTP layer emits every PermissionDenied here before answering, so
    logging or alerting hooks attach in one place instead of at each call site.
    """

    def __init__(self) -> None:
        self._listeners: List[PermissionListener] = []

    def subscribe(self, listener: PermissionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, error: PermissionDenied) -> None:
        for listener in list(self._listeners):
            try:
                listener(error)
            except Exception:
                logger.exception("Permission error listener failed")


def log_permission_error(error: PermissionDenied) -> None:
    logger.warning("Permission denied: %s | context=%s", error.message, error.context())
