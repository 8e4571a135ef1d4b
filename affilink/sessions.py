"""
In-flight affiliate link sessions, keyed by automation surface handle.
"""

import os
import random
import string
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


SESSION_TTL_SECONDS = float(os.getenv("SESSION_TTL_SECONDS", "300"))

SUB_ID_ALPHABET = string.digits + string.ascii_lowercase
SUB_ID_LENGTH = 16


def generate_sub_id() -> str:
    """Generate a random attribution token."""
    return "".join(random.choices(SUB_ID_ALPHABET, k=SUB_ID_LENGTH))


class SessionState(str, Enum):
    """Workflow states of a session."""
    RESOLVING = "resolving"
    SURFACE_OPENED = "surface_opened"
    SCRAPED = "scraped"
    LINK_PAGE_LOADED = "link_page_loaded"
    LINK_GENERATED = "link_generated"
    REPORTED = "reported"
    ABANDONED = "abandoned"


@dataclass
class Session:
    """One affiliate link request bound to one automation surface."""
    surface_handle: int
    request_id: Any
    user_id: Any
    product_url: str
    product_data: Optional[Dict[str, Any]] = None
    sub_id: Optional[str] = None
    is_direct_link: bool = False
    state: SessionState = SessionState.SURFACE_OPENED
    created_at: float = field(default_factory=time.monotonic)

    def ensure_sub_id(self) -> str:
        """Assign the sub ID if unset. Never reassigns."""
        if not self.sub_id:
            self.sub_id = generate_sub_id()
        return self.sub_id

    def summary(self) -> Dict[str, Any]:
        return {
            "surface_handle": self.surface_handle,
            "request_id": self.request_id,
            "user_id": self.user_id,
            "product_url": self.product_url,
            "state": self.state.value,
            "is_direct_link": self.is_direct_link,
            "has_product_data": self.product_data is not None,
            "sub_id": self.sub_id,
        }


class SessionStore:
    """Mapping of surface handle to session, owned by the workflow."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._sessions: Dict[int, Session] = {}
        self._clock = clock

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, handle: int) -> Optional[Session]:
        return self._sessions.get(handle)

    def set(self, handle: int, session: Session) -> None:
        """Store a session. A handle is only reused after its prior session is retired."""
        existing = self._sessions.get(handle)
        if existing is not None and existing is not session:
            raise ValueError(f"Surface {handle} already has an active session")
        session.created_at = self._clock()
        self._sessions[handle] = session

    def delete(self, handle: int) -> Optional[Session]:
        return self._sessions.pop(handle, None)

    def has(self, handle: int) -> bool:
        return handle in self._sessions

    def all(self) -> List[Session]:
        return list(self._sessions.values())

    def expired(self, max_age: float = SESSION_TTL_SECONDS) -> List[int]:
        """Handles of sessions older than max_age seconds."""
        now = self._clock()
        return [
            handle for handle, session in self._sessions.items()
            if now - session.created_at > max_age
        ]
