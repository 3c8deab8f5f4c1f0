"""
In-memory session store.

Keeps a bidirectional index (token -> phone number, phone number -> token) so
authentication is a single dictionary lookup. A new session for a number
supersedes the previous token, which stops resolving immediately.
"""

import logging
import threading
from typing import Optional

from messenger.utils import generate_session_token

logger = logging.getLogger(__name__)


class SessionManager:
    def __init__(self):
        self._lock = threading.Lock()
        self._phone_by_token: dict[str, str] = {}
        self._token_by_phone: dict[str, str] = {}

    def create_session(self, phone_number: str) -> str:
        token = generate_session_token()
        with self._lock:
            previous = self._token_by_phone.get(phone_number)
            if previous is not None:
                del self._phone_by_token[previous]
            self._token_by_phone[phone_number] = token
            self._phone_by_token[token] = phone_number

        if previous is not None:
            logger.info("Session superseded", extra={"phone_number": phone_number})
        logger.info("Session created", extra={"phone_number": phone_number})
        return token

    def resolve(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        with self._lock:
            return self._phone_by_token.get(token)

    def token_for(self, phone_number: str) -> Optional[str]:
        with self._lock:
            return self._token_by_phone.get(phone_number)

    def __len__(self) -> int:
        with self._lock:
            return len(self._token_by_phone)
