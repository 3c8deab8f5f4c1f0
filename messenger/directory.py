"""
User/contact directory.

Identities are keyed by phone number and created lazily: on a phone check,
when named as a message recipient, or when loaded from storage. Each write is
persisted before it becomes visible in memory, so a StorageError leaves the
directory unchanged.
"""

import logging
import threading
from dataclasses import dataclass, replace
from typing import Callable, Iterable, Optional

from messenger.errors import NotFoundError, UsernameAlreadySetError, UsernameTakenError
from messenger.utils import clean_phone_query, format_timestamp, looks_like_phone_number, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    phone_number: str
    username: Optional[str]
    registered_at: str


@dataclass(frozen=True)
class DirectoryEntry:
    """A search result: an existing identity or a not-yet-a-contact placeholder."""
    phone_number: str
    username: Optional[str]
    exists: bool

    @property
    def is_new_contact(self) -> bool:
        return not self.exists


class Directory:
    def __init__(self, repository, clock: Callable = utc_now):
        self._repository = repository
        self._clock = clock
        self._lock = threading.Lock()
        self._identities: dict[str, Identity] = {}
        # lower-cased username -> phone number
        self._usernames: dict[str, str] = {}

    def load(self) -> int:
        """Replace in-memory state with the persisted collection."""
        rows = self._repository.load_all()
        with self._lock:
            self._identities.clear()
            self._usernames.clear()
            for row in rows:
                identity = Identity(row.phone_number, row.username, row.registered_at)
                self._identities[identity.phone_number] = identity
                if identity.username:
                    self._usernames[identity.username.lower()] = identity.phone_number
        logger.info(f"Directory loaded: {len(rows)} identities")
        return len(rows)

    def seed(self, phone_numbers: Iterable[str]) -> None:
        """Create demo identities, but only into an empty directory."""
        with self._lock:
            if self._identities:
                return
        for phone_number in phone_numbers:
            self.get_or_create(phone_number)

    def get_or_create(self, phone_number: str) -> Identity:
        with self._lock:
            identity = self._identities.get(phone_number)
            if identity is not None:
                return identity

            identity = Identity(
                phone_number=phone_number,
                username=None,
                registered_at=format_timestamp(self._clock()),
            )
            self._repository.insert(identity)
            self._identities[phone_number] = identity

        logger.info("Identity created", extra={"phone_number": phone_number})
        return identity

    def find(self, phone_number: str) -> Optional[Identity]:
        with self._lock:
            return self._identities.get(phone_number)

    def set_username(self, phone_number: str, username: str) -> Identity:
        """
        Claim a username for an identity, exactly once.

        Raises:
            NotFoundError: the identity does not exist
            UsernameAlreadySetError: the identity already has a username
            UsernameTakenError: another identity holds it (case-insensitive)
        """
        key = username.lower()
        with self._lock:
            identity = self._identities.get(phone_number)
            if identity is None:
                raise NotFoundError("user not found")
            if identity.username:
                raise UsernameAlreadySetError("username already set")
            if key in self._usernames:
                raise UsernameTakenError("username already taken")

            self._repository.update_username(phone_number, username)
            identity = replace(identity, username=username)
            self._identities[phone_number] = identity
            self._usernames[key] = phone_number

        logger.info("Username set", extra={"phone_number": phone_number, "username": username})
        return identity

    def all(self, exclude: Optional[str] = None) -> list[Identity]:
        with self._lock:
            return [i for i in self._identities.values() if i.phone_number != exclude]

    def search(self, query: str, exclude: Optional[str] = None) -> list[DirectoryEntry]:
        """
        Case-insensitive substring search over phone numbers and usernames.

        A phone-like query that no known number contains yields a placeholder
        entry at the front of the results. Searching never creates identities.
        """
        needle = (query or "").strip().lower()
        phone_like = looks_like_phone_number(needle)
        cleaned = clean_phone_query(needle) if phone_like else None
        with self._lock:
            identities = list(self._identities.values())

        results = [
            DirectoryEntry(i.phone_number, i.username, exists=True)
            for i in identities
            if i.phone_number != exclude
            and (needle in i.phone_number.lower()
                 or (cleaned and cleaned in i.phone_number)
                 or (i.username is not None and needle in i.username.lower()))
        ]

        if phone_like:
            known = any(cleaned in i.phone_number for i in identities)
            if cleaned and not known:
                results.insert(0, DirectoryEntry(cleaned, None, exists=False))

        return results

    def __len__(self) -> int:
        with self._lock:
            return len(self._identities)
