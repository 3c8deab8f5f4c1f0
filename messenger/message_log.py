"""
Append-only message log.

Insertion order is chronological order. Messages are indexed by unordered
participant pair so conversation lookups do not scan the whole log.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from messenger.utils import format_timestamp, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Message:
    seq: int
    id: str
    sender: str
    recipient: str
    text: str
    timestamp: str

    def is_own(self, viewer: str) -> bool:
        return self.sender == viewer


def _pair(a: str, b: str) -> frozenset:
    return frozenset((a, b))


class MessageLog:
    def __init__(self, repository, clock: Callable = utc_now):
        self._repository = repository
        self._clock = clock
        self._lock = threading.Lock()
        self._messages: list[Message] = []
        self._by_pair: dict[frozenset, list[Message]] = {}
        # phone -> partners in order of first contact (dict as ordered set)
        self._partners: dict[str, dict[str, None]] = {}

    def load(self) -> int:
        rows = self._repository.load_all()
        with self._lock:
            self._messages.clear()
            self._by_pair.clear()
            self._partners.clear()
            for row in rows:
                self._index(Message(
                    seq=row.seq,
                    id=row.id,
                    sender=row.from_number,
                    recipient=row.to_number,
                    text=row.text,
                    timestamp=row.timestamp,
                ))
        logger.info(f"Message log loaded: {len(rows)} messages")
        return len(rows)

    def _index(self, message: Message) -> None:
        self._messages.append(message)
        self._by_pair.setdefault(_pair(message.sender, message.recipient), []).append(message)
        self._partners.setdefault(message.sender, {})[message.recipient] = None
        self._partners.setdefault(message.recipient, {})[message.sender] = None

    def append(self, sender: str, recipient: str, text: str) -> Message:
        """
        Stamp, persist and append a message.

        The durable write happens before the message becomes visible, so a
        StorageError propagates and leaves the log unchanged.
        """
        with self._lock:
            moment = self._clock()
            seq = self._messages[-1].seq + 1 if self._messages else 1
            message = Message(
                seq=seq,
                id=f"msg_{int(moment.timestamp() * 1000)}_{seq}",
                sender=sender,
                recipient=recipient,
                text=text,
                timestamp=format_timestamp(moment),
            )
            self._repository.insert(message)
            self._index(message)

        logger.info(
            "Message appended",
            extra={"message_id": message.id, "from": sender, "to": recipient},
        )
        return message

    def conversation(self, phone_a: str, phone_b: str) -> list[Message]:
        with self._lock:
            return list(self._by_pair.get(_pair(phone_a, phone_b), ()))

    def last_message(self, phone_a: str, phone_b: str) -> Optional[Message]:
        with self._lock:
            messages = self._by_pair.get(_pair(phone_a, phone_b))
            return messages[-1] if messages else None

    def conversation_partners(self, phone_number: str) -> list[str]:
        with self._lock:
            return list(self._partners.get(phone_number, ()))

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)
