from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from .conversation import ParticipantKey, now_ms
from .prompts import Attachment

QUEUE_CAPACITY = 5

logger = logging.getLogger("multichat.queue")


class RequestRejected(ValueError):
    """A user request failed validation; nothing was changed."""


class QueueFull(RequestRejected):
    pass


@dataclass(frozen=True)
class QueuedRequest:
    raw_input: str
    target_keys: Tuple[ParticipantKey, ...]
    attachments: Tuple[Attachment, ...] = ()
    autonomous_requested: bool = False
    id: str = field(default_factory=lambda: uuid4().hex)
    created_at: int = field(default_factory=now_ms)

    def to_dict(self, processing: bool = False) -> Dict[str, Any]:
        return {
            "id": self.id,
            "raw_input": self.raw_input,
            "targets": [str(key) for key in self.target_keys],
            "attachments": [attachment.name for attachment in self.attachments],
            "autonomous_requested": self.autonomous_requested,
            "created_at": self.created_at,
            "processing": processing,
        }


class RequestQueue:
    """
    Bounded FIFO of outgoing user requests with a single processing slot.

    The item being processed stays at the head until ``finish`` is called and
    counts against the capacity.
    """

    def __init__(self, capacity: int = QUEUE_CAPACITY) -> None:
        self.capacity = capacity
        self._items: Tuple[QueuedRequest, ...] = ()
        self._processing: Optional[str] = None

    def __len__(self) -> int:
        return len(self._items)

    @property
    def processing_id(self) -> Optional[str]:
        return self._processing

    def snapshot(self) -> List[QueuedRequest]:
        return list(self._items)

    def enqueue(self, request: QueuedRequest) -> QueuedRequest:
        if len(self._items) >= self.capacity:
            raise QueueFull(f"Queue is full ({self.capacity} requests). Wait for a reply first.")
        self._items = self._items + (request,)
        logger.debug("Queued request %s for %d targets", request.id, len(request.target_keys))
        return request

    def begin_next(self) -> Optional[QueuedRequest]:
        """Claim the head for processing, or ``None`` when busy or empty."""
        if self._processing is not None or not self._items:
            return None
        head = self._items[0]
        self._processing = head.id
        return head

    def finish(self, request_id: str) -> None:
        if self._processing == request_id:
            self._processing = None
        self._items = tuple(item for item in self._items if item.id != request_id)

    def remove(self, request_id: str) -> QueuedRequest:
        if request_id == self._processing:
            raise RequestRejected("The request being processed cannot be removed.")
        for item in self._items:
            if item.id == request_id:
                self._items = tuple(entry for entry in self._items if entry.id != request_id)
                return item
        raise KeyError(request_id)

    def strip_participant(self, key: ParticipantKey) -> List[str]:
        """
        Drop ``key`` from every queued target list.

        Waiting items left without targets are discarded; their ids are returned.
        """
        kept: List[QueuedRequest] = []
        dropped: List[str] = []
        for item in self._items:
            if key in item.target_keys:
                item = replace(item, target_keys=tuple(k for k in item.target_keys if k != key))
            if not item.target_keys and item.id != self._processing:
                dropped.append(item.id)
                continue
            kept.append(item)
        self._items = tuple(kept)
        if dropped:
            logger.info("Discarded %d queued requests left without targets", len(dropped))
        return dropped
