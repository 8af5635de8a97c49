"""Local read cache of conversation messages with optimistic writes."""
from __future__ import annotations

import copy
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

TEMP_ID_PREFIX = "temp-"

CachedMessage = Dict[str, Any]


def is_temporary(message: CachedMessage) -> bool:
    return str(message.get("id", "")).startswith(TEMP_ID_PREFIX)


@dataclass(slots=True)
class PendingSend:
    """Bookkeeping for one optimistic write that has not been confirmed yet."""

    conversation_id: str
    temp_id: str
    content: str
    # ``None`` means the conversation had no cached entry before the write.
    snapshot: Optional[List[CachedMessage]] = field(default=None, repr=False)


class MessageCache:
    """Messages per conversation id, mirroring what the server last returned.

    Optimistic sends follow a snapshot / apply / commit-or-revert protocol.
    Only the most recent pending send of a conversation owns a restorable
    snapshot (last snapshot wins): reverting it restores the list as it was
    before that send, minus the temporary rows of earlier sends that already
    failed. If an earlier send was confirmed meanwhile, the entry is dropped
    instead so the next read refetches. Reverting a superseded send only
    drops its own temporary row.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, List[CachedMessage]] = {}
        self._pending: Dict[str, PendingSend] = {}
        # temp id -> confirmed, for superseded sends finished while a newer one is pending
        self._settled: Dict[str, Dict[str, bool]] = {}
        self._lock = threading.RLock()

    def get(self, conversation_id: str) -> Optional[List[CachedMessage]]:
        """Return a copy of the cached list, or ``None`` when it must be fetched."""

        with self._lock:
            entry = self._entries.get(conversation_id)
            return copy.deepcopy(entry) if entry is not None else None

    def set(self, conversation_id: str, messages: List[CachedMessage]) -> None:
        with self._lock:
            self._entries[conversation_id] = copy.deepcopy(list(messages))

    def invalidate(self, conversation_id: str) -> None:
        with self._lock:
            self._entries.pop(conversation_id, None)

    def pending(self, conversation_id: str) -> Optional[PendingSend]:
        with self._lock:
            return self._pending.get(conversation_id)

    def apply_optimistic(self, conversation_id: str, content: str, user_id: str | None = None) -> PendingSend:
        """Snapshot the conversation and append a temporary user message."""

        with self._lock:
            current = self._entries.get(conversation_id)
            pending = PendingSend(
                conversation_id=conversation_id,
                temp_id=f"{TEMP_ID_PREFIX}{uuid.uuid4()}",
                content=content,
                snapshot=copy.deepcopy(current) if current is not None else None,
            )
            optimistic: CachedMessage = {
                "id": pending.temp_id,
                "conversation_id": conversation_id,
                "user_id": user_id,
                "role": "user",
                "content": content,
                "created_at": datetime.now(timezone.utc).isoformat(),
            }
            self._entries[conversation_id] = [*(current or []), optimistic]
            self._pending[conversation_id] = pending
            return pending

    def commit(self, pending: PendingSend) -> None:
        """Confirm a send; the entry is dropped so the next read refetches authoritative rows."""

        with self._lock:
            conversation_id = pending.conversation_id
            if self._pending.get(conversation_id) is pending:
                del self._pending[conversation_id]
                self._settled.pop(conversation_id, None)
            else:
                self._settled.setdefault(conversation_id, {})[pending.temp_id] = True
            self._entries.pop(conversation_id, None)

    def revert(self, pending: PendingSend) -> None:
        """Undo a failed send."""

        with self._lock:
            conversation_id = pending.conversation_id
            if self._pending.get(conversation_id) is pending:
                del self._pending[conversation_id]
                settled = self._settled.pop(conversation_id, {})
                snapshot = pending.snapshot
                # A confirmed send inside the snapshot means it no longer matches the server.
                if snapshot is None or any(settled.get(message.get("id")) for message in snapshot):
                    self._entries.pop(conversation_id, None)
                else:
                    self._entries[conversation_id] = [
                        copy.deepcopy(message) for message in snapshot if message.get("id") not in settled
                    ]
                return

            self._settled.setdefault(conversation_id, {})[pending.temp_id] = False
            entry = self._entries.get(conversation_id)
            if entry is not None:
                self._entries[conversation_id] = [
                    message for message in entry if message.get("id") != pending.temp_id
                ]
