"""Optimistic message list that merges local placeholders with pushed messages."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Union

TOLERANCE_MS = 5000


@dataclass(frozen=True)
class Speculative:
    """A locally created message the server has not confirmed yet."""

    temp_id: str
    sender_id: str
    receiver_id: str
    text: str
    created_at_ms: int


@dataclass(frozen=True)
class Confirmed:
    """A message carrying its server-assigned id."""

    msg_id: str
    sender_id: str
    receiver_id: str
    text: str
    created_at_ms: int

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> "Confirmed":
        return cls(
            msg_id=str(payload["id"]),
            sender_id=str(payload["senderId"]),
            receiver_id=str(payload["receiverId"]),
            text=str(payload["text"]),
            created_at_ms=int(payload["createdAt"]),
        )


Entry = Union[Speculative, Confirmed]


def _new_temp_id() -> str:
    return f"tmp_{secrets.token_urlsafe(8)}"


def matches(entry: Entry, confirmed: Confirmed) -> bool:
    if isinstance(entry, Confirmed):
        return entry.msg_id == confirmed.msg_id
    if isinstance(entry, Speculative):
        return (
            entry.sender_id == confirmed.sender_id
            and entry.receiver_id == confirmed.receiver_id
            and entry.text == confirmed.text
            and abs(entry.created_at_ms - confirmed.created_at_ms) < TOLERANCE_MS
        )
    raise TypeError(f"unexpected timeline entry: {entry!r}")


class MessageTimeline:
    def __init__(self) -> None:
        self._entries: List[Entry] = []

    @property
    def entries(self) -> tuple[Entry, ...]:
        return tuple(self._entries)

    def pending(self) -> List[Speculative]:
        return [entry for entry in self._entries if isinstance(entry, Speculative)]

    def add_speculative(self, sender_id: str, receiver_id: str, text: str, now_ms: int) -> Speculative:
        entry = Speculative(
            temp_id=_new_temp_id(),
            sender_id=sender_id,
            receiver_id=receiver_id,
            text=text,
            created_at_ms=now_ms,
        )
        self._entries.append(entry)
        return entry

    def apply_confirmed(self, confirmed: Confirmed) -> int:
        """Replace the first matching entry with ``confirmed`` or append it.

        Returns the index the confirmed message now occupies.
        """

        for index, entry in enumerate(self._entries):
            if matches(entry, confirmed):
                self._entries[index] = confirmed
                return index
        self._entries.append(confirmed)
        return len(self._entries) - 1

    def remove_speculative(self, temp_id: str) -> bool:
        for index, entry in enumerate(self._entries):
            if isinstance(entry, Speculative) and entry.temp_id == temp_id:
                del self._entries[index]
                return True
        return False

    def reset(self, confirmed: Iterable[Confirmed]) -> None:
        self._entries = list(confirmed)
