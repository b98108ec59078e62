from __future__ import annotations

import json
from dataclasses import dataclass

from .errors import InvalidInput


@dataclass(frozen=True, order=True)
class UserId:
    """Canonical user identity used as the key of every per-user marker."""

    value: str

    def __post_init__(self) -> None:
        if not isinstance(self.value, str):
            raise InvalidInput("user id must be a string")
        normalized = self.value.strip()
        if not normalized:
            raise InvalidInput("user id required")
        object.__setattr__(self, "value", normalized)

    @classmethod
    def of(cls, raw: "UserId | str") -> "UserId":
        if isinstance(raw, UserId):
            return raw
        return cls(raw)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ConversationKey:
    """Unordered participant pair, stored sorted so that (a, b) == (b, a)."""

    user_a: UserId
    user_b: UserId

    @classmethod
    def from_participants(cls, one: UserId | str, two: UserId | str) -> "ConversationKey":
        first, second = sorted((UserId.of(one), UserId.of(two)))
        if first == second:
            raise InvalidInput("a conversation needs two distinct participants")
        return cls(user_a=first, user_b=second)

    @property
    def pair_key(self) -> str:
        # JSON quoting keeps the key unambiguous for ids containing any separator.
        return json.dumps([self.user_a.value, self.user_b.value], ensure_ascii=False)

    def participants(self) -> tuple[UserId, UserId]:
        return (self.user_a, self.user_b)

    def other(self, user_id: UserId) -> UserId:
        if user_id == self.user_a:
            return self.user_b
        if user_id == self.user_b:
            return self.user_a
        raise ValueError(f"{user_id} is not a participant")
