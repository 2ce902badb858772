"""Relationship states, mutation outcomes and the friends list projection."""

from __future__ import annotations

from enum import Enum, IntEnum

from pydantic import BaseModel, ConfigDict, Field

from friend_store.models.user import User


class FriendState(IntEnum):
    """State of a directed edge, read from the point of view of its source."""

    ACCEPTED = 0
    INVITED = 1
    OUTGOING_REQUEST = 2
    BLOCKED = 3


class EdgeOutcome(str, Enum):
    """What a single relationship unit of work did."""

    ADDED = "added"
    ACCEPTED = "accepted"
    UNBLOCKED = "unblocked"
    DELETED = "deleted"
    BLOCKED = "blocked"
    NOOP = "noop"

    @property
    def notifies(self) -> bool:
        return self in (EdgeOutcome.ADDED, EdgeOutcome.ACCEPTED)


class Friend(BaseModel):
    user: User
    state: FriendState

    model_config = ConfigDict(frozen=True)


class FriendsList(BaseModel):
    """Materialised list of every edge owned by a user."""

    friends: list[Friend] = Field(default_factory=list)

    def with_state(self, state: FriendState) -> list[Friend]:
        return [friend for friend in self.friends if friend.state == state]


__all__ = ["EdgeOutcome", "Friend", "FriendState", "FriendsList"]
