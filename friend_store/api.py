"""Request-level entry points: argument checks and username resolution."""

from __future__ import annotations

import logging
from typing import Callable, Sequence
from uuid import UUID

from friend_store.models.friend import FriendsList
from friend_store.repositories.user_repository import UserRepository
from friend_store.store.friend_store import FriendStore

logger = logging.getLogger(__name__)

Notifier = Callable[[UUID, dict[str, bool]], None]


class InvalidArgumentError(ValueError):
    """Raised when a request is malformed."""


class FriendsApi:
    """Validates friend requests before handing them to the store.

    ``notifier`` receives ``(user_id, {friend_id: accepted})`` after a
    successful add commits; delivery is its concern.
    """

    def __init__(
        self,
        store: FriendStore,
        users: UserRepository,
        *,
        notifier: Notifier | None = None,
    ):
        self._store = store
        self._users = users
        self._notifier = notifier

    def add_friends(
        self,
        user_id: UUID,
        ids: Sequence[str] = (),
        usernames: Sequence[str] = (),
    ) -> dict[str, bool]:
        friend_ids = self._resolve(user_id, ids, usernames, verb="add")
        notifications = self._store.add_friends(user_id, friend_ids)
        if notifications and self._notifier is not None:
            self._notifier(user_id, notifications)
        return notifications

    def delete_friends(self, user_id: UUID, ids: Sequence[str] = (), usernames: Sequence[str] = ()) -> None:
        friend_ids = self._resolve(user_id, ids, usernames, verb="delete")
        self._store.delete_friends(user_id, friend_ids)

    def block_friends(self, user_id: UUID, ids: Sequence[str] = (), usernames: Sequence[str] = ()) -> None:
        friend_ids = self._resolve(user_id, ids, usernames, verb="block")
        self._store.block_friends(user_id, friend_ids)

    def list_friends(self, user_id: UUID) -> FriendsList:
        return self._store.list_friends(user_id)

    def _resolve(
        self,
        user_id: UUID,
        ids: Sequence[str],
        usernames: Sequence[str],
        *,
        verb: str,
    ) -> list[UUID]:
        if not ids and not usernames:
            raise InvalidArgumentError("Specify at least one ID or Username.")

        resolved: list[UUID] = []
        for raw_id in ids:
            try:
                resolved.append(UUID(str(raw_id)))
            except ValueError:
                raise InvalidArgumentError(f"Invalid user ID {raw_id!r}.") from None
        if usernames:
            found = self._users.fetch_user_ids(usernames)
            if len(found) != len(usernames):
                logger.info("Some usernames could not be resolved. user=%s usernames=%s", user_id, list(usernames))
            resolved.extend(UUID(found_id) for found_id in found)

        if UUID(str(user_id)) in resolved:
            raise InvalidArgumentError(f"Cannot {verb} self as friend.")
        return resolved


__all__ = ["FriendsApi", "InvalidArgumentError", "Notifier"]
