"""Batch façade that runs relationship units of work inside one transaction."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Sequence
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from friend_store.db.engine import transaction
from friend_store.models.friend import EdgeOutcome, FriendsList
from friend_store.repositories.edge_repository import EdgeConsistencyError, EdgeRepository

logger = logging.getLogger(__name__)

UnitOfWork = Callable[[Session, UUID, UUID, datetime], EdgeOutcome]


class FriendStoreError(RuntimeError):
    """Raised when FriendStore operations encounter invalid state."""


def _canonical(user_id: UUID | str) -> str:
    return str(UUID(str(user_id)))


class FriendStore:
    """Thin façade around the edge repository that owns transaction boundaries.

    Each batch call is all-or-nothing: a consistency fault or a store error for
    any id rolls back every id in the call, while benign no-ops are skipped.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        edge_repository: EdgeRepository,
    ):
        """Internal constructor; prefer ``create_friend_store`` for public use."""
        self._session_factory = session_factory
        self._edge_repository = edge_repository

    # ------------------------------------------------------------------ Queries
    def list_friends(self, user_id: UUID) -> FriendsList:
        return self._edge_repository.list_friends(user_id)

    # ----------------------------------------------------------- Mutating ops
    def add_friends(
        self,
        user_id: UUID,
        friend_ids: Sequence[UUID],
        *,
        now: datetime | None = None,
    ) -> dict[str, bool]:
        """Add, accept or unblock each friend and return the notifications to send.

        The returned mapping holds ``friend_id -> accepted`` for every id that
        produced a new invite (``False``) or accepted one (``True``); it is only
        meaningful once this call has returned, i.e. after commit.
        """
        outcomes = self._run_batch(self._edge_repository.add_friend, user_id, friend_ids, now)
        return {
            friend_id: outcome is EdgeOutcome.ACCEPTED
            for friend_id, outcome in outcomes.items()
            if outcome.notifies
        }

    def delete_friends(
        self,
        user_id: UUID,
        friend_ids: Sequence[UUID],
        *,
        now: datetime | None = None,
    ) -> None:
        self._run_batch(self._edge_repository.delete_friend, user_id, friend_ids, now)

    def block_friends(
        self,
        user_id: UUID,
        friend_ids: Sequence[UUID],
        *,
        now: datetime | None = None,
    ) -> None:
        self._run_batch(self._edge_repository.block_friend, user_id, friend_ids, now)

    # ----------------------------------------------------------------- Helpers
    def _run_batch(
        self,
        unit: UnitOfWork,
        user_id: UUID,
        friend_ids: Sequence[UUID],
        now: datetime | None,
    ) -> dict[str, EdgeOutcome]:
        # One position per batch, so a pair may only be touched once per call.
        unique_ids = list(dict.fromkeys(_canonical(friend_id) for friend_id in friend_ids))
        if not unique_ids:
            return {}
        actor = _canonical(user_id)
        if actor in unique_ids:
            raise FriendStoreError(f"User {user_id} cannot form a relationship with itself.")
        timestamp = now or datetime.now(timezone.utc)

        outcomes: dict[str, EdgeOutcome] = {}
        try:
            with transaction(self._session_factory) as session:
                for friend_id in unique_ids:
                    outcomes[friend_id] = unit(session, UUID(actor), UUID(friend_id), timestamp)
        except EdgeConsistencyError:
            logger.error(
                "Internal consistency fault, rolled back %s for user=%s friends=%s",
                unit.__name__,
                user_id,
                unique_ids,
                exc_info=True,
            )
            raise
        return outcomes


__all__ = ["FriendStore", "FriendStoreError"]
