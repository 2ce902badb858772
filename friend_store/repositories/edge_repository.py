"""SQLAlchemy-backed relationship engine over the ``user_edge`` table.

Every mutating unit of work runs on a caller-supplied session inside an open
transaction and branches on the exact ``rowcount`` of each statement instead of
pre-reading and locking rows. Concurrent inserts for the same pair are absorbed
by ``ON CONFLICT DO NOTHING`` on the ``(source_id, destination_id)`` key.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable
from uuid import UUID

from sqlalchemy import and_, delete, func, insert, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, aliased, sessionmaker

from friend_store.db.schema import DbUser, DbUserEdge
from friend_store.models.friend import EdgeOutcome, Friend, FriendsList, FriendState
from friend_store.repositories.user_repository import RepositoryError, UserRepository

logger = logging.getLogger(__name__)

_edges = DbUserEdge.__table__
_users = DbUser.__table__

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# State the mirror edge must hold for a non-blocked edge to be correctly paired.
_MIRROR_STATE = {
    FriendState.ACCEPTED: FriendState.ACCEPTED,
    FriendState.INVITED: FriendState.OUTGOING_REQUEST,
    FriendState.OUTGOING_REQUEST: FriendState.INVITED,
}


class EdgeConsistencyError(RepositoryError):
    """Raised when a row count shows the edge pairing or counters are corrupt."""


@dataclass(frozen=True)
class ConsistencyReport:
    """Result of auditing edges against the pairing and counter invariants."""

    # user id -> (stored edge_count, actual outgoing edges)
    count_drift: dict[str, tuple[int, int]] = field(default_factory=dict)
    # (source_id, destination_id, state) of non-blocked edges lacking a valid mirror
    unpaired_edges: list[tuple[str, str, FriendState]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.count_drift and not self.unpaired_edges


def position_for(now: datetime) -> int:
    """Return ``now`` as integer microseconds since the Unix epoch."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return (now - _EPOCH) // timedelta(microseconds=1)


class EdgeRepository:
    """Repository that mutates and projects friend edges."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    # ----------------------------------------------------------- Mutating ops
    def add_friend(self, session: Session, user_id: UUID, friend_id: UUID, now: datetime) -> EdgeOutcome:
        """Invite ``friend_id``, accept its pending invite, or lift a block on it."""
        user, friend = str(user_id), str(friend_id)
        position = position_for(now)

        # Adding a user you blocked only removes the block.
        unblocked = session.execute(
            delete(_edges).where(
                _edges.c.source_id == user,
                _edges.c.destination_id == friend,
                _edges.c.state == FriendState.BLOCKED.value,
            )
        ).rowcount
        if unblocked == 1:
            self._adjust_edge_count(session, [user], -1, now)
            logger.info("Unblocked user. user=%s friend=%s", user, friend)
            return EdgeOutcome.UNBLOCKED

        accepted = session.execute(
            update(_edges)
            .where(
                or_(
                    and_(
                        _edges.c.source_id == friend,
                        _edges.c.destination_id == user,
                        _edges.c.state == FriendState.OUTGOING_REQUEST.value,
                    ),
                    and_(
                        _edges.c.source_id == user,
                        _edges.c.destination_id == friend,
                        _edges.c.state == FriendState.INVITED.value,
                    ),
                )
            )
            .values(state=FriendState.ACCEPTED.value, update_time=now)
        ).rowcount
        if accepted == 2:
            logger.info("Accepted friend invitation. user=%s friend=%s", user, friend)
            return EdgeOutcome.ACCEPTED
        if accepted != 0:
            raise EdgeConsistencyError(
                f"Accepting invite from {friend} to {user} updated {accepted} edge(s), expected 2."
            )

        if not self._user_exists(session, friend):
            logger.info("Could not add friend as user may not exist. user=%s friend=%s", user, friend)
            return EdgeOutcome.NOOP
        if self._pair_exists(session, user, friend):
            logger.info(
                "Did not add new friend as friend connection already exists or user is blocked. user=%s friend=%s",
                user,
                friend,
            )
            return EdgeOutcome.NOOP

        rows = [
            {
                "source_id": user,
                "destination_id": friend,
                "state": FriendState.OUTGOING_REQUEST.value,
                "position": position,
                "update_time": now,
            },
            {
                "source_id": friend,
                "destination_id": user,
                "state": FriendState.INVITED.value,
                "position": position,
                "update_time": now,
            },
        ]
        # Same key order from both sides of a race, so racing inserts wait instead of deadlocking.
        rows.sort(key=lambda row: row["source_id"])
        stmt = self._insert_for(session)(_edges).values(rows)
        stmt = stmt.on_conflict_do_nothing(index_elements=["source_id", "destination_id"])

        # A concurrent writer can own either key; a half-written pair must not survive.
        savepoint = session.begin_nested()
        inserted = session.execute(stmt).rowcount
        if inserted != 2:
            savepoint.rollback()
            logger.info(
                "Friend connection was written concurrently, skipped. user=%s friend=%s inserted=%d",
                user,
                friend,
                inserted,
            )
            return EdgeOutcome.NOOP

        # Only count users whose edges in this pair were all stamped by this transaction.
        counted = session.execute(
            update(_users)
            .where(
                _users.c.id.in_([user, friend]),
                ~self._pair_edges(user, friend, _edges.c.position != position).exists(),
                self._pair_edges(user, friend, _edges.c.position == position).exists(),
            )
            .values(edge_count=_users.c.edge_count + 1, update_time=now)
        ).rowcount
        if counted != 2:
            savepoint.rollback()
            logger.info(
                "Did not add new friend as edge counts could not be updated. user=%s friend=%s counted=%d",
                user,
                friend,
                counted,
            )
            return EdgeOutcome.NOOP
        savepoint.commit()

        logger.info("Added new friend invitation. user=%s friend=%s", user, friend)
        return EdgeOutcome.ADDED

    def delete_friend(self, session: Session, user_id: UUID, friend_id: UUID, now: datetime) -> EdgeOutcome:
        """Remove both directions of a relationship, whatever their state."""
        user, friend = str(user_id), str(friend_id)

        deleted = session.execute(
            delete(_edges).where(
                or_(
                    and_(_edges.c.source_id == user, _edges.c.destination_id == friend),
                    and_(_edges.c.source_id == friend, _edges.c.destination_id == user),
                )
            )
        ).rowcount
        if deleted == 0:
            logger.info(
                "Could not delete user relationships as prior relationship did not exist. user=%s friend=%s",
                user,
                friend,
            )
            return EdgeOutcome.NOOP
        if deleted != 2:
            raise EdgeConsistencyError(
                f"Unexpected number of edges were deleted between {user} and {friend}: {deleted}."
            )

        self._adjust_edge_count(session, [user, friend], -1, now)
        logger.info("Deleted friend. user=%s friend=%s", user, friend)
        return EdgeOutcome.DELETED

    def block_friend(self, session: Session, user_id: UUID, friend_id: UUID, now: datetime) -> EdgeOutcome:
        """Turn the edge towards ``friend_id`` into a block and drop its mirror."""
        user, friend = str(user_id), str(friend_id)

        updated = session.execute(
            update(_edges)
            .where(_edges.c.source_id == user, _edges.c.destination_id == friend)
            .values(state=FriendState.BLOCKED.value, update_time=now)
        ).rowcount

        if updated == 0:
            if not self._user_exists(session, friend):
                logger.info("Could not block user as user may not exist. user=%s friend=%s", user, friend)
                return EdgeOutcome.NOOP
            session.execute(
                insert(_edges).values(
                    source_id=user,
                    destination_id=friend,
                    state=FriendState.BLOCKED.value,
                    position=position_for(now),
                    update_time=now,
                )
            )
            self._adjust_edge_count(session, [user], 1, now)

        # A block the friend issued stays; mutual blocks are two unilateral edges.
        removed = session.execute(
            delete(_edges).where(
                _edges.c.source_id == friend,
                _edges.c.destination_id == user,
                _edges.c.state != FriendState.BLOCKED.value,
            )
        ).rowcount
        if removed == 1:
            self._adjust_edge_count(session, [friend], -1, now)

        logger.info("Blocked user. user=%s friend=%s", user, friend)
        return EdgeOutcome.BLOCKED

    # ------------------------------------------------------------------ Queries
    def list_friends(self, user_id: UUID) -> FriendsList:
        """Return every edge owned by ``user_id`` joined with the destination profile."""
        with self._session_factory() as session:
            rows = session.execute(
                select(DbUser, DbUserEdge.state)
                .join(DbUserEdge, DbUserEdge.destination_id == DbUser.id)
                .where(DbUserEdge.source_id == str(user_id))
                .order_by(DbUserEdge.state, DbUserEdge.position, DbUser.username)
            ).all()
            friends = [
                Friend(user=UserRepository.to_model(record), state=FriendState(state))
                for record, state in rows
            ]
        return FriendsList(friends=friends)

    def audit(self, user_ids: Iterable[UUID] | None = None) -> ConsistencyReport:
        """Check edge counters and pairing, optionally limited to ``user_ids``."""
        scope = [str(user_id) for user_id in user_ids] if user_ids is not None else None

        with self._session_factory() as session:
            outgoing = (
                select(DbUserEdge.source_id, func.count().label("total"))
                .group_by(DbUserEdge.source_id)
                .subquery()
            )
            count_query = select(DbUser.id, DbUser.edge_count, func.coalesce(outgoing.c.total, 0)).outerjoin(
                outgoing, outgoing.c.source_id == DbUser.id
            )
            if scope is not None:
                count_query = count_query.where(DbUser.id.in_(scope))
            count_drift = {
                user_id: (stored, actual)
                for user_id, stored, actual in session.execute(count_query)
                if stored != actual
            }

            mirror = aliased(DbUserEdge)
            edge_query = select(
                DbUserEdge.source_id, DbUserEdge.destination_id, DbUserEdge.state, mirror.state
            ).outerjoin(
                mirror,
                and_(
                    mirror.source_id == DbUserEdge.destination_id,
                    mirror.destination_id == DbUserEdge.source_id,
                ),
            )
            if scope is not None:
                edge_query = edge_query.where(
                    or_(DbUserEdge.source_id.in_(scope), DbUserEdge.destination_id.in_(scope))
                )
            unpaired = []
            for source, destination, state, mirror_state in session.execute(edge_query):
                state = FriendState(state)
                if state is FriendState.BLOCKED:
                    continue
                if mirror_state is None or FriendState(mirror_state) is not _MIRROR_STATE[state]:
                    unpaired.append((source, destination, state))

        return ConsistencyReport(count_drift=count_drift, unpaired_edges=unpaired)

    # ----------------------------------------------------------------- Helpers
    @staticmethod
    def _adjust_edge_count(session: Session, user_ids: list[str], delta: int, now: datetime) -> None:
        session.execute(
            update(_users)
            .where(_users.c.id.in_(user_ids))
            .values(edge_count=_users.c.edge_count + delta, update_time=now)
        )

    @staticmethod
    def _user_exists(session: Session, user_id: str) -> bool:
        return session.execute(select(_users.c.id).where(_users.c.id == user_id)).first() is not None

    def _pair_exists(self, session: Session, user: str, friend: str) -> bool:
        return session.execute(self._pair_edges(user, friend).limit(1)).first() is not None

    @staticmethod
    def _pair_edges(user: str, friend: str, *criteria):
        return select(_edges.c.source_id).where(
            or_(
                and_(_edges.c.source_id == user, _edges.c.destination_id == friend),
                and_(_edges.c.source_id == friend, _edges.c.destination_id == user),
            ),
            *criteria,
        )

    @staticmethod
    def _insert_for(session: Session):
        bind = session.get_bind()
        if bind is not None and bind.dialect.name == "postgresql":
            return pg_insert
        return sqlite_insert


__all__ = [
    "ConsistencyReport",
    "EdgeConsistencyError",
    "EdgeRepository",
    "position_for",
]
