"""SQLAlchemy-backed repository for User models."""

from __future__ import annotations

from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from friend_store.db.schema import DbUser
from friend_store.models.user import User


class RepositoryError(RuntimeError):
    """Base class for repository-level errors."""


class UserRepository:
    """Repository that persists and hydrates User models from the database."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def create_users(self, users: Sequence[User]) -> None:
        """Insert new users; ``edge_count`` always starts at zero."""
        if not users:
            return

        with self._session_factory() as session:
            session.add_all(DbUser(**self._to_record(user)) for user in users)
            session.commit()

    def get_user(self, user_id: UUID) -> User | None:
        with self._session_factory() as session:
            row = session.get(DbUser, str(user_id))
            return self.to_model(row) if row is not None else None

    def fetch_user_ids(self, usernames: Sequence[str]) -> list[str]:
        """Resolve usernames to ids, silently dropping unknown names."""
        if not usernames:
            return []

        with self._session_factory() as session:
            rows = session.execute(
                select(DbUser.username, DbUser.id).where(DbUser.username.in_(list(usernames)))
            ).all()
        by_username = {username: user_id for username, user_id in rows}
        return [by_username[name] for name in usernames if name in by_username]

    @staticmethod
    def to_model(record: DbUser) -> User:
        return User(
            id=UUID(record.id),
            username=record.username,
            display_name=record.display_name,
            avatar_url=record.avatar_url,
            lang_tag=record.lang_tag,
            location=record.location,
            timezone=record.timezone,
            metadata=record.metadata_json or {},
            edge_count=record.edge_count,
            create_time=record.create_time,
            update_time=record.update_time,
        )

    @staticmethod
    def _to_record(user: User) -> dict[str, Any]:
        return {
            "id": str(user.id),
            "username": user.username,
            "display_name": user.display_name,
            "avatar_url": user.avatar_url,
            "lang_tag": user.lang_tag,
            "location": user.location,
            "timezone": user.timezone,
            "metadata_json": user.metadata,
            "edge_count": 0,
            "create_time": user.create_time,
            "update_time": user.update_time,
        }


__all__ = ["RepositoryError", "UserRepository"]
