from __future__ import annotations

import os
from collections.abc import Iterator
from typing import Callable

import pytest
from sqlalchemy import select
from sqlalchemy.engine import Engine

from friend_store.db.engine import create_engine, create_session_factory
from friend_store.db.schema import Base, DbUser, DbUserEdge, create_all
from friend_store.models.friend import FriendState
from friend_store.models.user import User
from friend_store.repositories.edge_repository import EdgeRepository
from friend_store.repositories.user_repository import UserRepository
from friend_store.store import FriendStore, create_friend_store


@pytest.fixture(scope="session")
def postgres_url() -> str | None:
    """Return the Postgres test URL if provided via env."""
    return os.getenv("POSTGRES_TEST_URL") or os.getenv("DATABASE_URL")


@pytest.fixture
def engine(postgres_url: str | None) -> Iterator[Engine]:
    """Yield an engine targeting Postgres when configured; otherwise SQLite in-memory."""
    engine = create_engine(postgres_url) if postgres_url else create_engine()
    create_all(engine)
    try:
        yield engine
    finally:
        with engine.begin() as connection:
            if engine.dialect.name == "sqlite":
                Base.metadata.drop_all(bind=connection)
            else:
                connection.execute(DbUserEdge.__table__.delete())
                connection.execute(DbUser.__table__.delete())
        engine.dispose()


@pytest.fixture
def session_factory(engine: Engine):
    return create_session_factory(engine)


@pytest.fixture
def user_repository(session_factory) -> UserRepository:
    return UserRepository(session_factory)


@pytest.fixture
def edge_repository(session_factory) -> EdgeRepository:
    return EdgeRepository(session_factory)


@pytest.fixture
def friend_store(session_factory) -> FriendStore:
    return create_friend_store(session_factory)


@pytest.fixture
def make_users(user_repository: UserRepository) -> Callable[..., list[User]]:
    """Create and persist users named ``<prefix>-<n>``."""
    counter = {"next": 0}

    def _factory(count: int = 2, *, prefix: str = "user") -> list[User]:
        users = []
        for _ in range(count):
            counter["next"] += 1
            users.append(
                User(
                    username=f"{prefix}-{counter['next']}",
                    display_name=f"{prefix.title()} {counter['next']}",
                    location="Lisbon",
                    metadata={"seq": counter["next"]},
                )
            )
        user_repository.create_users(users)
        return users

    return _factory


@pytest.fixture
def edge_state(engine: Engine) -> Callable[[User, User], FriendState | None]:
    """Return the state of the ``source -> destination`` edge, if any."""

    def _lookup(source: User, destination: User) -> FriendState | None:
        with engine.connect() as connection:
            state = connection.execute(
                select(DbUserEdge.state).where(
                    DbUserEdge.source_id == str(source.id),
                    DbUserEdge.destination_id == str(destination.id),
                )
            ).scalar_one_or_none()
        return FriendState(state) if state is not None else None

    return _lookup


@pytest.fixture
def edge_counts(engine: Engine) -> Callable[..., tuple[int, ...]]:
    """Return the stored ``edge_count`` for each given user, in order."""

    def _counts(*users: User) -> tuple[int, ...]:
        with engine.connect() as connection:
            rows = dict(
                connection.execute(
                    select(DbUser.id, DbUser.edge_count).where(DbUser.id.in_([str(u.id) for u in users]))
                ).all()
            )
        return tuple(rows[str(u.id)] for u in users)

    return _counts


@pytest.fixture
def insert_edge(engine: Engine) -> Callable[..., None]:
    """Write a raw edge row, bypassing the engine (to model foreign or corrupt state)."""
    from datetime import datetime, timezone

    def _insert(source: User, destination: User, state: FriendState, *, position: int = 1) -> None:
        with engine.begin() as connection:
            connection.execute(
                DbUserEdge.__table__.insert().values(
                    source_id=str(source.id),
                    destination_id=str(destination.id),
                    state=state.value,
                    position=position,
                    update_time=datetime.now(timezone.utc),
                )
            )

    return _insert
