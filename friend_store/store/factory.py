"""Factory helpers for constructing the friend store façade."""

from __future__ import annotations

from sqlalchemy.orm import Session, sessionmaker

from friend_store.repositories.edge_repository import EdgeRepository

from .friend_store import FriendStore


def create_friend_store(session_factory: sessionmaker[Session]) -> FriendStore:
    """Build a FriendStore with the default repository implementation."""
    return FriendStore(session_factory, EdgeRepository(session_factory))


__all__ = ["create_friend_store"]
