"""Friend store orchestration helpers."""

from .factory import create_friend_store
from .friend_store import FriendStore, FriendStoreError

__all__ = ["FriendStore", "FriendStoreError", "create_friend_store"]
