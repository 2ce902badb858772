"""Top-level package for the friend edge store."""

__version__ = "0.1.0"

from .api import FriendsApi, InvalidArgumentError  # noqa: E402
from .store import FriendStore, create_friend_store  # noqa: E402

__all__ = ["__version__", "FriendStore", "FriendsApi", "InvalidArgumentError", "create_friend_store"]
