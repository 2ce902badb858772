"""Tests for the friends list projection."""

from uuid import uuid4

from friend_store.models.friend import FriendState, FriendsList
from friend_store.store import FriendStore


def test_list_friends_empty(friend_store: FriendStore, make_users):
    (a,) = make_users(1)

    assert friend_store.list_friends(a.id) == FriendsList(friends=[])
    assert friend_store.list_friends(uuid4()).friends == []


def test_list_friends_projects_every_edge(friend_store: FriendStore, make_users):
    """Verify one entry per owned edge, ordered by state, blocked entries included."""
    a, accepted, pending_out, pending_in, blocked = make_users(5)
    friend_store.add_friends(a.id, [accepted.id, pending_out.id])
    friend_store.add_friends(accepted.id, [a.id])
    friend_store.add_friends(pending_in.id, [a.id])
    friend_store.block_friends(a.id, [blocked.id])

    friends = friend_store.list_friends(a.id).friends

    assert [(friend.user.id, friend.state) for friend in friends] == [
        (accepted.id, FriendState.ACCEPTED),
        (pending_in.id, FriendState.INVITED),
        (pending_out.id, FriendState.OUTGOING_REQUEST),
        (blocked.id, FriendState.BLOCKED),
    ]


def test_list_friends_carries_profile(friend_store: FriendStore, make_users):
    a, b = make_users(2)
    friend_store.add_friends(a.id, [b.id])

    (friend,) = friend_store.list_friends(a.id).friends

    assert friend.user.username == b.username
    assert friend.user.display_name == b.display_name
    assert friend.user.location == "Lisbon"
    assert friend.user.metadata == b.metadata
    assert friend.user.edge_count == 1
    assert friend.user.online is False


def test_list_is_directional(friend_store: FriendStore, make_users):
    a, b = make_users(2)
    friend_store.block_friends(a.id, [b.id])

    assert friend_store.list_friends(b.id).friends == []
    assert friend_store.list_friends(a.id).with_state(FriendState.BLOCKED)[0].user.id == b.id
