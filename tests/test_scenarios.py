"""End-to-end relationship sequences checked against the pairing and counter invariants."""

from __future__ import annotations

import random
import threading
from itertools import combinations

import pytest
from sqlalchemy import select
from sqlalchemy.exc import DBAPIError

from friend_store.db.schema import DbUser, DbUserEdge
from friend_store.models.friend import FriendState
from friend_store.repositories.edge_repository import EdgeConsistencyError
from friend_store.store import FriendStore

_VALID_PAIRS = {
    (None, None),
    (FriendState.BLOCKED, None),
    (None, FriendState.BLOCKED),
    (FriendState.BLOCKED, FriendState.BLOCKED),
    (FriendState.ACCEPTED, FriendState.ACCEPTED),
    (FriendState.OUTGOING_REQUEST, FriendState.INVITED),
    (FriendState.INVITED, FriendState.OUTGOING_REQUEST),
}


def _snapshot(engine):
    with engine.connect() as connection:
        edges = connection.execute(
            select(DbUserEdge.source_id, DbUserEdge.destination_id, DbUserEdge.state).order_by(
                DbUserEdge.source_id, DbUserEdge.destination_id
            )
        ).all()
        counts = connection.execute(select(DbUser.id, DbUser.edge_count).order_by(DbUser.id)).all()
    return edges, counts


def test_documented_scenario(friend_store: FriendStore, make_users, edge_state, edge_counts):
    a, b = make_users(2)

    friend_store.add_friends(a.id, [b.id])
    assert (edge_state(a, b), edge_state(b, a)) == (FriendState.OUTGOING_REQUEST, FriendState.INVITED)
    assert edge_counts(a, b) == (1, 1)

    friend_store.add_friends(b.id, [a.id])
    assert (edge_state(a, b), edge_state(b, a)) == (FriendState.ACCEPTED, FriendState.ACCEPTED)
    assert edge_counts(a, b) == (1, 1)

    friend_store.block_friends(a.id, [b.id])
    assert (edge_state(a, b), edge_state(b, a)) == (FriendState.BLOCKED, None)
    assert edge_counts(a, b) == (1, 0)

    # A's block is still in place, so B cannot start a new invite.
    assert friend_store.add_friends(b.id, [a.id]) == {}
    assert (edge_state(a, b), edge_state(b, a)) == (FriendState.BLOCKED, None)
    assert edge_counts(a, b) == (1, 0)

    friend_store.add_friends(a.id, [b.id])
    assert (edge_state(a, b), edge_state(b, a)) == (None, None)
    assert edge_counts(a, b) == (0, 0)

    friend_store.add_friends(b.id, [a.id])
    assert (edge_state(a, b), edge_state(b, a)) == (FriendState.INVITED, FriendState.OUTGOING_REQUEST)
    assert edge_counts(a, b) == (1, 1)


def test_accept_converges_once(friend_store: FriendStore, make_users, edge_counts):
    a, b = make_users(2)

    first = friend_store.add_friends(a.id, [b.id])
    second = friend_store.add_friends(b.id, [a.id])
    third = friend_store.add_friends(b.id, [a.id])

    assert (first, second, third) == ({str(b.id): False}, {str(a.id): True}, {})
    assert edge_counts(a, b) == (1, 1)


def test_audit_reports_drift_and_unpaired_edges(
    friend_store: FriendStore, make_users, insert_edge, edge_repository, engine
):
    a, b, c = make_users(3)
    friend_store.add_friends(a.id, [b.id])
    assert edge_repository.audit().ok

    insert_edge(c, a, FriendState.ACCEPTED)
    with engine.begin() as connection:
        connection.execute(
            DbUser.__table__.update().where(DbUser.id == str(b.id)).values(edge_count=5)
        )

    report = edge_repository.audit()

    assert not report.ok
    assert report.count_drift == {str(b.id): (5, 1), str(c.id): (0, 1)}
    assert report.unpaired_edges == [(str(c.id), str(a.id), FriendState.ACCEPTED)]
    assert edge_repository.audit([b.id]).unpaired_edges == []


def test_random_sequences_keep_invariants(friend_store: FriendStore, make_users, edge_repository, engine):
    """Verify pairing and counters hold after every operation of a seeded random workload."""
    users = make_users(5)
    rng = random.Random(20240501)
    operations = {
        "add": friend_store.add_friends,
        "delete": friend_store.delete_friends,
        "block": friend_store.block_friends,
    }

    for _ in range(300):
        actor, target = rng.sample(users, 2)
        name = rng.choice(["add", "add", "delete", "block"])
        before = _snapshot(engine)
        try:
            operations[name](actor.id, [target.id])
        except EdgeConsistencyError:
            # Only deleting a unilateral block trips the lone-edge check.
            assert name == "delete"
            assert _snapshot(engine) == before
            states = {(source, destination): state for source, destination, state in before[0]}
            pair = (
                states.get((str(actor.id), str(target.id))),
                states.get((str(target.id), str(actor.id))),
            )
            assert FriendState.BLOCKED.value in pair and None in pair

        report = edge_repository.audit()
        assert report.ok, report

        edges = {(source, destination): FriendState(state) for source, destination, state in _snapshot(engine)[0]}
        for x, y in combinations(users, 2):
            pair = (edges.get((str(x.id), str(y.id))), edges.get((str(y.id), str(x.id))))
            assert pair in _VALID_PAIRS


def test_concurrent_reciprocal_adds(friend_store: FriendStore, make_users, edge_repository, edge_counts, engine):
    """Verify racing invites for the same pair settle into one counted relationship."""
    if engine.dialect.name != "postgresql":
        pytest.skip("Requires a shared multi-connection database (set POSTGRES_TEST_URL).")

    for _ in range(10):
        a, b = make_users(2)
        barrier = threading.Barrier(2)
        errors: list[BaseException] = []

        def worker(actor, target):
            barrier.wait()
            for attempt in range(5):
                try:
                    friend_store.add_friends(actor.id, [target.id])
                    return
                except DBAPIError:
                    if attempt == 4:
                        raise

        def run(actor, target):
            try:
                worker(actor, target)
            except BaseException as exc:  # surfaced below
                errors.append(exc)

        threads = [threading.Thread(target=run, args=(a, b)), threading.Thread(target=run, args=(b, a))]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert edge_counts(a, b) == (1, 1)
        assert edge_repository.audit([a.id, b.id]).ok
