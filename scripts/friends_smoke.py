"""Concurrent relationship smoke test for the friend edge store.

The script creates a pool of users, fires random add/delete/block batches at the
store from several worker threads and then audits the edge table: every
non-blocked edge must have its mirror and every ``edge_count`` must match the
number of outgoing edges. Transient store errors are retried at this level,
never inside the store.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import random
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any
from uuid import UUID

from dotenv import load_dotenv

CURRENT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = CURRENT_DIR.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")

from sqlalchemy.exc import DBAPIError

from friend_store.db.engine import create_engine, create_session_factory
from friend_store.db.schema import Base, create_all
from friend_store.models.user import User
from friend_store.repositories.edge_repository import EdgeConsistencyError, EdgeRepository
from friend_store.repositories.user_repository import UserRepository
from friend_store.store import create_friend_store

OPERATIONS = ("add", "add", "add", "delete", "block")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Concurrent friend edge smoke test")
    parser.add_argument("--users", type=int, default=20, help="Number of users to create (default 20).")
    parser.add_argument(
        "--operations",
        type=int,
        default=500,
        help="Total number of batch operations to issue (default 500).",
    )
    parser.add_argument("--batch-size", type=int, default=3, help="Maximum targets per batch (default 3).")
    parser.add_argument("--workers", type=int, default=4, help="Worker threads (default 4).")
    parser.add_argument("--retries", type=int, default=5, help="Retries per batch on transient errors.")
    parser.add_argument("--seed", type=int, default=None, help="Random seed for reproducible workloads.")
    parser.add_argument(
        "--database-url",
        type=str,
        default=None,
        help="Optional SQLAlchemy URL (e.g. Postgres). Falls back to DATABASE_URL, then in-memory SQLite.",
    )
    parser.add_argument(
        "--sqlite-path",
        type=Path,
        default=None,
        help="Optional SQLite file path (ignored if --database-url is provided).",
    )
    parser.add_argument(
        "--reset-schema",
        action="store_true",
        help="Drop and recreate tables before starting (useful for persisted DBs).",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Optional JSON output path (defaults to stdout).",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress progress logs; only emit JSON telemetry.",
    )
    return parser.parse_args()


def ensure_schema(engine, reset: bool) -> None:
    if reset:
        Base.metadata.drop_all(engine)
    create_all(engine)


def run_batch(store, rng: random.Random, user_ids: list[UUID], batch_size: int, retries: int) -> dict[str, Any]:
    actor = rng.choice(user_ids)
    candidates = [user_id for user_id in user_ids if user_id != actor]
    targets = rng.sample(candidates, k=min(len(candidates), rng.randint(1, batch_size)))
    operation = rng.choice(OPERATIONS)
    call = {
        "add": store.add_friends,
        "delete": store.delete_friends,
        "block": store.block_friends,
    }[operation]

    attempts = 0
    start = time.perf_counter()
    while True:
        attempts += 1
        try:
            call(actor, targets)
            status = "ok"
            break
        except EdgeConsistencyError:
            status = "fault"
            break
        except DBAPIError:
            if attempts > retries:
                status = "transient"
                break
            time.sleep(0.01 * attempts)
    return {
        "operation": operation,
        "status": status,
        "attempts": attempts,
        "elapsed_ms": (time.perf_counter() - start) * 1000,
    }


def main() -> None:
    args = parse_args()

    logging.basicConfig(
        level=logging.INFO if not args.quiet else logging.WARNING,
        format="[%(levelname)s] %(message)s",
    )
    logger = logging.getLogger("friends_smoke")
    # Per-edge store logs drown the summary at this volume.
    logging.getLogger("friend_store").setLevel(logging.WARNING)

    database_url = args.database_url or os.getenv("DATABASE_URL") or os.getenv("POSTGRES_TEST_URL")

    if database_url:
        logger.info("Using database: %s", database_url)
        engine = create_engine(database_url)
    else:
        engine = create_engine(sqlite_path=args.sqlite_path) if args.sqlite_path else create_engine()

    workers = args.workers
    if engine.dialect.name == "sqlite" and not args.sqlite_path and not database_url and workers > 1:
        # Each thread would see its own private in-memory database.
        logger.warning("In-memory SQLite is per-thread; running serially.")
        workers = 1

    ensure_schema(engine, args.reset_schema)
    session_factory = create_session_factory(engine)
    users = UserRepository(session_factory)
    edges = EdgeRepository(session_factory)
    store = create_friend_store(session_factory)

    run_tag = f"{int(time.time())}"
    pool = [User(username=f"smoke-{run_tag}-{index}") for index in range(args.users)]
    users.create_users(pool)
    user_ids = [user.id for user in pool]
    logger.info("Created %d users", len(user_ids))

    seed_rng = random.Random(args.seed)
    seeds = [seed_rng.randrange(2**32) for _ in range(args.operations)]

    def worker(seed: int) -> dict[str, Any]:
        return run_batch(store, random.Random(seed), user_ids, args.batch_size, args.retries)

    start = time.perf_counter()
    if workers > 1:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            results = list(executor.map(worker, seeds))
    else:
        results = [worker(seed) for seed in seeds]
    elapsed_ms = (time.perf_counter() - start) * 1000

    report = edges.audit(user_ids)
    statuses: dict[str, int] = {}
    for result in results:
        statuses[result["status"]] = statuses.get(result["status"], 0) + 1
    logger.info("Ran %d batches in %.1fms: %s", len(results), elapsed_ms, statuses)
    if not report.ok:
        logger.warning(
            "Audit found %d counter drift(s) and %d unpaired edge(s)",
            len(report.count_drift),
            len(report.unpaired_edges),
        )

    payload = {
        "database": database_url or (f"sqlite://{args.sqlite_path}" if args.sqlite_path else "sqlite://:memory:"),
        "users": len(user_ids),
        "workers": workers,
        "batches": len(results),
        "statuses": statuses,
        "elapsed_ms": elapsed_ms,
        "avg_attempts": sum(result["attempts"] for result in results) / len(results) if results else 0.0,
        "audit": {
            "ok": report.ok,
            "count_drift": {user_id: list(values) for user_id, values in report.count_drift.items()},
            "unpaired_edges": [[source, target, state.name] for source, target, state in report.unpaired_edges],
        },
    }

    output = json.dumps(payload, indent=2)
    if args.output:
        args.output.write_text(output)
    else:
        print(output)

    if not report.ok:
        sys.exit(1)


if __name__ == "__main__":
    main()
