"""Main entry point: starts the REST API or seeds the default policy rows.

Usage:
    python -m incentra.main                        # Start REST API server
    python -m incentra.main --seed-defaults        # Store the default tables as policies
    python -m incentra.main --seed-defaults --first-author-percentage 35 --corresponding-author-percentage 35
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from incentra.config import settings

logger = logging.getLogger("incentra")


def main():
    parser = argparse.ArgumentParser(
        description="Incentra: research incentive and IPR workflow service",
    )
    parser.add_argument(
        "--host",
        default=settings.server.host,
        help=f"API host (default: {settings.server.host})",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=settings.server.port,
        help=f"API port (default: {settings.server.port})",
    )
    parser.add_argument(
        "--seed-defaults",
        action="store_true",
        help="Write the built-in incentive tables as active policy rows and exit",
    )
    parser.add_argument("--first-author-percentage", type=float, default=40.0)
    parser.add_argument("--corresponding-author-percentage", type=float, default=40.0)

    args = parser.parse_args()

    logging.basicConfig(
        level=settings.server.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings.ensure_dirs()

    if args.seed_defaults:
        count = asyncio.run(_seed_defaults(args.first_author_percentage, args.corresponding_author_percentage))
        print(f"Stored {count} policy rows in {settings.db_path}", file=sys.stderr)
    else:
        _start_api(args.host, args.port)


async def _seed_defaults(first_author_percentage: float, corresponding_author_percentage: float) -> int:
    from incentra.collaborators import Actor
    from incentra.database import get_db
    from incentra.policy_store import add_policy, default_policy_rows

    system = Actor(id="system", role="staff", capabilities=frozenset({"*"}))
    db = await get_db()
    try:
        rows = default_policy_rows(first_author_percentage, corresponding_author_percentage)
        for row in rows:
            policy = await add_policy(db, system, row)
            logger.info("seeded policy %s scope=%s sub_type=%s", policy.policy_id, policy.scope.value, policy.sub_type)
        return len(rows)
    finally:
        await db.close()


def _start_api(host: str, port: int):
    """Start the REST API server."""
    import uvicorn

    print(f"Starting Incentra REST API at http://{host}:{port}", file=sys.stderr)
    print(f"API docs at http://{host}:{port}/docs", file=sys.stderr)
    uvicorn.run(
        "incentra.api:app",
        host=host,
        port=port,
        log_level=settings.server.log_level,
        proxy_headers=True,
    )


if __name__ == "__main__":
    main()
