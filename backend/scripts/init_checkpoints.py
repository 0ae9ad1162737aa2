#!/usr/bin/env python3
"""
Create the sync tables and seed one checkpoint per entity type.

Existing checkpoints are left alone unless --reset is given, which rewinds
the selected entities to the epoch so their next sync refetches everything.
"""

import argparse
import asyncio
import sys

from ledgersync.database import async_session_maker, engine, init_db
from ledgersync.entities import ALL_ENTITY_TYPES, parse_entity_types
from ledgersync.exceptions import ConcurrentSyncConflict, InvalidEntityType
from ledgersync.services.checkpoint_store import CheckpointStore


def log(msg):
    """Print with flush for immediate output."""
    print(msg, flush=True)


async def main(entity_names: list[str] | None, reset: bool) -> int:
    try:
        entity_types = parse_entity_types(entity_names) if entity_names else ALL_ENTITY_TYPES
    except InvalidEntityType as e:
        log(str(e))
        return 2

    await init_db()
    store = CheckpointStore(async_session_maker)

    states = await store.initialize_all(entity_types)
    failures = 0
    for state in states:
        if reset:
            try:
                state = await store.reset(state.entity_type)
            except ConcurrentSyncConflict as e:
                log(f"  {state.entity_type:<20} not reset: {e}")
                failures += 1
                continue
        log(f"  {state.entity_type:<20} {state.status:<10} cursor={state.cursor.isoformat()}")

    await engine.dispose()
    log(f"Initialized {len(states)} checkpoints" + (" (reset)" if reset else ""))
    return 1 if failures else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "entities",
        nargs="*",
        help="Entity types to initialise (default: all)",
    )
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Rewind the selected checkpoints to the epoch",
    )
    args = parser.parse_args()
    sys.exit(asyncio.run(main(args.entities, args.reset)))
