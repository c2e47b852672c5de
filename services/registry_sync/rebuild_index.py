#!/usr/bin/env python3
"""Re-derive the summary index from the agent record files on disk.

Checkpoints and any pending queue are kept; ``agents``, ``totalAgents`` and
``stats`` are recomputed. Use after a crash left ``index.json`` stale.
"""
from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

from .config import get_settings
from .models import SyncIndex
from .persistence import CatalogStore


async def rebuild(store: CatalogStore, chains: list[str]) -> SyncIndex:
    index = store.load_index()
    keys = store.entity_keys()
    stats = store.recompute_stats(chains, keys)
    index = store.apply_catalog(index, keys, stats)
    await store.save_index(index)
    return index


def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description='Rebuild data/index.json from data/agents/')
    parser.add_argument('--data-dir', default=str(settings.data_dir), help='Catalog data directory')
    args = parser.parse_args()

    store = CatalogStore(Path(args.data_dir))
    index = asyncio.run(rebuild(store, [chain.name for chain in settings.chains]))

    print(f'rebuilt {store.index_path}')
    print(f'[rebuild] total agents: {index.total_agents}')
    for chain, stats in index.stats.items():
        if isinstance(stats, dict):
            print(
                f"[rebuild] {chain}: active={stats['active']} inactive={stats['inactive']} "
                f"errors={stats['errors']} x402={stats['x402']} with_services={stats['withServices']}"
            )
    print(f"[rebuild] pending: {len(index.pending_agent_ids or [])}")


if __name__ == '__main__':
    main()
