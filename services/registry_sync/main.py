from __future__ import annotations

import asyncio
import logging
import os
import sys

from .config import Settings, get_settings
from .content_resolver import ContentResolver, HttpContentSource
from .entity_fetcher import EntityFetcher
from .ledger_pool import LedgerClientPool
from .metrics import SyncMetrics
from .mint_scanner import MintScanner
from .models import SyncState
from .orchestrator import SyncOptions, SyncOrchestrator, SyncOutcome
from .persistence import CatalogStore

LOGGER = logging.getLogger('erc8004_catalog.sync')


def build_options(settings: Settings) -> SyncOptions:
    return SyncOptions(
        chains=tuple(chain.name for chain in settings.chains),
        start_blocks={chain.name: chain.start_block for chain in settings.chains},
        parallel_fetches=settings.parallel_fetches,
        deadline_seconds=settings.deadline_seconds,
        force_refresh=settings.force_refresh,
        scan_chains_concurrently=settings.scan_chains_concurrently,
        batch_delay_seconds=settings.batch_delay_seconds
    )


async def run_sync(settings: Settings, metrics: SyncMetrics) -> SyncOutcome:
    pool = LedgerClientPool(
        settings.endpoints,
        max_attempts=settings.rpc_max_attempts,
        backoff_seconds=settings.rpc_backoff_seconds,
        timeout_seconds=settings.rpc_timeout_seconds
    )
    source = HttpContentSource()
    resolver = ContentResolver(
        source,
        ipfs_gateways=settings.ipfs_gateways,
        http_timeout_seconds=settings.http_timeout_seconds,
        ipfs_timeout_seconds=settings.ipfs_timeout_seconds
    )
    scanner = MintScanner(
        pool,
        settings.registry_address,
        block_chunks={chain.name: chain.block_chunk for chain in settings.chains},
        checkpoint_every=settings.checkpoint_every,
        window_delay_seconds=settings.window_delay_seconds,
        metrics=metrics
    )
    orchestrator = SyncOrchestrator(
        build_options(settings),
        pool=pool,
        scanner=scanner,
        fetcher=EntityFetcher(pool, resolver, settings.registry_address, metrics=metrics),
        store=CatalogStore(settings.data_dir),
        metrics=metrics
    )
    try:
        return await orchestrator.run()
    finally:
        await source.aclose()


def main() -> None:
    logging.basicConfig(
        level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s'
    )
    settings = get_settings()
    metrics = SyncMetrics()
    LOGGER.info(
        'starting service=%s registry=%s chains=%s data_dir=%s',
        settings.service_name,
        settings.registry_address,
        ','.join(chain.name for chain in settings.chains),
        settings.data_dir
    )

    exit_code = 1
    try:
        outcome = asyncio.run(run_sync(settings, metrics))
        exit_code = outcome.exit_code
        if outcome.state == SyncState.CHECKPOINT_EXIT:
            LOGGER.info('partial run, next invocation resumes remaining=%s', outcome.remaining)
    except Exception:
        LOGGER.exception('sync failed')
    finally:
        if settings.metrics_path is not None:
            metrics.write(settings.metrics_path)

    sys.exit(exit_code)


if __name__ == '__main__':
    main()
