from __future__ import annotations

import logging
import time
from pathlib import Path

from prometheus_client import CollectorRegistry, Counter, Gauge, write_to_textfile

LOGGER = logging.getLogger('erc8004_catalog.metrics')


class SyncMetrics:
    def __init__(self) -> None:
        self.registry = CollectorRegistry()
        self.windows_total = Counter(
            'erc8004_catalog_scan_windows_total',
            'Scanned log windows by outcome',
            ['chain', 'status'],
            registry=self.registry
        )
        self.agents_fetched_total = Counter(
            'erc8004_catalog_agents_fetched_total',
            'Fetched agent records by outcome',
            ['chain', 'outcome'],
            registry=self.registry
        )
        self.checkpoint_block = Gauge(
            'erc8004_catalog_checkpoint_block',
            'Last fully scanned block',
            ['chain'],
            registry=self.registry
        )
        self.pending_agents = Gauge(
            'erc8004_catalog_pending_agents',
            'Agents discovered but not yet fetched',
            registry=self.registry
        )
        self.last_success = Gauge(
            'erc8004_catalog_last_success_timestamp_seconds',
            'Unix time of the last completed sync',
            registry=self.registry
        )

    def window_scanned(self, chain: str, ok: bool) -> None:
        self.windows_total.labels(chain=chain, status='ok' if ok else 'failed').inc()

    def agent_fetched(self, chain: str, ok: bool) -> None:
        self.agents_fetched_total.labels(chain=chain, outcome='ok' if ok else 'error').inc()

    def checkpoint(self, chain: str, block: int) -> None:
        self.checkpoint_block.labels(chain=chain).set(block)

    def pending(self, count: int) -> None:
        self.pending_agents.set(count)

    def completed(self) -> None:
        self.last_success.set(time.time())

    def write(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        write_to_textfile(str(path), self.registry)
        LOGGER.info('metrics written path=%s', path)
