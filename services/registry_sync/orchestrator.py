from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from .entity_fetcher import EntityFetcher
from .ledger_pool import LedgerClientPool
from .metrics import SyncMetrics
from .mint_scanner import MintScanner, ScanResult
from .models import AgentKey, MintInfo, PendingItem, SyncIndex, SyncState, SyncStats, utc_now_iso
from .persistence import CatalogStore

LOGGER = logging.getLogger('erc8004_catalog.orchestrator')


@dataclass(frozen=True)
class SyncOptions:
    chains: tuple[str, ...]
    start_blocks: dict[str, int]
    parallel_fetches: int = 10
    deadline_seconds: float = 19_800.0
    force_refresh: bool = False
    scan_chains_concurrently: bool = False
    batch_delay_seconds: float = 0.15


@dataclass
class SyncOutcome:
    state: SyncState
    fetched: int = 0
    failed: int = 0
    remaining: int = 0
    total_agents: int = 0
    scans: dict[str, ScanResult] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        return 0 if self.state in {SyncState.DONE, SyncState.CHECKPOINT_EXIT} else 1


@dataclass
class _FetchProgress:
    stats: SyncStats
    touched: set[AgentKey] = field(default_factory=set)
    fetched: int = 0
    failed: int = 0
    drained: bool = True
    remaining: int = 0


class SyncOrchestrator:
    """Drives one sync run: INIT -> (RESUME | SCAN) -> FETCH -> FINALIZE -> DONE.

    FETCH exits through CHECKPOINT_EXIT when the wall-clock deadline passes
    between batches; the saved pending queue makes the next run RESUME.
    """

    def __init__(
        self,
        options: SyncOptions,
        *,
        pool: LedgerClientPool,
        scanner: MintScanner,
        fetcher: EntityFetcher,
        store: CatalogStore,
        metrics: SyncMetrics | None = None,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.options = options
        self.pool = pool
        self.scanner = scanner
        self.fetcher = fetcher
        self.store = store
        self.metrics = metrics
        self.clock = clock
        self.state = SyncState.INIT
        self._started_at = 0.0

    def _transition(self, state: SyncState) -> None:
        LOGGER.info('state %s -> %s', self.state.value, state.value)
        self.state = state

    async def run(self) -> SyncOutcome:
        self.state = SyncState.INIT
        self._started_at = self.clock()
        index = self.store.load_index()
        existing = self.store.entity_keys()
        LOGGER.info(
            'sync starting chains=%s existing=%s pending=%s force_refresh=%s',
            ','.join(self.options.chains),
            len(existing),
            len(index.pending_agent_ids or []),
            self.options.force_refresh
        )

        outcome = SyncOutcome(state=self.state)
        if index.has_pending and not self.options.force_refresh:
            self._transition(SyncState.RESUME)
            queue = list(index.pending_agent_ids or [])
            LOGGER.info('resuming interrupted run pending=%s', len(queue))
        else:
            self._transition(SyncState.SCAN)
            queue = await self._scan(index, existing, outcome)

        self._transition(SyncState.FETCH)
        progress = await self._fetch(index, queue)
        outcome.fetched = progress.fetched
        outcome.failed = progress.failed
        outcome.remaining = progress.remaining

        if not progress.drained:
            self._transition(SyncState.CHECKPOINT_EXIT)
            outcome.state = self.state
            LOGGER.info(
                'deadline reached, checkpoint saved fetched=%s remaining=%s',
                progress.fetched,
                progress.remaining
            )
            return outcome

        self._transition(SyncState.FINALIZE)
        index = await self._finalize(index, progress)
        outcome.total_agents = index.total_agents

        self._transition(SyncState.DONE)
        outcome.state = self.state
        if self.metrics is not None:
            self.metrics.completed()
        return outcome

    def _from_block(self, index: SyncIndex, chain: str) -> int:
        checkpoint = index.checkpoint(chain)
        if self.options.force_refresh or checkpoint is None:
            return self.options.start_blocks[chain]
        return checkpoint + 1

    def _enqueue(
        self,
        queue: dict[AgentKey, PendingItem],
        chain: str,
        mints: dict[int, MintInfo],
        existing: set[AgentKey]
    ) -> None:
        for token_id, mint in mints.items():
            key = (chain, token_id)
            if key in queue:
                continue
            if not self.options.force_refresh and key in existing and not self.store.is_failed(chain, token_id):
                continue
            queue[key] = PendingItem(id=token_id, chain=chain, mint_info=mint)

    async def _scan(
        self,
        index: SyncIndex,
        existing: set[AgentKey],
        outcome: SyncOutcome
    ) -> list[PendingItem]:
        heights = await asyncio.gather(*(self.pool.current_height(chain) for chain in self.options.chains))
        head_by_chain = dict(zip(self.options.chains, heights))
        for chain, head in head_by_chain.items():
            LOGGER.info('chain head chain=%s block=%s', chain, head)

        queue: dict[AgentKey, PendingItem] = {item.key: item for item in index.pending_agent_ids or []}

        async def save_progress(chain: str, checkpoint: int, mints: dict[int, MintInfo]) -> None:
            self._enqueue(queue, chain, mints, existing)
            self._advance_checkpoint(index, chain, checkpoint)
            index.pending_agent_ids = list(queue.values())
            await self.store.save_index(index)

        async def scan_chain(chain: str) -> None:
            from_block = self._from_block(index, chain)
            result = await self.scanner.scan(chain, from_block, head_by_chain[chain], on_checkpoint=save_progress)
            self._enqueue(queue, chain, result.mints, existing)
            self._advance_checkpoint(index, chain, result.checkpoint)
            outcome.scans[chain] = result

        if self.options.scan_chains_concurrently:
            await asyncio.gather(*(scan_chain(chain) for chain in self.options.chains))
        else:
            for chain in self.options.chains:
                await scan_chain(chain)

        pending = list(queue.values())
        index.pending_agent_ids = pending
        await self.store.save_index(index)
        if self.metrics is not None:
            self.metrics.pending(len(pending))
        LOGGER.info('fetch queue persisted pending=%s', len(pending))
        return pending

    def _advance_checkpoint(self, index: SyncIndex, chain: str, checkpoint: int) -> None:
        previous = index.checkpoint(chain)
        if self.options.force_refresh or previous is None or checkpoint > previous:
            if checkpoint < self.options.start_blocks[chain]:
                if previous is not None:
                    LOGGER.warning(
                        'rescan did not reach start block, checkpoint kept chain=%s start_block=%s checkpoint=%s',
                        chain,
                        self.options.start_blocks[chain],
                        previous
                    )
                return
            index.checkpoints[chain] = checkpoint
            if self.metrics is not None:
                self.metrics.checkpoint(chain, checkpoint)

    def _deadline_reached(self) -> bool:
        return self.clock() - self._started_at >= self.options.deadline_seconds

    async def _fetch(self, index: SyncIndex, queue: list[PendingItem]) -> _FetchProgress:
        progress = _FetchProgress(stats=SyncStats.for_chains(list(self.options.chains)))
        batch_size = max(1, self.options.parallel_fetches)
        total = len(queue)

        for offset in range(0, total, batch_size):
            if self._deadline_reached():
                tail = queue[offset:]
                index.pending_agent_ids = tail
                await self.store.save_index(index)
                progress.drained = False
                progress.remaining = len(tail)
                if self.metrics is not None:
                    self.metrics.pending(len(tail))
                return progress

            batch = queue[offset:offset + batch_size]
            records = await asyncio.gather(*(self.fetcher.fetch(item) for item in batch))
            for record in records:
                self.store.write_record(record)
                if record.key not in progress.touched:
                    progress.touched.add(record.key)
                    progress.stats = progress.stats.add(record.to_document())
                progress.fetched += 1
                if record.failed:
                    progress.failed += 1

            done = offset + len(batch)
            index.pending_agent_ids = queue[done:]
            await self.store.save_index(index)
            if self.metrics is not None:
                self.metrics.pending(total - done)

            pct = round(done / total * 100)
            if pct % 10 == 0 or done == total:
                LOGGER.info('fetch progress done=%s total=%s pct=%s', done, total, pct)

            if self.options.batch_delay_seconds > 0 and done < total:
                await asyncio.sleep(self.options.batch_delay_seconds)

        return progress

    async def _finalize(self, index: SyncIndex, progress: _FetchProgress) -> SyncIndex:
        keys = self.store.entity_keys()
        untouched = keys - progress.touched
        stats = progress.stats
        for chain, agent_id in untouched:
            document = self.store.read_record(chain, agent_id)
            if document is not None:
                stats = stats.add(document)

        index = self.store.apply_catalog(index, keys, stats)
        index.last_sync = utc_now_iso()
        index.pending_agent_ids = None
        await self.store.save_index(index)

        LOGGER.info('sync complete total=%s fetched=%s errors=%s', index.total_agents, progress.fetched, stats.total_errors)
        for chain in sorted(stats.chains):
            chain_stats = stats.chains[chain]
            LOGGER.info(
                'chain totals chain=%s active=%s inactive=%s errors=%s x402=%s with_services=%s',
                chain,
                chain_stats.active,
                chain_stats.inactive,
                chain_stats.errors,
                chain_stats.x402,
                chain_stats.with_services
            )
        return index
