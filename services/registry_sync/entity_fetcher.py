from __future__ import annotations

import asyncio
import logging
from typing import Any

from .content_resolver import ContentResolver
from .ledger_pool import LedgerClientPool
from .metrics import SyncMetrics
from .models import EntityRecord, PendingItem, ServiceEntry

LOGGER = logging.getLogger('erc8004_catalog.entity_fetcher')


def _text(value: Any, default: str) -> str:
    if value is None or value == '':
        return default
    return value if isinstance(value, str) else str(value)


def _flag(value: Any, default: bool) -> bool:
    if value is None:
        return default
    return bool(value)


def _services(value: Any) -> list[ServiceEntry]:
    if not isinstance(value, list):
        return []
    entries: list[ServiceEntry] = []
    for item in value:
        if not isinstance(item, dict):
            continue
        entries.append(
            ServiceEntry(
                name=item.get('name'),
                type=item.get('type'),
                version=item.get('version'),
                endpoint=item.get('endpoint')
            )
        )
    return entries


def build_record(item: PendingItem, owner: str, metadata: dict[str, Any]) -> EntityRecord:
    mint = item.mint_info
    return EntityRecord(
        id=item.id,
        owner=owner,
        chain=item.chain,
        name=_text(metadata.get('name'), f'Agent #{item.id}'),
        description=_text(metadata.get('description'), ''),
        image=_text(metadata.get('image'), ''),
        active=_flag(metadata.get('active'), True),
        x402_support=_flag(metadata.get('x402Support'), False),
        services=_services(metadata.get('services')),
        registered_block=mint.block_number if mint else None,
        tx_hash=mint.tx_hash if mint else None,
        raw_metadata=metadata
    )


class EntityFetcher:
    def __init__(
        self,
        pool: LedgerClientPool,
        resolver: ContentResolver,
        registry_address: str,
        metrics: SyncMetrics | None = None
    ) -> None:
        self.pool = pool
        self.resolver = resolver
        self.registry_address = registry_address
        self.metrics = metrics

    async def fetch(self, item: PendingItem) -> EntityRecord:
        try:
            record = await self._fetch(item)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning('agent fetch failed chain=%s id=%s error=%s', item.chain, item.id, str(exc)[:100])
            record = EntityRecord.failure(item.id, item.chain, str(exc) or type(exc).__name__)

        if self.metrics is not None:
            self.metrics.agent_fetched(item.chain, ok=not record.failed)
        return record

    async def _fetch(self, item: PendingItem) -> EntityRecord:
        uri, owner = await asyncio.gather(
            self.pool.call(item.chain, self.registry_address, 'tokenURI', [item.id]),
            self.pool.call(item.chain, self.registry_address, 'ownerOf', [item.id]),
            return_exceptions=True
        )
        for result in (uri, owner):
            if isinstance(result, BaseException):
                raise result
        metadata = await self.resolver.resolve(uri)
        return build_record(item, str(owner), metadata)
