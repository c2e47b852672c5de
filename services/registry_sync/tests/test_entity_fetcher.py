import asyncio
import unittest

from services.registry_sync.content_resolver import ContentResolver
from services.registry_sync.entity_fetcher import EntityFetcher, build_record
from services.registry_sync.ledger_pool import LedgerClientPool
from services.registry_sync.metrics import SyncMetrics
from services.registry_sync.models import MintInfo, PendingItem
from services.registry_sync.tests.fakes import OWNER, FakeChain, FakeContentSource, FakeLedger

REGISTRY = '0x8004A169FB4a3325136EB29fA0ceB6D2e539a432'


def _item(token_id: int, chain: str = 'base', block: int | None = 100) -> PendingItem:
    mint = MintInfo(token_id=token_id, to=OWNER, block_number=block, tx_hash='0xabc') if block else None
    return PendingItem(id=token_id, chain=chain, mint_info=mint)


class BuildRecordTests(unittest.TestCase):
    def test_fallbacks_for_missing_fields(self) -> None:
        record = build_record(_item(12), OWNER, {'description': 'no name here'})
        document = record.to_document()

        self.assertEqual(document['name'], 'Agent #12')
        self.assertTrue(document['active'])
        self.assertFalse(document['x402Support'])
        self.assertEqual(document['services'], [])
        self.assertEqual(document['image'], '')
        self.assertEqual(document['rawMetadata'], {'description': 'no name here'})
        self.assertNotIn('error', document)

    def test_metadata_fields_are_carried(self) -> None:
        metadata = {
            'name': 'Oracle',
            'active': False,
            'x402Support': True,
            'services': [
                {'name': 'A2A', 'endpoint': 'https://oracle.test/a2a', 'version': '0.3.0'},
                'not-a-service',
                {'name': 'MCP', 'type': 'mcp', 'endpoint': 'https://oracle.test/mcp'}
            ]
        }
        document = build_record(_item(3), OWNER, metadata).to_document()

        self.assertEqual(document['name'], 'Oracle')
        self.assertFalse(document['active'])
        self.assertTrue(document['x402Support'])
        self.assertEqual(
            document['services'],
            [
                {'name': 'A2A', 'type': None, 'version': '0.3.0', 'endpoint': 'https://oracle.test/a2a'},
                {'name': 'MCP', 'type': 'mcp', 'version': None, 'endpoint': 'https://oracle.test/mcp'}
            ]
        )
        self.assertEqual(document['registeredBlock'], 100)
        self.assertEqual(document['txHash'], '0xabc')
        self.assertEqual(document['chain'], 'base')

    def test_provenance_is_null_without_mint_info(self) -> None:
        document = build_record(_item(5, block=None), OWNER, {}).to_document()

        self.assertIsNone(document['registeredBlock'])
        self.assertIsNone(document['txHash'])


class EntityFetcherTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.chain = FakeChain(head=1000)
        for token_id in (41, 42, 43):
            self.chain.mint(100 + token_id, token_id, {'name': f'agent-{token_id}', 'x402Support': True})
        self.ledger = FakeLedger({'base': self.chain})
        pool = LedgerClientPool(self.ledger.endpoints(), client_factory=self.ledger.factory, backoff_seconds=0)
        resolver = ContentResolver(FakeContentSource(), ipfs_gateways=[])
        self.metrics = SyncMetrics()
        self.fetcher = EntityFetcher(pool, resolver, REGISTRY, metrics=self.metrics)

    async def test_fetches_owner_and_metadata(self) -> None:
        record = await self.fetcher.fetch(_item(41))

        self.assertFalse(record.failed)
        self.assertEqual(record.owner, OWNER)
        self.assertEqual(record.name, 'agent-41')
        self.assertTrue(record.x402_support)

    async def test_failure_is_isolated_within_batch(self) -> None:
        self.chain.failing_tokens.add(42)

        records = await asyncio.gather(*(self.fetcher.fetch(_item(token_id)) for token_id in (41, 42, 43)))

        by_id = {record.id: record for record in records}
        self.assertFalse(by_id[41].failed)
        self.assertFalse(by_id[43].failed)
        self.assertTrue(by_id[42].failed)
        self.assertEqual(set(by_id[42].to_document()), {'id', 'error', 'chain', 'syncedAt'})
        self.assertEqual(by_id[42].chain, 'base')
        self.assertLessEqual(len(by_id[42].error), 100)
        errors = self.metrics.registry.get_sample_value(
            'erc8004_catalog_agents_fetched_total',
            {'chain': 'base', 'outcome': 'error'}
        )
        self.assertEqual(errors, 1.0)

    async def test_unresolvable_metadata_uses_fallbacks(self) -> None:
        self.chain.token_uris[43] = 'ipfs://bafy-unreachable'

        record = await self.fetcher.fetch(_item(43))

        self.assertFalse(record.failed)
        self.assertEqual(record.name, 'Agent #43')
        self.assertEqual(record.raw_metadata, {})
