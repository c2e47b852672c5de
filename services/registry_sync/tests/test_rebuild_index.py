import json
import tempfile
import unittest
from pathlib import Path

from services.registry_sync.models import EntityRecord, MintInfo, PendingItem, SyncIndex
from services.registry_sync.persistence import CatalogStore
from services.registry_sync.rebuild_index import rebuild


class RebuildIndexTests(unittest.IsolatedAsyncioTestCase):
    async def test_stale_index_is_rederived_from_records(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = CatalogStore(Path(tmp))
            stale = SyncIndex(
                checkpoints={'ethereum': 24_500_000, 'base': 41_700_000},
                total_agents=1,
                agents=[{'chain': 'base', 'id': 1}]
            )
            stale.pending_agent_ids = [PendingItem(id=5, chain='base', mint_info=MintInfo(token_id=5))]
            await store.save_index(stale)
            store.write_record(EntityRecord(id=1, chain='base', owner='0x1', name='one'))
            store.write_record(EntityRecord(id=2, chain='base', owner='0x1', name='two', active=False))
            store.write_record(EntityRecord(id=2, chain='ethereum', owner='0x1', name='eth two'))

            index = await rebuild(store, ['ethereum', 'base'])

            payload = json.loads(store.index_path.read_text(encoding='utf-8'))
            self.assertEqual(index.total_agents, 3)
            self.assertEqual(
                payload['agents'],
                [{'chain': 'base', 'id': 2}, {'chain': 'base', 'id': 1}, {'chain': 'ethereum', 'id': 2}]
            )
            self.assertEqual(payload['stats']['base']['inactive'], 1)
            self.assertEqual(payload['stats']['ethereum']['active'], 1)
            self.assertEqual(payload['checkpoints'], {'ethereum': 24_500_000, 'base': 41_700_000})
            self.assertEqual(payload['pendingAgentIds'][0]['id'], 5)
