from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .errors import PersistenceError
from .models import AgentKey, EntityRecord, SyncIndex, SyncStats

LOGGER = logging.getLogger('erc8004_catalog.persistence')


def _dump(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False) + '\n'


def atomic_write_text(path: Path, text: str) -> None:
    """Replaces ``path`` in one step so readers see either the old or the new file."""
    tmp_name: str | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f'.{path.name}.', suffix='.tmp', dir=path.parent)
        with os.fdopen(fd, 'w', encoding='utf-8') as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as exc:
        raise PersistenceError(str(path), exc) from exc
    finally:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.unlink(tmp_name)


def agent_sort_key(key: AgentKey) -> tuple[str, int]:
    chain, agent_id = key
    return chain, -agent_id


class CatalogStore:
    """Per-agent record files plus the single summary index.

    Layout::

        <data_dir>/index.json
        <data_dir>/agents/<chain>/<id>.json
    """

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir)
        self.agents_dir = self.data_dir / 'agents'
        self.index_path = self.data_dir / 'index.json'
        self._index_lock = asyncio.Lock()

    def record_path(self, chain: str, agent_id: int) -> Path:
        return self.agents_dir / chain / f'{agent_id}.json'

    def write_record(self, record: EntityRecord) -> Path:
        path = self.record_path(record.chain, record.id)
        atomic_write_text(path, _dump(record.to_document()))
        return path

    def read_record(self, chain: str, agent_id: int) -> dict[str, Any] | None:
        path = self.record_path(chain, agent_id)
        try:
            payload = json.loads(path.read_text(encoding='utf-8'))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning('unreadable agent record path=%s error=%s', path, exc)
            return None
        return payload if isinstance(payload, dict) else None

    def is_failed(self, chain: str, agent_id: int) -> bool:
        record = self.read_record(chain, agent_id)
        return record is not None and bool(record.get('error'))

    def entity_keys(self) -> set[AgentKey]:
        keys: set[AgentKey] = set()
        if not self.agents_dir.exists():
            return keys

        for chain_dir in self.agents_dir.iterdir():
            if not chain_dir.is_dir():
                continue
            for path in chain_dir.glob('*.json'):
                try:
                    keys.add((chain_dir.name, int(path.stem)))
                except ValueError:
                    continue
        return keys

    def load_index(self) -> SyncIndex:
        if not self.index_path.exists():
            return SyncIndex()

        try:
            payload = json.loads(self.index_path.read_text(encoding='utf-8'))
            return SyncIndex.model_validate(payload)
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            LOGGER.warning('index unreadable, starting from defaults path=%s error=%s', self.index_path, exc)
            return SyncIndex()

    async def save_index(self, index: SyncIndex) -> None:
        async with self._index_lock:
            atomic_write_text(self.index_path, _dump(index.to_document()))

    def recompute_stats(self, chains: list[str], keys: set[AgentKey] | None = None) -> SyncStats:
        stats = SyncStats.for_chains(chains)
        for chain, agent_id in keys if keys is not None else self.entity_keys():
            document = self.read_record(chain, agent_id)
            if document is not None:
                stats.add(document)
        return stats

    def apply_catalog(self, index: SyncIndex, keys: set[AgentKey], stats: SyncStats) -> SyncIndex:
        ordered = sorted(keys, key=agent_sort_key)
        index.agents = [{'chain': chain, 'id': agent_id} for chain, agent_id in ordered]
        index.total_agents = len(ordered)
        index.stats = stats.to_document()
        return index
