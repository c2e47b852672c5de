from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

AgentKey = tuple[str, int]

# Legacy single-file indexes kept one checkpoint field per chain.
LEGACY_CHECKPOINT_FIELDS = {
    'ethLastBlock': 'ethereum',
    'baseLastBlock': 'base'
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


class SyncState(str, Enum):
    INIT = 'INIT'
    RESUME = 'RESUME'
    SCAN = 'SCAN'
    FETCH = 'FETCH'
    FINALIZE = 'FINALIZE'
    DONE = 'DONE'
    CHECKPOINT_EXIT = 'CHECKPOINT_EXIT'


class _Document(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class MintInfo(_Document):
    token_id: int = Field(alias='tokenId')
    to: str | None = None
    block_number: int | None = Field(default=None, alias='blockNumber')
    tx_hash: str | None = Field(default=None, alias='txHash')


class PendingItem(_Document):
    id: int
    chain: str
    mint_info: MintInfo | None = Field(default=None, alias='mintInfo')

    @property
    def key(self) -> AgentKey:
        return self.chain, self.id


class ServiceEntry(_Document):
    name: Any = None
    type: Any = None
    version: Any = None
    endpoint: Any = None


class EntityRecord(_Document):
    """One registry token as published to data/agents/<chain>/<id>.json.

    A record with ``error`` set stands for a failed fetch and serializes only
    its identity, the error and the fetch time.
    """

    id: int
    owner: str | None = None
    chain: str
    name: str = ''
    description: str = ''
    image: str = ''
    active: bool = True
    x402_support: bool = Field(default=False, alias='x402Support')
    services: list[ServiceEntry] = Field(default_factory=list)
    registered_block: int | None = Field(default=None, alias='registeredBlock')
    tx_hash: str | None = Field(default=None, alias='txHash')
    raw_metadata: dict[str, Any] = Field(default_factory=dict, alias='rawMetadata')
    synced_at: str = Field(default_factory=utc_now_iso, alias='syncedAt')
    error: str | None = None

    @property
    def key(self) -> AgentKey:
        return self.chain, self.id

    @property
    def failed(self) -> bool:
        return self.error is not None

    @classmethod
    def failure(cls, id: int, chain: str, error: str) -> EntityRecord:
        return cls(id=id, chain=chain, error=error[:100])

    def to_document(self) -> dict[str, Any]:
        if self.failed:
            return {'id': self.id, 'error': self.error, 'chain': self.chain, 'syncedAt': self.synced_at}
        return self.model_dump(mode='json', by_alias=True, exclude={'error'})


@dataclass
class ChainStats:
    active: int = 0
    inactive: int = 0
    errors: int = 0
    x402: int = 0
    with_services: int = 0

    def to_document(self) -> dict[str, int]:
        return {
            'active': self.active,
            'inactive': self.inactive,
            'errors': self.errors,
            'x402': self.x402,
            'withServices': self.with_services
        }


@dataclass
class SyncStats:
    """Per-chain tallies folded from record documents."""

    chains: dict[str, ChainStats] = field(default_factory=dict)

    @classmethod
    def for_chains(cls, names: list[str]) -> SyncStats:
        return cls(chains={name: ChainStats() for name in names})

    def add(self, document: dict[str, Any]) -> SyncStats:
        chain = str(document.get('chain') or 'unknown')
        stats = self.chains.setdefault(chain, ChainStats())
        if document.get('error'):
            stats.errors += 1
            return self

        if document.get('active', True):
            stats.active += 1
        else:
            stats.inactive += 1
        if document.get('x402Support'):
            stats.x402 += 1
        if document.get('services'):
            stats.with_services += 1
        return self

    @property
    def total_errors(self) -> int:
        return sum(stats.errors for stats in self.chains.values())

    def to_document(self) -> dict[str, Any]:
        payload: dict[str, Any] = {name: self.chains[name].to_document() for name in sorted(self.chains)}
        payload['totalErrors'] = self.total_errors
        return payload


class SyncIndex(_Document):
    last_sync: str | None = Field(default=None, alias='lastSync')
    checkpoints: dict[str, int] = Field(default_factory=dict)
    total_agents: int = Field(default=0, alias='totalAgents')
    agents: list[dict[str, Any]] = Field(default_factory=list)
    stats: dict[str, Any] = Field(default_factory=dict)
    pending_agent_ids: list[PendingItem] | None = Field(default=None, alias='pendingAgentIds')

    @model_validator(mode='before')
    @classmethod
    def _migrate_legacy(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data

        migrated = dict(data)
        checkpoints = dict(migrated.get('checkpoints') or {})
        for legacy_field, chain in LEGACY_CHECKPOINT_FIELDS.items():
            value = migrated.pop(legacy_field, None)
            if value and chain not in checkpoints:
                checkpoints[chain] = int(value)
        migrated['checkpoints'] = checkpoints

        # Bare integer ids cannot be attributed to a chain; FINALIZE rebuilds the list from disk.
        agents = migrated.get('agents') or []
        migrated['agents'] = [agent for agent in agents if isinstance(agent, dict)]
        return migrated

    @property
    def has_pending(self) -> bool:
        return bool(self.pending_agent_ids)

    def checkpoint(self, chain: str) -> int | None:
        return self.checkpoints.get(chain)

    def to_document(self) -> dict[str, Any]:
        exclude = {'pending_agent_ids'} if self.pending_agent_ids is None else set()
        return self.model_dump(mode='json', by_alias=True, exclude=exclude)
