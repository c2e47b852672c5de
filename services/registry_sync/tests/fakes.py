from __future__ import annotations

import asyncio
import base64
import json
from dataclasses import dataclass, field
from typing import Any, Sequence

from services.registry_sync.mint_scanner import TRANSFER_TOPIC, ZERO_TOPIC

OWNER = '0x1111111111111111111111111111111111111111'


def address_topic(address: str) -> str:
    return '0x' + address.lower().replace('0x', '').rjust(64, '0')


def uint_topic(value: int) -> str:
    return '0x' + format(value, '064x')


def data_uri(document: dict[str, Any]) -> str:
    encoded = base64.b64encode(json.dumps(document).encode('utf-8')).decode('ascii')
    return f'data:application/json;base64,{encoded}'


def transfer_log(block: int, token_id: int, *, to: str = OWNER, sender: str | None = None) -> dict[str, Any]:
    from_topic = ZERO_TOPIC if sender is None else address_topic(sender)
    return {
        'topics': [TRANSFER_TOPIC, from_topic, address_topic(to), uint_topic(token_id)],
        'blockNumber': block,
        'transactionHash': bytes.fromhex(format(block * 1000 + token_id, '064x'))
    }


@dataclass
class FakeChain:
    head: int
    logs: list[dict[str, Any]] = field(default_factory=list)
    token_uris: dict[int, str] = field(default_factory=dict)
    owners: dict[int, str] = field(default_factory=dict)
    failing_windows: set[int] = field(default_factory=set)
    failing_tokens: set[int] = field(default_factory=set)
    log_queries: list[tuple[int, int]] = field(default_factory=list)

    def mint(self, block: int, token_id: int, metadata: dict[str, Any] | None = None) -> None:
        self.logs.append(transfer_log(block, token_id))
        self.token_uris[token_id] = data_uri(metadata if metadata is not None else {'name': f'agent-{token_id}'})
        self.owners[token_id] = OWNER


class FakeLedgerClient:
    def __init__(self, ledger: FakeLedger, chain: FakeChain, endpoint: str) -> None:
        self.ledger = ledger
        self.chain = chain
        self.endpoint = endpoint

    def _check_endpoint(self) -> None:
        self.ledger.calls.append(self.endpoint)
        if self.endpoint in self.ledger.down_endpoints:
            raise ConnectionError(f'{self.endpoint} unreachable')

    async def height(self) -> int:
        self._check_endpoint()
        return self.chain.head

    async def logs(self, address: str, topics: list[Any], from_block: int, to_block: int) -> list[Any]:
        self._check_endpoint()
        self.chain.log_queries.append((from_block, to_block))
        if from_block in self.chain.failing_windows:
            raise RuntimeError(f'query returned more than 10000 results [{from_block}-{to_block}]')
        matched = []
        for log in self.chain.logs:
            if not from_block <= log['blockNumber'] <= to_block:
                continue
            if len(topics) > 1 and topics[1] is not None and log['topics'][1] != topics[1]:
                continue
            matched.append(log)
        return matched

    async def read_function(self, address: str, function_name: str, args: Sequence[Any]) -> Any:
        self._check_endpoint()
        token_id = int(args[0])
        if token_id in self.chain.failing_tokens:
            raise RuntimeError(f'execution reverted: {function_name}({token_id})')
        if function_name == 'tokenURI':
            return self.chain.token_uris.get(token_id, '')
        if function_name == 'ownerOf':
            return self.chain.owners[token_id]
        raise AttributeError(function_name)

    async def close(self) -> None:
        self.ledger.closed.append(self.endpoint)


class FakeLedger:
    def __init__(self, chains: dict[str, FakeChain]) -> None:
        self.chains = chains
        self.calls: list[str] = []
        self.down_endpoints: set[str] = set()
        self.closed: list[str] = []

    def endpoints(self) -> dict[str, list[str]]:
        return {name: [f'https://{name}-primary.test', f'https://{name}-backup.test'] for name in self.chains}

    def factory(self, chain: str, endpoint: str) -> FakeLedgerClient:
        return FakeLedgerClient(self, self.chains[chain], endpoint)


class FakeContentSource:
    """Maps url -> (delay_seconds, payload bytes | exception)."""

    def __init__(self, responses: dict[str, tuple[float, Any]] | None = None) -> None:
        self.responses = responses or {}
        self.requested: list[str] = []

    async def fetch(self, url: str, timeout_seconds: float) -> bytes:
        self.requested.append(url)
        if url not in self.responses:
            raise ConnectionError(f'no route to {url}')
        delay, payload = self.responses[url]
        if delay:
            await asyncio.sleep(delay)
        if isinstance(payload, BaseException):
            raise payload
        return payload


class StepClock:
    """Returns 0, 1, 2, ... on successive calls."""

    def __init__(self) -> None:
        self.ticks = -1

    def __call__(self) -> float:
        self.ticks += 1
        return float(self.ticks)
