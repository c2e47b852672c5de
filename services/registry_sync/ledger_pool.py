from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Protocol, Sequence

from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from .errors import LedgerUnavailableError

LOGGER = logging.getLogger('erc8004_catalog.ledger_pool')

REGISTRY_ABI = [
    {
        'inputs': [{'internalType': 'uint256', 'name': 'tokenId', 'type': 'uint256'}],
        'name': 'tokenURI',
        'outputs': [{'internalType': 'string', 'name': '', 'type': 'string'}],
        'stateMutability': 'view',
        'type': 'function'
    },
    {
        'inputs': [{'internalType': 'uint256', 'name': 'tokenId', 'type': 'uint256'}],
        'name': 'ownerOf',
        'outputs': [{'internalType': 'address', 'name': '', 'type': 'address'}],
        'stateMutability': 'view',
        'type': 'function'
    }
]


class LedgerClient(Protocol):
    async def height(self) -> int: ...

    async def logs(
        self,
        address: str,
        topics: list[Any],
        from_block: int,
        to_block: int
    ) -> list[Any]: ...

    async def read_function(self, address: str, function_name: str, args: Sequence[Any]) -> Any: ...

    async def close(self) -> None: ...


ClientFactory = Callable[[str, str], LedgerClient]


class Web3LedgerClient:
    def __init__(self, endpoint: str) -> None:
        self.endpoint = endpoint
        self.web3 = AsyncWeb3(AsyncHTTPProvider(endpoint))

    async def height(self) -> int:
        return int(await self.web3.eth.block_number)

    async def logs(self, address: str, topics: list[Any], from_block: int, to_block: int) -> list[Any]:
        return list(
            await self.web3.eth.get_logs(
                {
                    'fromBlock': from_block,
                    'toBlock': to_block,
                    'address': Web3.to_checksum_address(address),
                    'topics': topics
                }
            )
        )

    async def read_function(self, address: str, function_name: str, args: Sequence[Any]) -> Any:
        contract = self.web3.eth.contract(address=Web3.to_checksum_address(address), abi=REGISTRY_ABI)
        function = getattr(contract.functions, function_name)
        return await function(*args).call()

    async def close(self) -> None:
        await self.web3.provider.disconnect()


def web3_client_factory(chain: str, endpoint: str) -> LedgerClient:
    return Web3LedgerClient(endpoint)


def next_endpoint(endpoints: Sequence[str], attempt: int) -> str:
    if not endpoints:
        raise ValueError('endpoint list is empty')
    return endpoints[attempt % len(endpoints)]


class LedgerClientPool:
    """Redundant read endpoints per chain.

    Every attempt builds a fresh client for the endpoint chosen by
    ``next_endpoint`` and closes it when the attempt ends; a failure moves
    the next attempt to the following endpoint after a linear backoff.
    Exhausted attempts raise ``LedgerUnavailableError``.
    """

    def __init__(
        self,
        endpoints: dict[str, list[str]],
        *,
        client_factory: ClientFactory = web3_client_factory,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        timeout_seconds: float = 30.0
    ) -> None:
        self.endpoints = {chain: list(urls) for chain, urls in endpoints.items()}
        self.client_factory = client_factory
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.timeout_seconds = timeout_seconds

    @property
    def chains(self) -> list[str]:
        return list(self.endpoints)

    async def current_height(self, chain: str) -> int:
        return await self._with_retry(chain, 'height', lambda client: client.height())

    async def get_logs(
        self,
        chain: str,
        address: str,
        event_topic: str,
        indexed_filter: Sequence[Any],
        from_block: int,
        to_block: int
    ) -> list[Any]:
        topics = [event_topic, *indexed_filter]
        return await self._with_retry(
            chain,
            f'logs[{from_block}-{to_block}]',
            lambda client: client.logs(address, topics, from_block, to_block)
        )

    async def call(self, chain: str, address: str, function_name: str, args: Sequence[Any]) -> Any:
        return await self._with_retry(
            chain,
            function_name,
            lambda client: client.read_function(address, function_name, args)
        )

    async def _with_retry(
        self,
        chain: str,
        operation: str,
        request: Callable[[LedgerClient], Awaitable[Any]]
    ) -> Any:
        if chain not in self.endpoints:
            raise KeyError(f'no endpoints configured for chain={chain}')
        endpoints = self.endpoints[chain]

        last_error: BaseException | None = None
        for attempt in range(self.max_attempts):
            endpoint = next_endpoint(endpoints, attempt)
            client = self.client_factory(chain, endpoint)
            try:
                return await asyncio.wait_for(request(client), timeout=self.timeout_seconds)
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                LOGGER.debug(
                    'rpc attempt failed chain=%s op=%s endpoint=%s attempt=%s error=%s',
                    chain,
                    operation,
                    endpoint,
                    attempt + 1,
                    exc
                )
            finally:
                await client.close()

            if attempt + 1 < self.max_attempts:
                await asyncio.sleep(self.backoff_seconds * (attempt + 1))

        raise LedgerUnavailableError(chain, operation, self.max_attempts, last_error)
