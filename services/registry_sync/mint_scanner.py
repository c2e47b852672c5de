from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from eth_abi import decode
from web3 import Web3

from .ledger_pool import LedgerClientPool
from .metrics import SyncMetrics
from .models import MintInfo

LOGGER = logging.getLogger('erc8004_catalog.mint_scanner')

ZERO_ADDRESS = '0x0000000000000000000000000000000000000000'
ZERO_TOPIC = '0x' + '00' * 32

PROGRESS_EVERY_WINDOWS = 50

CheckpointCallback = Callable[[str, int, dict[int, MintInfo]], Awaitable[None]]


def _hex_prefixed(value: Any) -> str:
    raw = value.hex() if hasattr(value, 'hex') else str(value)
    if raw.startswith('0x'):
        return raw
    return f'0x{raw}'


TRANSFER_TOPIC = _hex_prefixed(Web3.keccak(text='Transfer(address,address,uint256)'))


def _topic_bytes(topic: Any) -> bytes:
    if isinstance(topic, (bytes, bytearray)):
        return bytes(topic)
    return bytes.fromhex(_hex_prefixed(topic)[2:])


def _topic_to_address(topic: Any) -> str:
    return Web3.to_checksum_address(decode(['address'], _topic_bytes(topic))[0])


def parse_mint_log(log: Any) -> MintInfo | None:
    """Decodes a Transfer log; returns None unless it is a mint."""
    topics = log['topics']
    if len(topics) < 4:
        return None
    if _topic_to_address(topics[1]) != ZERO_ADDRESS:
        return None

    (token_id,) = decode(['uint256'], _topic_bytes(topics[3]))
    tx_hash = log.get('transactionHash')
    block_number = log.get('blockNumber')
    return MintInfo(
        token_id=int(token_id),
        to=_topic_to_address(topics[2]),
        block_number=int(block_number) if block_number is not None else None,
        tx_hash=_hex_prefixed(tx_hash) if tx_hash is not None else None
    )


@dataclass
class ScanResult:
    chain: str
    from_block: int
    to_block: int
    mints: dict[int, MintInfo] = field(default_factory=dict)
    checkpoint: int = 0
    windows: int = 0
    failed_windows: list[tuple[int, int]] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed_windows


class MintScanner:
    def __init__(
        self,
        pool: LedgerClientPool,
        registry_address: str,
        *,
        block_chunks: dict[str, int],
        checkpoint_every: int = 200,
        window_delay_seconds: float = 0.1,
        metrics: SyncMetrics | None = None
    ) -> None:
        self.pool = pool
        self.registry_address = registry_address
        self.block_chunks = dict(block_chunks)
        self.checkpoint_every = max(1, checkpoint_every)
        self.window_delay_seconds = window_delay_seconds
        self.metrics = metrics

    async def scan(
        self,
        chain: str,
        from_block: int,
        to_block: int,
        on_checkpoint: CheckpointCallback | None = None
    ) -> ScanResult:
        chunk = self.block_chunks[chain]
        result = ScanResult(chain=chain, from_block=from_block, to_block=to_block, checkpoint=from_block - 1)
        if from_block > to_block:
            return result

        total_blocks = to_block - from_block + 1
        LOGGER.info(
            'scanning chain=%s from_block=%s to_block=%s blocks=%s chunk=%s',
            chain,
            from_block,
            to_block,
            total_blocks,
            chunk
        )

        current = from_block
        while current <= to_block:
            window_end = min(current + chunk - 1, to_block)
            ok = await self._scan_window(chain, current, window_end, result.mints)
            result.windows += 1

            if ok:
                # Held back for good once any earlier window failed.
                if not result.failed_windows:
                    result.checkpoint = window_end
            else:
                result.failed_windows.append((current, window_end))

            if result.windows % PROGRESS_EVERY_WINDOWS == 0 or window_end >= to_block:
                pct = round((window_end - from_block + 1) / total_blocks * 100)
                LOGGER.info(
                    'scan progress chain=%s block=%s pct=%s mints=%s failed_windows=%s',
                    chain,
                    window_end,
                    pct,
                    len(result.mints),
                    len(result.failed_windows)
                )

            if on_checkpoint is not None and result.windows % self.checkpoint_every == 0:
                await on_checkpoint(chain, result.checkpoint, dict(result.mints))
                LOGGER.info('scan checkpoint saved chain=%s block=%s', chain, result.checkpoint)

            current = window_end + 1
            if self.window_delay_seconds > 0 and current <= to_block:
                await asyncio.sleep(self.window_delay_seconds)

        LOGGER.info(
            'scan finished chain=%s mints=%s checkpoint=%s failed_windows=%s',
            chain,
            len(result.mints),
            result.checkpoint,
            len(result.failed_windows)
        )
        return result

    async def _scan_window(self, chain: str, start: int, end: int, mints: dict[int, MintInfo]) -> bool:
        try:
            logs = await self.pool.get_logs(
                chain,
                self.registry_address,
                TRANSFER_TOPIC,
                [ZERO_TOPIC],
                start,
                end
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning('scan window failed chain=%s range=%s-%s error=%s', chain, start, end, str(exc)[:80])
            if self.metrics is not None:
                self.metrics.window_scanned(chain, ok=False)
            return False

        for log in logs:
            try:
                mint = parse_mint_log(log)
            except (KeyError, ValueError, TypeError) as exc:
                LOGGER.warning('skipping undecodable log chain=%s range=%s-%s error=%s', chain, start, end, exc)
                continue
            if mint is None:
                continue
            mints.setdefault(mint.token_id, mint)

        if self.metrics is not None:
            self.metrics.window_scanned(chain, ok=True)
        return True
