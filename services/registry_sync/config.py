from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

DEFAULT_REGISTRY_ADDRESS = '0x8004A169FB4a3325136EB29fA0ceB6D2e539a432'

DEFAULT_IPFS_GATEWAYS = [
    'https://ipfs.io/ipfs/',
    'https://cloudflare-ipfs.com/ipfs/',
    'https://gateway.pinata.cloud/ipfs/'
]

# Chunk sizes follow each chain's log-query limits on public RPCs.
CHAIN_DEFAULTS = {
    'ethereum': {
        'env_prefix': 'ETH',
        'start_block': 21_000_000,
        'block_chunk': 5_000,
        'rpc_urls': [
            'https://ethereum-rpc.publicnode.com',
            'https://eth.llamarpc.com',
            'https://1rpc.io/eth',
            'https://eth.drpc.org'
        ]
    },
    'base': {
        'env_prefix': 'BASE',
        'start_block': 41_500_000,
        'block_chunk': 10_000,
        'rpc_urls': [
            'https://base.llamarpc.com',
            'https://base-rpc.publicnode.com',
            'https://base.drpc.org',
            'https://1rpc.io/base',
            'https://base.meowrpc.com'
        ]
    }
}


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {'1', 'true', 'yes', 'y', 'on'}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, '').strip()
    if not raw:
        return default
    return int(raw.replace('_', ''))


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, '').strip()
    if not raw:
        return default
    return float(raw)


def _csv_env(name: str) -> list[str]:
    raw = os.getenv(name, '').strip()
    if not raw:
        return []
    return [part.strip() for part in raw.split(',') if part.strip()]


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_data_dir(path_value: str) -> Path:
    path = Path(path_value)
    if path.is_absolute():
        return path
    return _repo_root() / path


@dataclass(frozen=True)
class ChainSettings:
    name: str
    rpc_urls: tuple[str, ...]
    start_block: int
    block_chunk: int


@dataclass(frozen=True)
class Settings:
    service_name: str
    data_dir: Path
    registry_address: str
    chains: tuple[ChainSettings, ...]
    parallel_fetches: int
    deadline_seconds: float
    force_refresh: bool
    scan_chains_concurrently: bool
    checkpoint_every: int
    window_delay_seconds: float
    batch_delay_seconds: float
    rpc_timeout_seconds: float
    rpc_max_attempts: int
    rpc_backoff_seconds: float
    http_timeout_seconds: float
    ipfs_timeout_seconds: float
    ipfs_gateways: tuple[str, ...]
    metrics_path: Path | None

    def chain(self, name: str) -> ChainSettings:
        for chain in self.chains:
            if chain.name == name:
                return chain
        raise KeyError(f'chain not configured: {name}')

    @property
    def endpoints(self) -> dict[str, list[str]]:
        return {chain.name: list(chain.rpc_urls) for chain in self.chains}


def _chain_settings(name: str) -> ChainSettings:
    if name not in CHAIN_DEFAULTS:
        raise ValueError(f'unsupported chain in SYNC_CHAINS: {name}')
    defaults = CHAIN_DEFAULTS[name]
    prefix = defaults['env_prefix']

    rpc_urls = _csv_env(f'{prefix}_RPC_URLS') or list(defaults['rpc_urls'])
    block_chunk = _env_int(f'{prefix}_BLOCK_CHUNK', defaults['block_chunk'])
    if block_chunk <= 0:
        raise ValueError(f'{prefix}_BLOCK_CHUNK must be positive')

    return ChainSettings(
        name=name,
        rpc_urls=tuple(rpc_urls),
        start_block=_env_int(f'{prefix}_START_BLOCK', defaults['start_block']),
        block_chunk=block_chunk
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    chain_names = _csv_env('SYNC_CHAINS') or list(CHAIN_DEFAULTS)
    gateways = _csv_env('IPFS_GATEWAYS') or DEFAULT_IPFS_GATEWAYS
    metrics_path = os.getenv('SYNC_METRICS_PATH', '').strip()

    return Settings(
        service_name=os.getenv('SERVICE_NAME', 'registry-sync'),
        data_dir=_resolve_data_dir(os.getenv('DATA_DIR', 'data')),
        registry_address=os.getenv('REGISTRY_ADDRESS', DEFAULT_REGISTRY_ADDRESS).strip(),
        chains=tuple(_chain_settings(name.lower()) for name in chain_names),
        parallel_fetches=max(1, _env_int('PARALLEL_FETCHES', 10)),
        deadline_seconds=_env_float('SYNC_DEADLINE_SECONDS', 19_800.0),
        force_refresh=_env_bool('FORCE_REFRESH', False),
        scan_chains_concurrently=_env_bool('SCAN_CHAINS_CONCURRENTLY', False),
        checkpoint_every=max(1, _env_int('SCAN_CHECKPOINT_EVERY', 200)),
        window_delay_seconds=_env_float('SCAN_WINDOW_DELAY_SECONDS', 0.1),
        batch_delay_seconds=_env_float('FETCH_BATCH_DELAY_SECONDS', 0.15),
        rpc_timeout_seconds=_env_float('RPC_TIMEOUT_SECONDS', 30.0),
        rpc_max_attempts=max(1, _env_int('RPC_MAX_ATTEMPTS', 3)),
        rpc_backoff_seconds=_env_float('RPC_BACKOFF_SECONDS', 0.5),
        http_timeout_seconds=_env_float('HTTP_TIMEOUT_SECONDS', 10.0),
        ipfs_timeout_seconds=_env_float('IPFS_TIMEOUT_SECONDS', 15.0),
        ipfs_gateways=tuple(gateway if gateway.endswith('/') else f'{gateway}/' for gateway in gateways),
        metrics_path=Path(metrics_path) if metrics_path else None
    )
