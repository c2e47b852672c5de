from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Any, Protocol, Sequence
from urllib.parse import unquote_to_bytes

import httpx

LOGGER = logging.getLogger('erc8004_catalog.content_resolver')

USER_AGENT = 'ERC8004-Catalog/2.0'


class ContentSource(Protocol):
    async def fetch(self, url: str, timeout_seconds: float) -> bytes: ...


class HttpContentSource:
    """Raises on transport errors and non-2xx responses."""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client or httpx.AsyncClient(
            follow_redirects=True,
            headers={'User-Agent': USER_AGENT, 'Accept': 'application/json'}
        )

    async def fetch(self, url: str, timeout_seconds: float) -> bytes:
        response = await self._client.get(url, timeout=timeout_seconds)
        response.raise_for_status()
        return response.content

    async def aclose(self) -> None:
        await self._client.aclose()


def _as_document(payload: Any) -> dict[str, Any]:
    return payload if isinstance(payload, dict) else {}


def _decode_data_uri(uri: str) -> dict[str, Any]:
    header, sep, body = uri.partition(',')
    if not sep:
        return {}
    if header.lower().endswith(';base64'):
        raw = base64.b64decode(body, validate=False)
    else:
        raw = unquote_to_bytes(body)
    return _as_document(json.loads(raw.decode('utf-8')))


def _ipfs_path(uri: str) -> str:
    path = uri[len('ipfs://'):]
    if path.startswith('ipfs/'):
        path = path[len('ipfs/'):]
    return path.lstrip('/')


class ContentResolver:
    """Turns a metadata URI into a parsed JSON object, or ``{}`` on any failure."""

    def __init__(
        self,
        source: ContentSource,
        *,
        ipfs_gateways: Sequence[str],
        http_timeout_seconds: float = 10.0,
        ipfs_timeout_seconds: float = 15.0
    ) -> None:
        self.source = source
        self.ipfs_gateways = list(ipfs_gateways)
        self.http_timeout_seconds = http_timeout_seconds
        self.ipfs_timeout_seconds = ipfs_timeout_seconds

    async def resolve(self, uri: str | None) -> dict[str, Any]:
        if not uri:
            return {}
        uri = uri.strip()
        try:
            if uri.startswith('data:'):
                return _decode_data_uri(uri)
            if uri.startswith(('http://', 'https://')):
                return await self._fetch_json(uri, self.http_timeout_seconds)
            if uri.startswith('ipfs://'):
                return await self._race_gateways(_ipfs_path(uri))
        except Exception as exc:  # noqa: BLE001
            LOGGER.debug('metadata resolve failed uri=%s error=%s', uri[:120], exc)
            return {}

        LOGGER.debug('unsupported metadata uri scheme uri=%s', uri[:120])
        return {}

    async def _fetch_json(self, url: str, timeout_seconds: float) -> dict[str, Any]:
        raw = await asyncio.wait_for(self.source.fetch(url, timeout_seconds), timeout=timeout_seconds)
        return _as_document(json.loads(raw))

    async def _race_gateways(self, path: str) -> dict[str, Any]:
        if not path or not self.ipfs_gateways:
            return {}

        tasks = [
            asyncio.create_task(self._fetch_json(f'{gateway}{path}', self.ipfs_timeout_seconds))
            for gateway in self.ipfs_gateways
        ]
        try:
            for next_done in asyncio.as_completed(tasks):
                try:
                    document = await next_done
                except Exception as exc:  # noqa: BLE001
                    LOGGER.debug('ipfs gateway failed path=%s error=%s', path, exc)
                    continue
                if document:
                    return document
            return {}
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
