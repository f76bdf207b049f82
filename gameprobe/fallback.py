# fallback.py - Server status from the mcstatus.io aggregation API
# Copyright (C) 2016-2023 Lloyd Dilley, Felix Ern (MindSolve)
# http://www.dilley.me/
#
# Secondary optimization and customization are carried out by @molanp.
#
# This program is free software; you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation; either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License along
# with this program; if not, write to the Free Software Foundation, Inc.,
# 51 Franklin Street, Fifth Floor, Boston, MA 02110-1301 USA.
"""
HTTP fallback for when native probing is not possible.

Docs: https://mcstatus.io/docs
Endpoint: https://api.mcstatus.io/v2/status/{java|bedrock}/{address}
"""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Iterable
from urllib.parse import quote

import aiohttp

from .cache import ResultCache
from .errors import FallbackError
from .models import ConnStatus, Motd, PlayerEntry, Players, ProbeResult, Version, strip_formatting
from .version import VERSION

logger = logging.getLogger(__name__)


def _lines(value: Any) -> list[str]:
    if isinstance(value, str):
        return value.split("\n")
    if isinstance(value, list):
        return [str(line) for line in value]
    return []


def parse_aggregator_status(data: dict[str, Any]) -> ProbeResult:
    """Map an mcstatus.io v2 status document (Java or Bedrock) onto a result."""
    online = bool(data.get("online"))

    version = None
    if isinstance(raw_version := data.get("version"), dict):
        # Java responses use name_raw/name_clean, Bedrock responses only name
        name_raw = raw_version.get("name_raw") or raw_version.get("name") or ""
        protocol = raw_version.get("protocol")
        version = Version(
            raw=name_raw,
            clean=raw_version.get("name_clean") or strip_formatting(name_raw),
            protocol=protocol if isinstance(protocol, int) else None,
        )

    players = None
    if isinstance(raw_players := data.get("players"), dict):
        players = Players(
            online=raw_players.get("online") or 0,
            max=raw_players.get("max") or 0,
            sample=tuple(
                PlayerEntry(
                    id=player.get("uuid") or "",
                    name=player.get("name_clean") or player.get("name_raw") or "Unknown",
                )
                for player in raw_players.get("list") or []
                if isinstance(player, dict)
            ),
        )

    motd = None
    if isinstance(raw_motd := data.get("motd"), dict):
        raw_lines = _lines(raw_motd.get("raw"))
        clean_lines = _lines(raw_motd.get("clean")) or [strip_formatting(line) for line in raw_lines]
        motd = Motd(raw=tuple(raw_lines), clean=tuple(clean_lines))

    icon = data.get("icon")

    return ProbeResult(
        online=online,
        players=players,
        version=version,
        motd=motd,
        icon=icon if isinstance(icon, str) else None,
        gamemode=data.get("gamemode") or None,
        status=ConnStatus.SUCCESS if online else ConnStatus.CONNFAIL,
    )


class HttpStatusClient:
    """
    Status client backed by the mcstatus.io API.

    Results are cached for a minute. Failed requests are retried with a linearly
    growing delay; when every try fails the last known result is served as stale.

    Use it as an async context manager, or call `close()`, to release the HTTP session.
    """

    BASE_URL = "https://api.mcstatus.io"
    DEFAULT_JAVA_PORT = 25565
    DEFAULT_BEDROCK_PORT = 19132
    MAX_RETRIES = 3
    """retries after the first request"""
    INITIAL_RETRY_DELAY = 2
    """seconds to wait before the first retry"""
    REQUEST_TIMEOUT = 15
    """seconds a single request may take"""
    BATCH_SIZE = 5
    USER_AGENT = f"gameprobe/{VERSION}"

    def __init__(
        self,
        base_url: str = BASE_URL,
        cache: ResultCache | None = None,
        max_retries: int = MAX_RETRIES,
        initial_delay: float = INITIAL_RETRY_DELAY,
        request_timeout: float = REQUEST_TIMEOUT,
        session: aiohttp.ClientSession | None = None,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ) -> None:
        """
        :param base_url: Scheme and host of the API
        :param cache: Result cache, a fresh one with the fallback TTL if omitted
        :param max_retries: Retries after the first failed request
        :param initial_delay: Seconds to wait before the first retry
        :param request_timeout: Seconds a single request may take
        :param session: Shared aiohttp session. If omitted one is created and owned by the client.
        :param sleep: Coroutine used for the retry delay
        """
        self.base_url = base_url.rstrip("/")
        self.cache = cache if cache is not None else ResultCache(ResultCache.FALLBACK_TTL)
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.request_timeout = request_timeout
        self.sleep = sleep
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "HttpStatusClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def build_url(self, address: str, port: int, bedrock: bool = False) -> str:
        """The port is left out when it is the edition's default port."""
        edition = "bedrock" if bedrock else "java"
        default_port = self.DEFAULT_BEDROCK_PORT if bedrock else self.DEFAULT_JAVA_PORT
        target = address if port == default_port else f"{address}:{port}"
        return f"{self.base_url}/v2/status/{edition}/{quote(target, safe='')}"

    def retry_delay(self, attempt: int) -> float:
        """Seconds to wait before retry number `attempt` (1-based)."""
        return self.initial_delay if attempt == 1 else self.initial_delay * attempt

    async def _fetch(self, url: str) -> dict[str, Any]:
        session = self._get_session()
        async with session.get(
            url,
            headers={"User-Agent": self.USER_AGENT, "Accept": "application/json"},
        ) as response:
            if not 200 <= response.status < 300:
                raise FallbackError(f"API returned {response.status}", response.status)
            try:
                data = await response.json(content_type=None)
            except (json.JSONDecodeError, ValueError) as e:
                raise FallbackError(f"API returned invalid JSON: {e}", response.status) from e

        if not isinstance(data, dict):
            raise FallbackError("API returned an unexpected document", response.status)
        return data

    async def get_status(
        self, address: str, port: int = DEFAULT_JAVA_PORT, bedrock: bool = False
    ) -> ProbeResult:
        """
        Fetch the status of one server. Never raises for network or API errors.

        :param address: Hostname or IP address of the server
        :param port: Port of the server
        :param bedrock: Query the Bedrock endpoint instead of the Java one
        """
        key = (address, port, "bedrock" if bedrock else "java")
        if entry := self.cache.get(key):
            return entry.result

        url = self.build_url(address, port, bedrock)
        last_error: str | None = None

        for attempt in range(self.max_retries + 1):
            if attempt:
                delay = self.retry_delay(attempt)
                await self.sleep(delay)
                logger.info(
                    "Retry %d/%d for %s:%s (waited %ss)", attempt, self.max_retries, address, port, delay
                )

            try:
                data = await asyncio.wait_for(self._fetch(url), self.request_timeout)
            except asyncio.TimeoutError:
                # mcstatus.io can be slow, keep retrying
                last_error = f"Request timed out after {self.request_timeout}s"
                logger.warning(
                    "Timeout on attempt %d/%d for %s:%s",
                    attempt + 1,
                    self.max_retries + 1,
                    address,
                    port,
                )
                continue
            except (aiohttp.ClientError, FallbackError, OSError) as e:
                last_error = str(e) or type(e).__name__
                logger.debug("Attempt %d for %s:%s failed: %s", attempt + 1, address, port, last_error)
                continue

            result = parse_aggregator_status(data)
            logger.info(
                "%s:%s => online: %s, players: %s, version: %s",
                address,
                port,
                result.online,
                result.player_count,
                result.version.clean if result.version else "N/A",
            )
            return self.cache.put(key, result).result

        logger.error("Failed to fetch server status for %s:%s: %s", address, port, last_error)

        # Return cached data if available (even if stale), otherwise return offline
        if stale := self.cache.stale(key, "Using stale data"):
            logger.info("Returning stale cache for %s:%s", address, port)
            return stale

        return ProbeResult.offline(last_error or "Failed to fetch status", ConnStatus.CONNFAIL)

    async def get_multiple(
        self, servers: Iterable[tuple[str, int, bool]]
    ) -> dict[str, ProbeResult]:
        """
        Fetch many servers, `BATCH_SIZE` at a time.

        :param servers: `(address, port, bedrock)` tuples
        :return: Results keyed by `"address:port"`
        """
        servers = list(servers)
        results: dict[str, ProbeResult] = {}

        for start in range(0, len(servers), self.BATCH_SIZE):
            batch = servers[start:start + self.BATCH_SIZE]
            batch_results = await asyncio.gather(
                *(self.get_status(address, port, bedrock) for address, port, bedrock in batch)
            )
            for (address, port, _), result in zip(batch, batch_results):
                results[f"{address}:{port}"] = result

        return results
