# orchestrator.py - Retries, timeouts, caching and batching of probes
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
import asyncio
from dataclasses import dataclass, replace
import logging
from typing import Awaitable, Callable, Iterable, Protocol

from .bedrock import BedrockProber
from .cache import ResultCache
from .errors import UnsupportedGameError
from .java import JavaProber
from .models import ConnStatus, GameType, Motd, ProbeResult, ServerEndpoint, Version
from .resolver import AddressResolver
from .transport import NetworkTransport

logger = logging.getLogger(__name__)


class Prober(Protocol):
    def new_transport(self) -> NetworkTransport:
        ...

    async def probe(
        self,
        endpoint: ServerEndpoint,
        timeout: float | None = None,
        transport: NetworkTransport | None = None,
    ) -> ProbeResult:
        ...


@dataclass
class AttemptState:
    """Bookkeeping of one `StatusProber.probe()` call, dropped when it returns."""

    index: int = 0
    budget: float = 0
    last_error: str | None = None
    last_status: ConnStatus = ConnStatus.UNKNOWN


class AttemptSupervisor:
    """
    Runs one attempt: the protocol call races a timer of the attempt's budget.

    Whichever settles first wins. When the timer wins, the protocol call is
    cancelled and the transport it was handed is closed here, so an abandoned
    attempt never leaves a socket behind.
    """

    def __init__(self, prober: Prober, endpoint: ServerEndpoint, budget: float) -> None:
        self.prober = prober
        self.endpoint = endpoint
        self.budget = budget

    async def run(self) -> ProbeResult:
        """
        :raises TimeoutError: The timer settled first
        """
        transport = self.prober.new_transport()
        call = asyncio.ensure_future(
            self.prober.probe(self.endpoint, self.budget, transport=transport)
        )
        try:
            done, _ = await asyncio.wait({call}, timeout=self.budget)
            if call in done:
                return call.result()

            call.cancel()
            await asyncio.wait({call})
            raise TimeoutError(f"Timeout after {self.budget:g}s")
        finally:
            if not call.done():
                call.cancel()
            await transport.close()


def placeholder_result(game_type: GameType, error: Exception) -> ProbeResult:
    """Fixed result for game types without a protocol implementation."""
    title = str(game_type).capitalize()
    name = f"{title} (Coming Soon)"
    return ProbeResult(
        online=False,
        version=Version(raw=name, clean=name),
        motd=Motd.from_text(f"{title} server support coming soon"),
        error=str(error),
        status=ConnStatus.UNSUPPORTED,
    )


class StatusProber:
    """
    Entry point for status checks.

    Picks the prober for the endpoint's game type, retries with escalating
    timeouts and keeps successful results in a `ResultCache`.

    Concurrent probes of the same endpoint are not merged: two callers missing
    the cache at the same time each do their own round trip, and the later
    write wins.
    """

    ATTEMPT_TIMEOUTS = (2, 3, 5)
    """timeout in seconds of each attempt, the length is the number of attempts"""
    RETRY_PAUSE = 1
    """seconds to wait before every attempt but the first"""
    BATCH_SIZE = 5
    """how many servers `probe_batch()` probes at the same time"""

    def __init__(
        self,
        cache: ResultCache | None = None,
        probers: dict[GameType, Prober] | None = None,
        attempt_timeouts: Iterable[float] = ATTEMPT_TIMEOUTS,
        retry_pause: float = RETRY_PAUSE,
        batch_size: int = BATCH_SIZE,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ) -> None:
        """
        :param cache: Result cache, a fresh one with the native TTL if omitted
        :param probers: Prober per game type. Game types without one get a placeholder result.
        :param attempt_timeouts: Timeout of each attempt in seconds
        :param retry_pause: Seconds to wait before a retry
        :param batch_size: Width of the concurrency window of `probe_batch()`
        :param sleep: Coroutine used for the retry pause
        """
        self.cache = cache if cache is not None else ResultCache(ResultCache.NATIVE_TTL)
        if probers is None:
            probers = {
                GameType.JAVA: JavaProber(resolver=AddressResolver()),
                GameType.BEDROCK: BedrockProber(),
            }
        self.probers = probers
        self.attempt_timeouts = tuple(attempt_timeouts)
        self.retry_pause = retry_pause
        self.batch_size = batch_size
        self.sleep = sleep

    def _prober_for(self, game_type: GameType) -> Prober:
        try:
            return self.probers[game_type]
        except KeyError:
            raise UnsupportedGameError(game_type) from None

    async def probe(self, endpoint: ServerEndpoint) -> ProbeResult:
        """
        Return the status of one server. Never raises for network or protocol errors.

        :param endpoint: The server to probe
        """
        key = endpoint.cache_key
        if entry := self.cache.get(key):
            logger.debug("Cache hit for %s (%s)", endpoint.key, endpoint.game_type)
            return entry.result

        try:
            prober = self._prober_for(endpoint.game_type)
        except UnsupportedGameError as e:
            return placeholder_result(endpoint.game_type, e)

        state = AttemptState()
        best_result: ProbeResult | None = None

        for index, budget in enumerate(self.attempt_timeouts):
            state.index, state.budget = index, budget
            if index:
                await self.sleep(self.retry_pause)
                logger.info(
                    "Retry %d/%d for %s (%s)",
                    index + 1,
                    len(self.attempt_timeouts),
                    endpoint.key,
                    endpoint.game_type,
                )

            try:
                result = await AttemptSupervisor(prober, endpoint, budget).run()
            except (TimeoutError, asyncio.TimeoutError) as e:
                state.last_error = str(e) or "Timeout"
                state.last_status = ConnStatus.TIMEOUT
                logger.warning("Attempt %d timed out for %s", index + 1, endpoint.key)
                continue
            except Exception as e:
                logger.exception("Attempt %d failed for %s", index + 1, endpoint.key)
                state.last_error = str(e) or type(e).__name__
                state.last_status = ConnStatus.UNKNOWN
                continue

            if result.online is True:
                entry = self.cache.put(key, result)
                logger.info(
                    "%s (%s) - ONLINE, %s players",
                    endpoint.key,
                    endpoint.game_type,
                    entry.result.player_count,
                )
                return entry.result

            # Keep track of the best result, it might carry partial data
            if result.has_data:
                best_result = result
            state.last_error = result.error or state.last_error
            state.last_status = result.status
            logger.debug("Attempt %d failed for %s: %s", index + 1, endpoint.key, result.error)

        error = state.last_error or "All ping attempts failed"
        logger.warning(
            "%s (%s) - OFFLINE after %d attempts: %s",
            endpoint.key,
            endpoint.game_type,
            len(self.attempt_timeouts),
            error,
        )

        if stale := self.cache.stale(key, f"Using last known data ({error})"):
            return stale
        if best_result is not None:
            return replace(best_result, online=False, error=error)
        return ProbeResult.offline(error, state.last_status)

    async def probe_batch(self, endpoints: Iterable[ServerEndpoint]) -> dict[str, ProbeResult]:
        """
        Probe many servers, `batch_size` at a time.

        Windows run one after another, the probes inside a window run concurrently.

        :return: Results keyed by `"host:port"`
        """
        endpoints = list(endpoints)
        results: dict[str, ProbeResult] = {}

        for start in range(0, len(endpoints), self.batch_size):
            window = endpoints[start:start + self.batch_size]
            window_results = await asyncio.gather(*(self.probe(endpoint) for endpoint in window))
            for endpoint, result in zip(window, window_results):
                results[endpoint.key] = result

        return results

    def clear_cache(self) -> None:
        self.cache.clear()

    def cache_stats(self) -> dict:
        return self.cache.stats()
