"""Pipeline wiring: radio source -> filter -> decoder -> hub -> socket clients.

Two activities run concurrently on one event loop:

1. Ingestion: advertisements from the (supervised) radio source pass through
   the filter/decoder and every accepted reading is broadcast by the hub.
2. Acceptance: the socket listener registers incoming clients with the hub.

The ingestion path never waits on a client; the hub queues lines per client.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from typing import Optional

from .advertisement import AdvertisementFilter
from .config import BridgeConfig
from .hub import BroadcastHub
from .listener import ListenerBindError, SocketListener
from .scanner import (
    AdvertisementSource,
    BleakAdvertisementSource,
    MockAdvertisementSource,
    ScannerFailedError,
    supervise_scan,
)

logger = logging.getLogger(__name__)

HEALTH_LOG_INTERVAL = 60.0


def create_source(config: BridgeConfig) -> AdvertisementSource:
    if config.mock:
        logger.info("Using mock advertisement source (no Bluetooth adapter required)")
        return MockAdvertisementSource()
    return BleakAdvertisementSource(adapter=config.adapter, idle_timeout=config.idle_timeout)


class Bridge:
    """Owns the hub, listener, filter and radio source for one process run."""

    def __init__(
        self, config: BridgeConfig, source: Optional[AdvertisementSource] = None
    ) -> None:
        self.config = config
        self.hub = BroadcastHub(
            queue_size=config.queue_size, write_timeout=config.write_timeout
        )
        self.listener = SocketListener(config.listen, self.hub)
        self.filter = AdvertisementFilter(config.manufacturer_id, config.policy)
        self.source = source if source is not None else create_source(config)
        self._last_health_log = time.monotonic()

    async def ingest(self) -> None:
        """Consume advertisements and broadcast decoded readings.

        Runs until the scan supervisor gives up.

        Raises:
            ScannerFailedError: When scanning cannot be re-established.
        """
        stream = supervise_scan(
            self.source,
            max_restarts=self.config.max_restarts,
            initial_backoff=self.config.initial_backoff,
            max_backoff=self.config.max_backoff,
        )
        try:
            async for adv in stream:
                reading = self.filter.process(adv)
                if reading is not None:
                    delivered = self.hub.broadcast(reading)
                    logger.debug(
                        "Reading from %s seq=%s sent to %d client(s)",
                        reading.device,
                        reading.sequence_number,
                        delivered,
                    )
                self._log_health()
        finally:
            await stream.aclose()

    def _log_health(self) -> None:
        now = time.monotonic()
        if now - self._last_health_log < HEALTH_LOG_INTERVAL:
            return
        self._last_health_log = now
        fs, hs = self.filter.stats, self.hub.stats
        logger.info(
            "Bridge healthy: %d advertisements, %d matched, %d decoded, %d rejected; "
            "%d client(s), %d lines sent, %d client(s) dropped",
            fs.seen,
            fs.matched,
            fs.decoded,
            fs.rejected,
            hs.clients,
            hs.lines,
            hs.dropped,
        )

    async def serve(self, stop: Optional[asyncio.Event] = None) -> None:
        """Listen and ingest until ``stop`` is set or ingestion fails.

        Raises:
            ListenerBindError: If the listen address cannot be bound.
            ScannerFailedError: If the radio source fails permanently.
        """
        stop = stop or asyncio.Event()
        await self.listener.start()

        ingest = asyncio.create_task(self.ingest(), name="ingest")
        stopped = asyncio.create_task(stop.wait(), name="stop-wait")
        try:
            done, _ = await asyncio.wait(
                {ingest, stopped}, return_when=asyncio.FIRST_COMPLETED
            )
            if ingest in done:
                ingest.result()
            logger.info("Shutdown requested")
        finally:
            for task in (ingest, stopped):
                task.cancel()
            await asyncio.gather(ingest, stopped, return_exceptions=True)
            await self.listener.close()


async def serve_until_signalled(config: BridgeConfig) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops; Ctrl+C surfaces as KeyboardInterrupt instead
            pass
    await Bridge(config).serve(stop)


def run(config: BridgeConfig) -> int:
    """Run the bridge until terminated and return a process exit code.

    Returns:
        int: 0 on signal-initiated shutdown, 1 on radio failure or an
            unexpected error, 2 if the listen address cannot be bound,
            130 on keyboard interrupt.
    """
    try:
        asyncio.run(serve_until_signalled(config))
        return 0
    except KeyboardInterrupt:
        return 130
    except ListenerBindError as e:
        logger.error("%s", e)
        return 2
    except ScannerFailedError as e:
        logger.error("%s (last error: %s)", e, e.__cause__)
        return 1
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1
