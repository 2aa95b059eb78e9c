"""Radio event sources producing raw BLE advertisements.

The bridge consumes advertisements as an async iterator rather than through
callback registration, so the filter and decoder stay plain consumers:

    async for adv in supervise_scan(source):
        reading = adv_filter.process(adv)

Architecture:
- AdvertisementSource defines the start/stop/iterate lifecycle.
- BleakAdvertisementSource wraps ``BleakScanner``. Its detection callback runs
  on the event loop and hands events to the consumer through a bounded
  ``asyncio.Queue``.
- MockAdvertisementSource synthesizes RuuviTag broadcasts for running the
  bridge without a Bluetooth adapter.
- supervise_scan() restarts a failed or stalled scan with exponential backoff
  and gives up after a configurable number of consecutive failures.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import struct
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, AsyncIterator, Optional, Sequence

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from .advertisement import ManufacturerPayload, RawAdvertisement
from .decoder import FORMAT_RAWV2, RUUVI_MANUFACTURER_ID

logger = logging.getLogger(__name__)

BLUETOOTH_SYSFS = Path("/sys/class/bluetooth")


def list_adapters() -> list[str]:
    """Return the names of the local Bluetooth adapters, e.g. ``["hci0"]``.

    Only Linux exposes them (through sysfs); elsewhere the platform picks the
    adapter and the list is empty.
    """
    if not BLUETOOTH_SYSFS.is_dir():
        return []
    # "hci0:64" style entries are connections, not adapters
    return sorted(p.name for p in BLUETOOTH_SYSFS.iterdir() if ":" not in p.name)


class ScanStalledError(RuntimeError):
    """The scan stopped producing advertisements."""


class ScannerFailedError(RuntimeError):
    """Scanning could not be re-established within the restart budget."""


class AdvertisementSource(ABC):
    """Abstract base class for producers of raw advertisements.

    Implementations must make ``start()`` and ``stop()`` idempotent so a
    supervisor can restart them after a failure.
    """

    @abstractmethod
    async def start(self) -> None:
        """Start scanning.

        Raises:
            RuntimeError: If the radio could not be initialized.
        """

    @abstractmethod
    async def stop(self) -> None:
        """Stop scanning and release the radio. Safe to call when stopped."""

    @abstractmethod
    def advertisements(self) -> AsyncIterator[RawAdvertisement]:
        """Iterate over received advertisements until the scan fails.

        Raises:
            ScanStalledError: If the scan silently stops delivering events.
        """


class BleakAdvertisementSource(AdvertisementSource):
    """Passive-consumer wrapper around ``BleakScanner``.

    Events are queued from the detection callback in arrival order. If the
    consumer falls behind and the queue fills up, the oldest queued event is
    discarded so memory stays bounded and the newest data keeps flowing.

    Args:
        adapter: Bluetooth adapter name (e.g. ``"hci0"``). None selects the
            platform default.
        idle_timeout: Seconds without any advertisement after which the scan
            is considered stalled. None disables stall detection.
        queue_size: Maximum number of events buffered between the callback
            and the consumer.
    """

    def __init__(
        self,
        *,
        adapter: Optional[str] = None,
        idle_timeout: Optional[float] = 60.0,
        queue_size: int = 1024,
    ) -> None:
        self._adapter = adapter
        self._idle_timeout = idle_timeout
        self._queue_size = queue_size
        self._scanner: Optional[BleakScanner] = None
        self._queue: Optional[asyncio.Queue[RawAdvertisement]] = None
        self._dropped = 0

    async def start(self) -> None:
        if self._scanner is not None:
            return

        self._queue = asyncio.Queue(maxsize=self._queue_size)
        kwargs: dict[str, Any] = {}
        if self._adapter:
            kwargs["adapter"] = self._adapter

        logger.debug(
            "Available Bluetooth adapters: %s", ", ".join(list_adapters()) or "none listed"
        )
        scanner = BleakScanner(detection_callback=self._on_detection, **kwargs)
        try:
            await scanner.start()
        except BleakError as e:
            raise RuntimeError(
                "BLE scanner initialization failed. Please verify:\n"
                "- Bluetooth adapter is present and powered on\n"
                "- The process may access the Bluetooth stack (bluetooth group / D-Bus policy)\n"
                f"- Adapter name is correct ({self._adapter or 'default'})\n"
            ) from e

        self._scanner = scanner
        logger.info("BLE scan started (adapter=%s)", self._adapter or "default")

    async def stop(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is None:
            return
        try:
            await scanner.stop()
        except BleakError as e:
            logger.warning("BLE scan stop failed: %s", e)
        logger.info("BLE scan stopped")

    def _on_detection(self, device: BLEDevice, adv: AdvertisementData) -> None:
        queue = self._queue
        if queue is None:
            return

        event = RawAdvertisement.from_bleak(device, adv)
        if queue.full():
            queue.get_nowait()
            self._dropped += 1
            if self._dropped % 100 == 1:
                logger.warning(
                    "Advertisement queue full, dropped %d events so far", self._dropped
                )
        queue.put_nowait(event)

    async def advertisements(self) -> AsyncIterator[RawAdvertisement]:
        queue = self._queue
        if queue is None:
            raise RuntimeError("Scan not started")

        while True:
            if self._idle_timeout is not None:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=self._idle_timeout)
                except asyncio.TimeoutError:
                    raise ScanStalledError(
                        f"No advertisements received for {self._idle_timeout:.1f}s"
                    ) from None
            else:
                event = await queue.get()
            yield event


def build_rawv2_payload(
    *,
    temperature: float,
    humidity: float,
    pressure: int,
    accel: tuple[float, float, float] = (0.0, 0.0, 1.0),
    battery: float = 3.0,
    tx_power: int = 4,
    movement_counter: int = 0,
    sequence_number: int = 0,
    mac: bytes = b"\x00" * 6,
) -> bytes:
    """Encode values as a RAWv2 manufacturer payload (company id excluded)."""
    power_info = (round(battery * 1000) - 1600) << 5 | (tx_power + 40) // 2
    return struct.pack(
        ">BhHHhhhHBH6s",
        FORMAT_RAWV2,
        round(temperature / 0.005),
        round(humidity / 0.0025),
        pressure - 50000,
        round(accel[0] * 1000),
        round(accel[1] * 1000),
        round(accel[2] * 1000),
        power_info,
        movement_counter,
        sequence_number,
        mac,
    )


class MockAdvertisementSource(AdvertisementSource):
    """Synthetic RuuviTag broadcasts for testing without a Bluetooth adapter.

    Every ``interval`` seconds one advertisement is produced, cycling through
    the configured tag addresses. Values follow slow sinusoids with a little
    noise. Every fifth event is an unrelated advertisement (a different
    company id) so the filter path is exercised as well.

    Args:
        addresses: Tag addresses to simulate.
        interval: Seconds between generated advertisements.
    """

    UNRELATED_COMPANY_ID = 0x004C

    def __init__(
        self,
        addresses: Sequence[str] = ("C4:D9:12:00:00:01", "C4:D9:12:00:00:02"),
        interval: float = 1.0,
    ) -> None:
        self._addresses = tuple(addresses)
        self._interval = interval
        self._running = False
        self._start_time = time.time()

    async def start(self) -> None:
        self._running = True
        self._start_time = time.time()

    async def stop(self) -> None:
        self._running = False

    def _mac_bytes(self, address: str) -> bytes:
        return bytes.fromhex(address.replace(":", ""))

    async def advertisements(self) -> AsyncIterator[RawAdvertisement]:
        counter = 0
        while self._running:
            address = self._addresses[counter % len(self._addresses)]
            if counter % 5 == 4:
                elements = (ManufacturerPayload(self.UNRELATED_COMPANY_ID, b"\x02\x15"),)
            else:
                elapsed = time.time() - self._start_time
                payload = build_rawv2_payload(
                    temperature=21.0 + 2.0 * math.sin(2 * math.pi * 0.01 * elapsed)
                    + random.gauss(0, 0.05),
                    humidity=45.0 + 5.0 * math.cos(2 * math.pi * 0.005 * elapsed),
                    pressure=101325 + random.randint(-20, 20),
                    accel=(
                        random.gauss(0, 0.01),
                        random.gauss(0, 0.01),
                        1.0 + random.gauss(0, 0.01),
                    ),
                    battery=2.95,
                    tx_power=4,
                    movement_counter=counter // 100 % 255,
                    sequence_number=counter % 65535,
                    mac=self._mac_bytes(address),
                )
                elements = (ManufacturerPayload(RUUVI_MANUFACTURER_ID, payload),)

            yield RawAdvertisement(address=address, manufacturer_data=elements, rssi=-60)
            counter += 1
            await asyncio.sleep(self._interval)


async def supervise_scan(
    source: AdvertisementSource,
    *,
    max_restarts: int = 5,
    initial_backoff: float = 1.0,
    max_backoff: float = 30.0,
) -> AsyncIterator[RawAdvertisement]:
    """Yield advertisements from ``source``, restarting the scan on failure.

    A failure is a start error, an error raised while iterating, a stall, or
    the iterator ending on its own. After each failure the source is stopped
    and restarted after a delay that starts at ``initial_backoff`` and doubles
    up to ``max_backoff``. Receiving an advertisement resets both the delay
    and the failure count.

    Raises:
        ScannerFailedError: After more than ``max_restarts`` consecutive
            failures. The last underlying error is chained as the cause.
    """
    failures = 0
    backoff = initial_backoff

    while True:
        error: BaseException
        try:
            await source.start()
            async for adv in source.advertisements():
                if failures:
                    logger.info("BLE scan recovered after %d failure(s)", failures)
                    failures = 0
                    backoff = initial_backoff
                yield adv
            error = ScanStalledError("Advertisement stream ended unexpectedly")
        except Exception as e:
            error = e
        finally:
            await source.stop()

        failures += 1
        if failures > max_restarts:
            logger.error("BLE scan failed %d times in a row, giving up", failures)
            raise ScannerFailedError(
                f"BLE scan could not be re-established after {max_restarts} restart(s)"
            ) from error

        logger.error(
            "BLE scan failure: %s: %s (restart %d/%d in %.1fs)",
            type(error).__name__,
            error,
            failures,
            max_restarts,
            backoff,
        )
        await asyncio.sleep(backoff)
        backoff = min(backoff * 2, max_backoff)
