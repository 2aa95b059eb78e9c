from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import AsyncIterator

import pytest
from bleak.exc import BleakError

from ruuvi_bridge import scanner
from ruuvi_bridge.advertisement import AdvertisementFilter, RawAdvertisement
from ruuvi_bridge.scanner import (
    AdvertisementSource,
    BleakAdvertisementSource,
    MockAdvertisementSource,
    ScannerFailedError,
    ScanStalledError,
    supervise_scan,
)


class ScriptedSource(AdvertisementSource):
    """Each run either fails to start, or yields some events and then fails."""

    def __init__(self, runs: list) -> None:
        self._runs = list(runs)
        self._current: list = []
        self.starts = 0
        self.stops = 0

    async def start(self) -> None:
        self.starts += 1
        run = self._runs.pop(0) if self._runs else RuntimeError("no more runs")
        if isinstance(run, Exception):
            raise run
        self._current = run

    async def stop(self) -> None:
        self.stops += 1

    async def advertisements(self) -> AsyncIterator[RawAdvertisement]:
        for item in self._current:
            if isinstance(item, Exception):
                raise item
            yield item


def _adv(n: int) -> RawAdvertisement:
    return RawAdvertisement(address=f"AA:00:00:00:00:{n:02X}")


async def test_supervisor_restarts_after_failures() -> None:
    source = ScriptedSource(
        [
            [_adv(1), ScanStalledError("stalled")],
            RuntimeError("adapter busy"),
            [_adv(2), _adv(3)],
            [_adv(4)],
        ]
    )

    received = []
    stream = supervise_scan(source, max_restarts=2, initial_backoff=0.0)
    async for adv in stream:
        received.append(adv.address)
        if len(received) == 4:
            break
    await stream.aclose()

    assert received == [_adv(n).address for n in (1, 2, 3, 4)]
    assert source.starts == 4
    assert source.stops == source.starts


async def test_supervisor_gives_up_after_max_restarts() -> None:
    source = ScriptedSource([BleakError("no adapter")] * 3)

    with pytest.raises(ScannerFailedError) as excinfo:
        async for _ in supervise_scan(source, max_restarts=2, initial_backoff=0.0):
            pass

    assert isinstance(excinfo.value.__cause__, BleakError)
    assert source.starts == 3


async def test_supervisor_resets_failure_count_on_success() -> None:
    source = ScriptedSource(
        [
            RuntimeError("first"),
            [_adv(1), RuntimeError("second")],
            [_adv(2)],
        ]
    )

    received = []
    stream = supervise_scan(source, max_restarts=1, initial_backoff=0.0)
    async for adv in stream:
        received.append(adv)
        if len(received) == 2:
            break
    await stream.aclose()

    assert len(received) == 2


class FakeScanner:
    instances: list["FakeScanner"] = []
    fail_start = False

    def __init__(self, detection_callback, **kwargs) -> None:
        self.callback = detection_callback
        self.kwargs = kwargs
        self.running = False
        FakeScanner.instances.append(self)

    async def start(self) -> None:
        if FakeScanner.fail_start:
            raise BleakError("org.bluez.Error.NotReady")
        self.running = True

    async def stop(self) -> None:
        self.running = False

    def emit(self, address: str, manufacturer_data: dict) -> None:
        self.callback(
            SimpleNamespace(address=address),
            SimpleNamespace(manufacturer_data=manufacturer_data, rssi=-50),
        )


@pytest.fixture
def fake_scanner(monkeypatch):
    FakeScanner.instances = []
    FakeScanner.fail_start = False
    monkeypatch.setattr(scanner, "BleakScanner", FakeScanner)
    return FakeScanner


async def test_bleak_source_delivers_events_in_order(fake_scanner) -> None:
    source = BleakAdvertisementSource(adapter="hci1", idle_timeout=1.0)
    await source.start()
    fake = fake_scanner.instances[0]
    assert fake.running
    assert fake.kwargs == {"adapter": "hci1"}

    for n in range(3):
        fake.emit(f"AA:BB:CC:DD:EE:0{n}", {0x0499: bytes([n])})

    stream = source.advertisements()
    received = [await stream.__anext__() for _ in range(3)]
    await stream.aclose()
    await source.stop()

    assert [adv.address for adv in received] == [f"AA:BB:CC:DD:EE:0{n}" for n in range(3)]
    assert received[2].manufacturer_data[0].data == b"\x02"
    assert not fake.running


async def test_bleak_source_logs_adapters_before_scanning(
    fake_scanner, monkeypatch, tmp_path, caplog
) -> None:
    for name in ("hci1", "hci0", "hci0:64"):
        (tmp_path / name).mkdir()
    monkeypatch.setattr(scanner, "BLUETOOTH_SYSFS", tmp_path)
    caplog.set_level("DEBUG", logger="ruuvi_bridge.scanner")

    assert scanner.list_adapters() == ["hci0", "hci1"]

    source = BleakAdvertisementSource(adapter="hci1")
    await source.start()
    await source.stop()

    messages = [
        record.getMessage() for record in caplog.records if record.name == "ruuvi_bridge.scanner"
    ]
    assert messages[0] == "Available Bluetooth adapters: hci0, hci1"
    assert messages[1] == "BLE scan started (adapter=hci1)"


def test_no_adapters_listed_without_sysfs(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(scanner, "BLUETOOTH_SYSFS", tmp_path / "missing")
    assert scanner.list_adapters() == []


async def test_bleak_source_detects_stall(fake_scanner) -> None:
    source = BleakAdvertisementSource(idle_timeout=0.05)
    await source.start()
    assert fake_scanner.instances[0].kwargs == {}

    with pytest.raises(ScanStalledError):
        async for _ in source.advertisements():
            pass
    await source.stop()


async def test_bleak_source_drops_oldest_when_full(fake_scanner) -> None:
    source = BleakAdvertisementSource(idle_timeout=1.0, queue_size=2)
    await source.start()
    fake = fake_scanner.instances[0]
    for n in range(3):
        fake.emit(f"AA:BB:CC:DD:EE:0{n}", {})

    stream = source.advertisements()
    received = [await stream.__anext__() for _ in range(2)]
    await stream.aclose()
    await source.stop()

    assert [adv.address for adv in received] == ["AA:BB:CC:DD:EE:01", "AA:BB:CC:DD:EE:02"]


async def test_bleak_source_start_failure(fake_scanner) -> None:
    fake_scanner.fail_start = True
    source = BleakAdvertisementSource()

    with pytest.raises(RuntimeError, match="BLE scanner initialization failed"):
        await source.start()
    await source.stop()


async def test_bleak_source_requires_start() -> None:
    source = BleakAdvertisementSource()
    with pytest.raises(RuntimeError, match="not started"):
        async for _ in source.advertisements():
            pass


async def test_mock_source_produces_decodable_advertisements() -> None:
    source = MockAdvertisementSource(interval=0.0)
    adv_filter = AdvertisementFilter()
    await source.start()

    readings = []
    count = 0
    async for adv in source.advertisements():
        reading = adv_filter.process(adv)
        if reading is not None:
            readings.append(reading)
        count += 1
        if count == 10:
            break
    await source.stop()

    assert len(readings) == 8
    assert adv_filter.stats.seen == 10
    assert adv_filter.stats.rejected == 0
    assert {r.device for r in readings} == {"C4:D9:12:00:00:01", "C4:D9:12:00:00:02"}
    assert all(15.0 < r.temperature < 27.0 for r in readings)


async def test_mock_source_stops() -> None:
    source = MockAdvertisementSource(interval=0.0)
    await source.start()
    stream = source.advertisements()
    await stream.__anext__()
    await source.stop()

    with pytest.raises(StopAsyncIteration):
        await asyncio.wait_for(stream.__anext__(), timeout=1.0)
