from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable

import pytest

from ruuvi_bridge.decoder import SensorReading
from ruuvi_bridge.hub import BroadcastHub
from ruuvi_bridge.listener import ListenAddress, SocketListener

# Reference vectors published with the RuuviTag data format documentation
RAWV2_VALID = bytes.fromhex("0512FC5394C37C0004FFFC040CAC364200CDCBB8334C884F")
RAWV2_MAXIMUM = bytes.fromhex("057FFFFFFEFFFE7FFF7FFF7FFFFFDEFEFFFECBB8334C884F")
RAWV2_MINIMUM = bytes.fromhex("058001000000008001800180010000000000CBB8334C884F")
RAWV2_INVALID = bytes.fromhex("058000FFFFFFFF800080008000FFFFFFFFFFFFFFFFFFFFFF")
RAWV1_VALID = bytes.fromhex("03291A1ECE1EFC18F94202CA0B53")

RECEIVED_AT = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_reading(sequence: int, device: str = "CB:B8:33:4C:88:4F") -> SensorReading:
    return SensorReading(
        device=device,
        temperature=21.5,
        humidity=40.25,
        pressure=100100,
        accel_x=0.0,
        accel_y=0.0,
        accel_z=1.0,
        battery=3.0,
        tx_power=4,
        movement_counter=1,
        sequence_number=sequence,
        received_at=RECEIVED_AT,
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
async def served_hub():
    hub = BroadcastHub(queue_size=256, write_timeout=1.0)
    listener = SocketListener(ListenAddress(host="127.0.0.1", port=0), hub)
    await listener.start()
    yield hub, listener
    await listener.close()


async def connect(listener: SocketListener):
    return await asyncio.open_connection("127.0.0.1", listener.bound_port())
