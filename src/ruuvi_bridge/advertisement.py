"""Advertisement model and RuuviTag manufacturer-data filter."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from .decoder import (
    RUUVI_MANUFACTURER_ID,
    DecodeError,
    DecodePolicy,
    SensorReading,
    decode_payload,
)

if TYPE_CHECKING:
    from bleak.backends.device import BLEDevice
    from bleak.backends.scanner import AdvertisementData

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ManufacturerPayload:
    """Manufacturer-specific data element: 16-bit company id plus payload."""

    company_id: int
    data: bytes


@dataclass(frozen=True)
class RawAdvertisement:
    """A single received advertisement, as handed over by the radio source.

    Attributes:
        address: Source device address reported by the radio stack.
        manufacturer_data: Manufacturer-data elements in the order the radio
            stack delivered them. May be empty.
        received_at: Capture time of the advertisement.
        rssi: Received signal strength in dBm, when the stack reports it.
    """

    address: str
    manufacturer_data: tuple[ManufacturerPayload, ...] = ()
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    rssi: Optional[int] = None

    @classmethod
    def from_bleak(
        cls, device: "BLEDevice", adv: "AdvertisementData"
    ) -> "RawAdvertisement":
        """Build from a bleak detection callback ``(BLEDevice, AdvertisementData)`` pair."""
        elements = tuple(
            ManufacturerPayload(company_id=company_id, data=bytes(data))
            for company_id, data in (adv.manufacturer_data or {}).items()
        )
        return cls(
            address=device.address,
            manufacturer_data=elements,
            rssi=getattr(adv, "rssi", None),
        )


@dataclass
class FilterStats:
    """Running counters for advertisement processing health."""

    seen: int = 0
    matched: int = 0
    rejected: int = 0
    decoded: int = 0


class AdvertisementFilter:
    """Select RuuviTag advertisements and decode their payloads.

    Most advertisements in range belong to unrelated devices. Those are
    discarded without logging above DEBUG and without touching the decoder.
    Only the first manufacturer-data element carrying the target company id
    is decoded; decode failures drop the advertisement.

    Args:
        manufacturer_id: 16-bit company identifier to accept.
        policy: Sentinel handling passed through to the decoder.
    """

    def __init__(
        self,
        manufacturer_id: int = RUUVI_MANUFACTURER_ID,
        policy: DecodePolicy = DecodePolicy.STRICT,
    ) -> None:
        self._manufacturer_id = manufacturer_id
        self._policy = policy
        self.stats = FilterStats()

    @property
    def manufacturer_id(self) -> int:
        return self._manufacturer_id

    def extract(self, adv: RawAdvertisement) -> Optional[ManufacturerPayload]:
        """Return the first manufacturer element with the target id, if any."""
        for element in adv.manufacturer_data:
            if element.company_id == self._manufacturer_id:
                return element
        return None

    def process(self, adv: RawAdvertisement) -> Optional[SensorReading]:
        """Filter and decode one advertisement.

        Returns:
            The decoded reading, or None if the advertisement is unrelated or
            its payload was rejected.
        """
        self.stats.seen += 1
        payload = self.extract(adv)
        if payload is None:
            return None

        self.stats.matched += 1
        try:
            reading = decode_payload(
                payload.data,
                device=adv.address,
                received_at=adv.received_at,
                policy=self._policy,
            )
        except DecodeError as e:
            self.stats.rejected += 1
            logger.debug(
                "Payload rejected (%s) from %s: %s data=%s",
                e.reason,
                adv.address,
                e,
                payload.data.hex(),
            )
            return None

        self.stats.decoded += 1
        return reading
