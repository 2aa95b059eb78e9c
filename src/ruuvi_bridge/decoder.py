"""RuuviTag manufacturer-data payload decoder.

This module turns the raw manufacturer-specific bytes of a RuuviTag broadcast
into an immutable ``SensorReading``. Decoding is a pure function of the input
bytes plus the reception metadata supplied by the caller: there is no I/O and
no state, so the same bytes always produce the same reading.

Supported payload formats are kept in a closed table keyed by the leading
format-version byte:

- ``0x05`` (RAWv2): 24 bytes, big-endian, full sensor set.
- ``0x03`` (RAWv1): 14 bytes, big-endian, no tx power, movement counter or
  measurement sequence.

Unknown version bytes are rejected as unsupported, never guessed at. The
version and length checks happen here; the field arithmetic itself is done by
``ruuvitag_sensor``, whose values are converted to SI-style units (Pa, g, V).

Each field has a "not measured" sentinel. How such fields are handled is
governed by ``DecodePolicy``:

- ``STRICT`` (default): the whole reading is rejected.
- ``LENIENT``: the reading is emitted with the affected fields set to ``None``.
"""

from __future__ import annotations

import enum
import functools
import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from ruuvitag_sensor.decoder import get_decoder

RUUVI_MANUFACTURER_ID = 0x0499

FORMAT_RAWV1 = 0x03
FORMAT_RAWV2 = 0x05

RAWV1_LENGTH = 14
RAWV2_LENGTH = 24

# Field order of the JSON object written to clients
JSON_FIELDS = (
    "device",
    "temperature",
    "humidity",
    "pressure",
    "accel_x",
    "accel_y",
    "accel_z",
    "battery",
    "tx_power",
    "movement_counter",
    "sequence_number",
    "timestamp",
)

# RAWv2 values ruuvitag_sensor passes through unchanged although the tag
# uses them to mean "not measured"
MOVEMENT_NOT_MEASURED = 0xFF
SEQUENCE_NOT_MEASURED = 0xFFFF


class DecodePolicy(enum.Enum):
    """How a payload containing "not measured" sentinel values is treated."""

    STRICT = "strict"
    LENIENT = "lenient"


class DecodeError(ValueError):
    """Raised when a manufacturer payload cannot be turned into a reading.

    Attributes:
        reason: Short machine-readable rejection category. One of
            ``"length"``, ``"version"``, ``"sentinel"`` or ``"range"``.
    """

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


@dataclass(frozen=True)
class SensorReading:
    """One decoded RuuviTag measurement.

    Instances are only ever constructed from a fully decoded payload. Under
    the strict policy every field is populated; under the lenient policy the
    measurement fields may be ``None`` when the tag reported them as not
    measured. ``device`` and ``received_at`` are always present.

    Attributes:
        device: Source address of the advertisement, as reported by the radio
            stack (``AA:BB:CC:DD:EE:FF`` on Linux).
        temperature: Degrees Celsius.
        humidity: Relative humidity in percent.
        pressure: Barometric pressure in Pa.
        accel_x: X-axis acceleration in g.
        accel_y: Y-axis acceleration in g.
        accel_z: Z-axis acceleration in g.
        battery: Battery voltage in V.
        tx_power: Transmit power in dBm.
        movement_counter: Movement interrupt counter, wraps at 254.
        sequence_number: Measurement sequence, increments per measurement
            and wraps at 65534.
        received_at: Capture time of the advertisement (UTC).
    """

    device: str
    temperature: Optional[float]
    humidity: Optional[float]
    pressure: Optional[int]
    accel_x: Optional[float]
    accel_y: Optional[float]
    accel_z: Optional[float]
    battery: Optional[float]
    tx_power: Optional[int]
    movement_counter: Optional[int]
    sequence_number: Optional[int]
    received_at: datetime

    def to_dict(self) -> dict[str, object]:
        """Return the fixed-key mapping written to socket clients."""
        values = asdict(self)
        received_at = values.pop("received_at")
        values["timestamp"] = received_at.astimezone(timezone.utc).isoformat()
        return {key: values[key] for key in JSON_FIELDS}

    def to_json_line(self) -> bytes:
        """Serialize to one UTF-8 JSON object terminated by a single newline."""
        text = json.dumps(self.to_dict(), separators=(",", ":"), allow_nan=False)
        return (text + "\n").encode("utf-8")


class _Fields:
    """Collects converted fields and records which ones were not measured."""

    def __init__(self) -> None:
        self.values: dict[str, object] = {}
        self.missing: list[str] = []

    def put(self, name: str, value: Optional[Any], convert: Callable[[Any], object]) -> None:
        if value is None:
            self.missing.append(name)
            self.values[name] = None
        else:
            self.values[name] = convert(value)

    def absent(self, *names: str) -> None:
        for name in names:
            self.missing.append(name)
            self.values[name] = None


@functools.lru_cache(maxsize=None)
def _library_decoder(version: int) -> Any:
    # ruuvitag_sensor warns on every lookup of a deprecated format
    return get_decoder(version)


def _run_library_decoder(version: int, data: bytes) -> dict[str, Any]:
    decoded = _library_decoder(version).decode_data(data.hex())
    if decoded is None:
        raise DecodeError("range", f"format 0x{version:02X} payload could not be decoded")
    return decoded


def _put_common(fields: _Fields, decoded: dict[str, Any]) -> None:
    # ruuvitag_sensor reports pressure in hPa, acceleration in mG and
    # battery in mV
    fields.put("pressure", decoded.get("pressure"), lambda v: round(v * 100))
    fields.put("accel_x", decoded.get("acceleration_x"), lambda v: v / 1000)
    fields.put("accel_y", decoded.get("acceleration_y"), lambda v: v / 1000)
    fields.put("accel_z", decoded.get("acceleration_z"), lambda v: v / 1000)
    fields.put("battery", decoded.get("battery"), lambda v: v / 1000)


def _decode_rawv2(data: bytes) -> _Fields:
    decoded = _run_library_decoder(FORMAT_RAWV2, data)

    movement = decoded.get("movement_counter")
    if movement == MOVEMENT_NOT_MEASURED:
        movement = None
    sequence = decoded.get("measurement_sequence_number")
    if sequence == SEQUENCE_NOT_MEASURED:
        sequence = None

    fields = _Fields()
    fields.put("temperature", decoded.get("temperature"), float)
    fields.put("humidity", decoded.get("humidity"), float)
    _put_common(fields, decoded)
    fields.put("tx_power", decoded.get("tx_power"), int)
    fields.put("movement_counter", movement, int)
    fields.put("sequence_number", sequence, int)
    return fields


def _decode_rawv1(data: bytes) -> _Fields:
    humidity, temperature_frac = data[1], data[3]
    if temperature_frac > 99:
        raise DecodeError("range", f"temperature fraction out of range: {temperature_frac}")
    if humidity > 200:
        raise DecodeError("range", f"humidity out of range: {humidity}")

    decoded = _run_library_decoder(FORMAT_RAWV1, data)

    fields = _Fields()
    fields.put("temperature", decoded.get("temperature"), lambda v: round(v, 2))
    fields.put("humidity", decoded.get("humidity"), float)
    _put_common(fields, decoded)
    fields.absent("tx_power", "movement_counter", "sequence_number")
    return fields


# version byte -> (payload length, decoding routine)
_FORMATS: dict[int, tuple[int, Callable[[bytes], _Fields]]] = {
    FORMAT_RAWV2: (RAWV2_LENGTH, _decode_rawv2),
    FORMAT_RAWV1: (RAWV1_LENGTH, _decode_rawv1),
}


def supported_formats() -> tuple[int, ...]:
    """Return the format-version bytes this decoder understands."""
    return tuple(sorted(_FORMATS))


def decode_payload(
    data: bytes,
    *,
    device: str,
    received_at: Optional[datetime] = None,
    policy: DecodePolicy = DecodePolicy.STRICT,
) -> SensorReading:
    """Decode RuuviTag manufacturer data into a ``SensorReading``.

    Args:
        data: Manufacturer-specific payload with the 16-bit company identifier
            already stripped, so the first byte is the format version.
        device: Source address of the advertisement carrying the payload.
        received_at: Capture time of the advertisement. Defaults to the
            current UTC time.
        policy: Treatment of fields reported as not measured.

    Returns:
        SensorReading: The decoded measurement.

    Raises:
        DecodeError: If the payload is empty, has an unsupported format
            version, has the wrong length for its version, contains an
            out-of-range value, or (strict policy) contains a sentinel value.
    """
    if not data:
        raise DecodeError("length", "empty manufacturer payload")

    version = data[0]
    layout = _FORMATS.get(version)
    if layout is None:
        raise DecodeError("version", f"unsupported payload format 0x{version:02X}")

    expected_length, decode = layout
    if len(data) != expected_length:
        raise DecodeError(
            "length",
            f"format 0x{version:02X} payload must be {expected_length} bytes, got {len(data)}",
        )

    fields = decode(bytes(data))

    if fields.missing and policy is DecodePolicy.STRICT:
        raise DecodeError(
            "sentinel", f"fields not measured: {', '.join(fields.missing)}"
        )

    if received_at is None:
        received_at = datetime.now(timezone.utc)

    return SensorReading(device=device, received_at=received_at, **fields.values)  # type: ignore[arg-type]
