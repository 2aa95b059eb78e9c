"""Runtime configuration for the bridge."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .decoder import RUUVI_MANUFACTURER_ID, DecodePolicy
from .hub import DEFAULT_QUEUE_SIZE, DEFAULT_WRITE_TIMEOUT
from .listener import ListenAddress

DEFAULT_LISTEN = "127.0.0.1:7001"


class ConfigError(ValueError):
    """Invalid configuration value."""


def parse_manufacturer_id(text: str) -> int:
    """Parse a 16-bit company id given as decimal or ``0x`` hex."""
    try:
        value = int(text, 0)
    except ValueError:
        raise ConfigError(f"invalid manufacturer id: {text!r}") from None
    if not 0 <= value <= 0xFFFF:
        raise ConfigError(f"manufacturer id must fit in 16 bits: {text!r}")
    return value


@dataclass(frozen=True)
class BridgeConfig:
    listen: ListenAddress
    manufacturer_id: int = RUUVI_MANUFACTURER_ID
    policy: DecodePolicy = DecodePolicy.STRICT
    adapter: Optional[str] = None
    idle_timeout: Optional[float] = 60.0
    max_restarts: int = 5
    initial_backoff: float = 1.0
    max_backoff: float = 30.0
    write_timeout: float = DEFAULT_WRITE_TIMEOUT
    queue_size: int = DEFAULT_QUEUE_SIZE
    mock: bool = False

    def __post_init__(self) -> None:
        if not 0 <= self.manufacturer_id <= 0xFFFF:
            raise ConfigError(f"manufacturer id out of range: {self.manufacturer_id}")
        if self.idle_timeout is not None and self.idle_timeout <= 0:
            raise ConfigError("idle timeout must be positive")
        if self.write_timeout <= 0:
            raise ConfigError("write timeout must be positive")
        if self.queue_size < 1:
            raise ConfigError("queue size must be at least 1")
        if self.max_restarts < 0:
            raise ConfigError("max restarts cannot be negative")
        if self.initial_backoff < 0 or self.max_backoff < self.initial_backoff:
            raise ConfigError("backoff must satisfy 0 <= initial <= max")

    @classmethod
    def from_values(
        cls,
        *,
        listen: str = DEFAULT_LISTEN,
        manufacturer_id: str = hex(RUUVI_MANUFACTURER_ID),
        lenient: bool = False,
        **kwargs: object,
    ) -> "BridgeConfig":
        """Build from command-line style string values."""
        try:
            address = ListenAddress.parse(listen)
        except ValueError as e:
            raise ConfigError(f"invalid listen address: {e}") from None
        return cls(
            listen=address,
            manufacturer_id=parse_manufacturer_id(manufacturer_id),
            policy=DecodePolicy.LENIENT if lenient else DecodePolicy.STRICT,
            **kwargs,  # type: ignore[arg-type]
        )
