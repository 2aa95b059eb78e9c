from __future__ import annotations

import argparse
import logging
import sys

from .bridge import run
from .config import DEFAULT_LISTEN, BridgeConfig, ConfigError

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ruuvi-json-bridge",
        description="Receive RuuviTag BLE advertisements and stream decoded readings "
        "as newline-delimited JSON to every client connected to a local socket.",
    )
    parser.add_argument(
        "--listen",
        default=DEFAULT_LISTEN,
        help=f"Listen address, HOST:PORT or unix:/path/to.sock (default: {DEFAULT_LISTEN})",
    )
    parser.add_argument(
        "--manufacturer-id",
        default="0x0499",
        help="Manufacturer (company) id to decode, decimal or 0x hex (default: 0x0499)",
    )
    parser.add_argument(
        "--adapter",
        default=None,
        help="Bluetooth adapter to scan with, e.g. hci0 (default: system default)",
    )
    parser.add_argument(
        "--idle-timeout",
        type=float,
        default=60.0,
        help="Restart the scan if no advertisement arrives for this many seconds",
    )
    parser.add_argument(
        "--max-restarts",
        type=int,
        default=5,
        help="Consecutive scan restarts before exiting with an error (default: 5)",
    )
    parser.add_argument(
        "--write-timeout",
        type=float,
        default=5.0,
        help="Drop a client whose socket write stalls this many seconds (default: 5)",
    )
    parser.add_argument(
        "--queue-size",
        type=int,
        default=256,
        help="Lines buffered per client before it is dropped as too slow (default: 256)",
    )
    parser.add_argument(
        "--lenient",
        action="store_true",
        help="Emit readings with unmeasured fields as null instead of dropping them",
    )
    parser.add_argument(
        "--mock",
        action="store_true",
        help="Use synthetic RuuviTag advertisements (no Bluetooth adapter required)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=[
            "CRITICAL",
            "ERROR",
            "WARNING",
            "INFO",
            "DEBUG",
            "NOTSET",
        ],
        help="Log level (default: WARNING)",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Also write logs to this file (default: stderr only)",
    )
    return parser


def configure_logging(log_level: str, log_file: str | None = None) -> None:
    level = getattr(logging, str(log_level).upper(), logging.WARNING)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except OSError as e:
            # Keep running with stderr only
            print(f"Cannot open log file {log_file}: {e}", file=sys.stderr)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, args.log_file)

    try:
        config = BridgeConfig.from_values(
            listen=args.listen,
            manufacturer_id=args.manufacturer_id,
            lenient=args.lenient,
            adapter=args.adapter,
            idle_timeout=args.idle_timeout,
            max_restarts=args.max_restarts,
            write_timeout=args.write_timeout,
            queue_size=args.queue_size,
            mock=args.mock,
        )
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e)
        raise SystemExit(2)

    logger.info(
        "Starting ruuvi-json-bridge %s: listen=%s manufacturer=0x%04X policy=%s",
        __version__,
        config.listen,
        config.manufacturer_id,
        config.policy.value,
    )
    raise SystemExit(run(config))
