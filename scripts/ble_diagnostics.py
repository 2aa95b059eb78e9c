#!/usr/bin/env python3
"""
BLE scan diagnostics: check the adapter and print decoded RuuviTag readings.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import platform
import subprocess
import sys

# Add the package to the path (from scripts/ to src/)
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

# Configure logging for diagnostics tool
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",  # Simple format for user-friendly output
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

from ruuvi_bridge.advertisement import AdvertisementFilter  # noqa: E402
from ruuvi_bridge.decoder import DecodePolicy  # noqa: E402
from ruuvi_bridge.scanner import BleakAdvertisementSource  # noqa: E402


def check_bluetooth_status() -> bool:
    """Check if Bluetooth is available and powered."""
    logger.info("🔵 Checking Bluetooth status...")

    system = platform.system().lower()

    if system == "linux":
        try:
            result = subprocess.run(
                ["bluetoothctl", "show"], capture_output=True, text=True, timeout=10
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"⚠️ Could not check Bluetooth status on Linux: {e}")
            return True  # Assume it's working
        if "Powered: yes" in result.stdout:
            logger.info("✅ Bluetooth is powered on Linux")
            return True
        logger.error("❌ Bluetooth appears to be powered off on Linux")
        return False

    if system == "darwin":
        try:
            result = subprocess.run(
                ["system_profiler", "SPBluetoothDataType"],
                capture_output=True,
                text=True,
                timeout=10,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"⚠️ Could not check Bluetooth status on macOS: {e}")
            return True
        if "State: On" in result.stdout:
            logger.info("✅ Bluetooth is enabled on macOS")
            return True
        logger.error("❌ Bluetooth appears to be disabled on macOS")
        return False

    logger.warning(f"⚠️ Bluetooth status check not implemented for {system}")
    return True


async def scan_for_ruuvitags(duration: float, adapter: str | None, lenient: bool) -> None:
    """Scan for a while and print every decoded RuuviTag reading."""
    logger.info(f"📡 Scanning for RuuviTag advertisements for {duration}s...")

    policy = DecodePolicy.LENIENT if lenient else DecodePolicy.STRICT
    adv_filter = AdvertisementFilter(policy=policy)
    source = BleakAdvertisementSource(adapter=adapter, idle_timeout=None)
    devices: set[str] = set()

    async def consume() -> None:
        async for adv in source.advertisements():
            reading = adv_filter.process(adv)
            if reading is None:
                continue
            devices.add(reading.device)
            logger.info(
                f"   🌡️ {reading.device}: {reading.temperature}°C "
                f"{reading.humidity}% {reading.pressure}Pa "
                f"battery={reading.battery}V seq={reading.sequence_number}"
            )

    await source.start()
    try:
        await asyncio.wait_for(consume(), timeout=duration)
    except asyncio.TimeoutError:
        pass
    finally:
        await source.stop()

    stats = adv_filter.stats
    logger.info(
        f"\n📊 {stats.seen} advertisements, {stats.matched} from RuuviTags, "
        f"{stats.decoded} decoded, {stats.rejected} rejected"
    )
    if not devices:
        logger.error("❌ No RuuviTag readings decoded")
        logger.info("💡 Troubleshooting:")
        logger.info("   - Make sure the tag runs RAWv2 (data format 5) firmware")
        logger.info("   - Move closer to the tag")
        logger.info("   - Try --lenient to see readings with unmeasured fields")
    else:
        logger.info(f"✅ Found {len(devices)} RuuviTag(s)")


async def main() -> None:
    parser = argparse.ArgumentParser(description="RuuviTag BLE diagnostics")
    parser.add_argument("--duration", type=float, default=15.0)
    parser.add_argument("--adapter", default=None)
    parser.add_argument("--lenient", action="store_true")
    args = parser.parse_args()

    logger.info("🔧 ruuvi-json-bridge BLE Diagnostics")
    logger.info("=" * 40)

    if not check_bluetooth_status():
        logger.error(
            "\n❌ Bluetooth issues detected. Please enable Bluetooth and try again."
        )
        return

    await scan_for_ruuvitags(args.duration, args.adapter, args.lenient)
    logger.info("\n🏁 Diagnostics complete")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("\n👋 Diagnostics cancelled by user")
    except RuntimeError as e:
        logger.error(f"❌ Diagnostics error: {e}")
        sys.exit(1)
