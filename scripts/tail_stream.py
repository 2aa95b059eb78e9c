#!/usr/bin/env python3
"""Connect to a running bridge and print the JSON lines it sends.

    python scripts/tail_stream.py 127.0.0.1:7001
    python scripts/tail_stream.py unix:/run/ruuvi-json-bridge.sock
"""

import argparse
import asyncio
import json
import sys


async def tail(address: str, pretty: bool) -> None:
    if address.startswith("unix:"):
        reader, writer = await asyncio.open_unix_connection(address[len("unix:") :])
    else:
        host, _, port = address.rpartition(":")
        reader, writer = await asyncio.open_connection(host or "127.0.0.1", int(port))

    try:
        async for raw in reader:
            line = raw.decode("utf-8").rstrip("\n")
            if pretty:
                record = json.loads(line)
                print(
                    f"{record['timestamp']} {record['device']} "
                    f"T={record['temperature']} H={record['humidity']} "
                    f"P={record['pressure']} seq={record['sequence_number']}",
                    flush=True,
                )
            else:
                print(line, flush=True)
    finally:
        writer.close()
        await writer.wait_closed()


def main() -> None:
    parser = argparse.ArgumentParser(description="Print lines from ruuvi-json-bridge")
    parser.add_argument("address", nargs="?", default="127.0.0.1:7001")
    parser.add_argument("--pretty", action="store_true", help="One-line summaries")
    args = parser.parse_args()
    try:
        asyncio.run(tail(args.address, args.pretty))
    except KeyboardInterrupt:
        pass
    except OSError as e:
        print(f"Connection failed: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
