#!/usr/bin/env python3
"""
Stream a sine wave to standard output (or any collection URI).

Usage:
    python examples/simple_example.py
    python examples/simple_example.py --collect tcp:localhost:3003 --domain lab
"""

import argparse
import logging
import math
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mpstream import Benchmark, MeasurementClient, MeasurementHandler


def main():
    parser = argparse.ArgumentParser(description="mpstream sine wave example")
    parser.add_argument("--collect", default="file:-", help="Collection URI (default: file:-)")
    parser.add_argument("--domain", default="example", help="Collection domain")
    parser.add_argument("--count", type=int, default=360, help="Number of samples")
    args = parser.parse_args()

    client = MeasurementClient()
    sin = client.define("sin", ["label:string", "angle:int32", "value:double"])

    app_logger = logging.getLogger("example")
    app_logger.setLevel(logging.INFO)
    app_logger.addHandler(MeasurementHandler(client))

    with client.session(domain=args.domain, collect_uri=args.collect, log_level="WARNING"):
        client.inject_metadata(None, "description", "sine wave demo")
        client.inject_metadata(sin, "unit", "deg", qualifier="angle")

        with Benchmark(client, "sine") as bm:
            for angle in range(args.count):
                client.inject(sin, f"label_{angle}", angle, math.sin(math.radians(angle)))
                bm.step()

        app_logger.info(f"Sent {args.count} samples")

    return 0


if __name__ == "__main__":
    sys.exit(main())
