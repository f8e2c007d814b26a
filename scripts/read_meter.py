#!/usr/bin/env python3
"""
Read the kWh value from one or more charger display photos.

Uses Google Cloud Vision with application default credentials
(GOOGLE_APPLICATION_CREDENTIALS). Thresholds can be overridden with
METER_OCR_* environment variables.

Usage:
    python scripts/read_meter.py photo.jpg
    python scripts/read_meter.py photos/*.jpg --json
    python scripts/read_meter.py start.jpg end.jpg --consumption
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from meterverify.config import OCRSettings
from meterverify.ocr import VisionTextDetector
from meterverify.pipeline import KwhReader
from meterverify.validation import ReadingValidator, format_reading


def parse_args():
    parser = argparse.ArgumentParser(description="Read kWh values from meter photos")
    parser.add_argument("images", nargs="+", type=Path, help="Image files to read")
    parser.add_argument("--json", action="store_true", help="Print results as JSON lines")
    parser.add_argument(
        "--consumption",
        action="store_true",
        help="Treat the first two images as start and end readings",
    )
    parser.add_argument("--timeout", type=float, default=None, help="Per-call OCR timeout (s)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser.parse_args()


async def read_all(reader: KwhReader, paths):
    results = []
    for path in paths:
        result = await reader.read(path.read_bytes())
        results.append((path, result))
    return results


def main():
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    missing = [p for p in args.images if not p.is_file()]
    if missing:
        print(f"Not found: {', '.join(str(p) for p in missing)}", file=sys.stderr)
        return 2

    settings = OCRSettings.from_env()
    reader = KwhReader(VisionTextDetector(timeout=args.timeout), settings)
    results = asyncio.run(read_all(reader, args.images))

    for path, result in results:
        if args.json:
            print(
                json.dumps(
                    {
                        "image": str(path),
                        "success": result.success,
                        "reading": result.reading,
                        "confidence": result.confidence,
                        "strategy": result.strategy.value if result.strategy else None,
                        "ocr_calls": result.ocr_calls,
                        "processing_time_ms": result.processing_time_ms,
                        "error": result.error,
                        "suggestions": result.suggestions,
                    }
                )
            )
        elif result.success:
            print(
                f"{path.name}: {format_reading(result.reading)} "
                f"(confidence {result.confidence:.0f}%, {result.strategy.value}, "
                f"{result.ocr_calls} call(s), {result.processing_time_ms}ms)"
            )
        else:
            print(f"{path.name}: FAILED - {result.error}")
            for tip in result.suggestions:
                print(f"  - {tip}")

    if args.consumption and len(results) >= 2:
        (_, start), (_, end) = results[:2]
        if start.success and end.success:
            consumption = ReadingValidator(settings).calculate_consumption(
                start.reading, end.reading
            )
            if consumption.valid:
                print(f"Consumption: {consumption.consumption:.2f} kWh")
            else:
                print(f"Consumption invalid: {consumption.error}")

    stats = reader.get_stats()
    print(
        f"\n{stats['total']} image(s), {stats['succeeded']} read, "
        f"{stats['calls_per_read']:.2f} OCR calls per image"
    )
    return 0 if all(r.success for _, r in results) else 1


if __name__ == "__main__":
    sys.exit(main())
