#!/usr/bin/env python3
"""Fetch market price records and print radius statistics.

Configuration comes from ``MANDISYNC_*`` environment variables (see
``SyncConfig.from_env``).  With ``--watch`` the collection is kept in sync
and every update is printed until interrupted.

Examples::

    python scripts/watch_prices.py crops/farmers --lat 19.99 --lon 73.79 --radius 25 --commodity onion
    python scripts/watch_prices.py crops/farmers --watch -v
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from mandisync import (  # noqa: E402
    Coordinates,
    MarketDataClient,
    NoDataAvailable,
    Record,
    SyncConfig,
    SyncError,
    UpdateMeta,
    compute_statistics,
    filter_by_radius,
    summarize_radius,
)
from mandisync.ingestion.records import dedupe_records, parse_records  # noqa: E402


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fetch market prices with offline cache fallback")
    parser.add_argument("path", help="Collection path, e.g. crops/farmers")
    parser.add_argument("--commodity", default=None, help="Only consider this commodity (case-insensitive).")
    parser.add_argument("--lat", type=float, default=None, help="Latitude of the radius centre.")
    parser.add_argument("--lon", type=float, default=None, help="Longitude of the radius centre.")
    parser.add_argument("--radius", type=float, default=10.0, help="Radius in km (default: 10).")
    parser.add_argument("--force-refresh", action="store_true", help="Skip a fresh cache entry.")
    parser.add_argument("--watch", action="store_true", help="Keep watching live updates until Ctrl+C.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args()


def _select(records: list[Record], args: argparse.Namespace) -> list[Record]:
    if args.lat is None or args.lon is None:
        if not args.commodity:
            return records
        wanted = args.commodity.casefold()
        return [record for record in records if record.commodity_name.casefold() == wanted]
    center = Coordinates(lat=args.lat, lon=args.lon)
    return filter_by_radius(records, center, args.radius, args.commodity)


def _print_summary(records: list[Record], args: argparse.Namespace, origin: str) -> None:
    selected = _select(records, args)
    statistics = compute_statistics(selected)
    summary = summarize_radius(selected, args.commodity)
    print(f"[{origin}] {len(records)} records, {summary.count} selected")
    print(
        f"  min={statistics.min:.2f} max={statistics.max:.2f} mean={statistics.mean:.2f} "
        f"median={statistics.median:.2f} mode={statistics.mode:.2f}"
    )
    print(f"  average={summary.average_price:.0f} per_kg={summary.average_price_per_kg:.0f}")


async def _run(args: argparse.Namespace) -> int:
    config = SyncConfig.from_env()

    async with MarketDataClient(config) as client:
        try:
            result = await client.fetch_collection(args.path, force_refresh=args.force_refresh)
        except NoDataAvailable as exc:
            print(f"Offline: {exc}")
            return 2
        except SyncError as exc:
            print(f"Fetch failed: {exc}")
            return 1

        origin = "offline cache" if result.offline else "cache" if result.from_cache else "network"
        if result.error is not None:
            origin = f"cache after error: {result.error}"
        records = dedupe_records(parse_records(result.data))
        _print_summary(records, args, origin)

        if not args.watch:
            return 0

        def _on_records(updated: list[Record], meta: UpdateMeta) -> None:
            flags: list[str] = [name for name in ("from_cache", "realtime", "offline", "error") if getattr(meta, name)]
            _print_summary(updated, args, f"{meta.phase} {','.join(flags) or 'fresh'}")

        stop = await client.watch(args.path, _on_records)
        try:
            await asyncio.Event().wait()
        finally:
            stop()
    return 0


def main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
