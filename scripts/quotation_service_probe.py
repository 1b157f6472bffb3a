# flake8: noqa E402
# Run via uv for access to dev deps, e.g.:
# uv run scripts/quotation_service_probe.py --price 101.5 --reads 3
from __future__ import annotations

import argparse
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Ensure the src directory is importable when the script is invoked via uv/python directly.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from db.db import init_db
from domain.quotation import Asset, AssetQuotation
from services.quotation_cache import InMemoryQuotationCache
from services.quotation_service import QuotationService
from services.timeseries_store import SqlTimeSeriesStore


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Probe the cache-first read path of QuotationService.")
    parser.add_argument("--symbol", default="ETH")
    parser.add_argument("--blockchain", default="Ethereum")
    parser.add_argument("--address", default="0x0000000000000000000000000000000000000000")
    parser.add_argument("--price", type=float, default=100.0, help="Price seeded into the time series.")
    parser.add_argument("--age-hours", type=float, default=1.0, help="Age of the seeded point (default: 1h).")
    parser.add_argument("--reads", type=int, default=3, help="Number of latest-price reads (default: 3).")
    return parser.parse_args()


class CountingTimeSeriesStore(SqlTimeSeriesStore):
    def __init__(self, *args, **kwargs) -> None:  # type: ignore[no-untyped-def]
        super().__init__(*args, **kwargs)
        self.query_count = 0

    def latest_before(self, asset: Asset, start: datetime, end: datetime) -> AssetQuotation:
        self.query_count += 1
        print(f"[timeseries] query #{self.query_count} for {asset.symbol} in ({start.isoformat()}, {end.isoformat()}]")
        return super().latest_before(asset, start, end)


def main() -> None:
    args = parse_args()

    timeseries = CountingTimeSeriesStore(init_db("sqlite:///:memory:"))
    service = QuotationService(cache=InMemoryQuotationCache(), timeseries=timeseries)
    asset = Asset(symbol=args.symbol, name=args.symbol, address=args.address, blockchain=args.blockchain)

    seeded_at = datetime.now(timezone.utc) - timedelta(hours=args.age_hours)
    timeseries.append(AssetQuotation(asset=asset, price=args.price, time=seeded_at))
    print(f"Seeded {asset.symbol} at {args.price} USD @ {seeded_at.isoformat()} (time series only)")

    for idx in range(1, args.reads + 1):
        before = timeseries.query_count
        price = service.get_latest_price(asset)
        status = "cache-hit" if timeseries.query_count == before else "fallback"
        print(f"[request {idx}] {asset.symbol} => {price} ({status})")


if __name__ == "__main__":
    main()
