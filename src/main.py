from __future__ import annotations

import argparse
import logging
from datetime import datetime, timedelta, timezone
from typing import Sequence

from sqlalchemy.orm import Session, sessionmaker

from config import AppSettings, config
from db.db import init_db
from db.repositories import AssetRepository, HistoricalQuotationRepository
from domain.quotation import Asset, AssetQuotation
from services.quotation_cache import RedisQuotationCache
from services.quotation_service import QuotationService
from services.timeseries_store import SqlTimeSeriesStore


def build_quotation_service(settings: AppSettings, session_factory: sessionmaker[Session]) -> QuotationService:
    cache = RedisQuotationCache.from_url(
        settings.redis_url,
        socket_timeout=settings.redis_socket_timeout,
        key_prefix=settings.cache_key_prefix,
        ttl=timedelta(seconds=settings.cache_ttl_seconds),
    )
    return QuotationService(
        cache=cache,
        timeseries=SqlTimeSeriesStore(session_factory, source_name=settings.quotation_source),
        historical=HistoricalQuotationRepository(session_factory),
        lookback=timedelta(hours=settings.latest_lookback_hours),
        source_name=settings.quotation_source,
    )


def parse_timestamp(raw: str) -> datetime:
    try:
        return datetime.fromtimestamp(int(raw), tz=timezone.utc)
    except ValueError:
        pass

    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def print_quotation(quotation: AssetQuotation) -> None:
    asset = quotation.asset
    print(f"{asset.symbol or asset.address} ({asset.blockchain}) {quotation.price} USD @ {quotation.time.isoformat()}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Store and query USD asset quotations.")
    parser.add_argument("--blockchain", required=True)
    parser.add_argument("--address", required=True)
    parser.add_argument("--symbol", default="")
    commands = parser.add_subparsers(dest="command", required=True)

    set_price = commands.add_parser("set-price", help="Write a price to the time series and the cache.")
    set_price.add_argument("price", type=float)
    set_price.add_argument("--timestamp", type=parse_timestamp, default=None)
    set_price.add_argument("--historical", action="store_true", help="Also store it as a historical quote.")

    commands.add_parser("latest", help="Latest quotation, cache first.")
    commands.add_parser("oldest", help="Oldest quotation in the time series.")

    for name, help_text in (("range", "Time-series quotations, newest first."), ("history", "Historical quotes.")):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("--start", type=parse_timestamp, required=True)
        sub.add_argument("--end", type=parse_timestamp, default=None)
    return parser


def run(args: argparse.Namespace, service: QuotationService, session_factory: sessionmaker[Session]) -> None:
    registry = AssetRepository(session_factory)
    asset = registry.get(args.blockchain, args.address) or Asset(
        symbol=args.symbol, address=args.address, blockchain=args.blockchain
    )
    now = datetime.now(timezone.utc)

    if args.command == "set-price":
        timestamp = args.timestamp or now
        service.set_price(asset, args.price, timestamp)
        if args.historical:
            registry.create(asset)
            service.set_historical_quotation(
                AssetQuotation(asset=asset, price=args.price, time=timestamp, source=service.source_name)
            )
        print(f"Stored {args.price} USD for {asset.identifier} @ {timestamp.isoformat()}")
    elif args.command == "latest":
        print_quotation(service.get_latest_quotation(asset))
    elif args.command == "oldest":
        print_quotation(service.get_oldest_quotation(asset))
    elif args.command == "range":
        for quotation in service.get_quotations(asset, args.start, args.end or now):
            print_quotation(quotation)
    elif args.command == "history":
        for quotation in service.get_historical_quotations(asset, args.start, args.end or now):
            print_quotation(quotation)


def main(argv: Sequence[str] | None = None) -> None:
    settings = config()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    args = build_parser().parse_args(argv)

    session_factory = init_db(settings.database_url)
    run(args, build_quotation_service(settings, session_factory), session_factory)


if __name__ == "__main__":
    main()
