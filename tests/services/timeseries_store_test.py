from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from domain.errors import QuotationNotFoundError, TierUnavailableError
from domain.quotation import AssetQuotation
from services.timeseries_store import (
    QuotationPointOrm,
    SqlTimeSeriesStore,
    TimeSeriesBase,
    parse_price,
    parse_time,
)
from tests.constants import BTC, ETH, T0
from tests.helpers.sessions import mock_session_factory


@pytest.fixture()
def store(session_factory: sessionmaker[Session]) -> SqlTimeSeriesStore:
    return SqlTimeSeriesStore(session_factory)


def _seed(store: SqlTimeSeriesStore, *minutes_and_prices: tuple[int, float]) -> None:
    store.append_many(
        AssetQuotation(asset=ETH, price=price, time=T0 + timedelta(minutes=minutes))
        for minutes, price in minutes_and_prices
    )


def test_latest_before_returns_most_recent_point_in_window(store: SqlTimeSeriesStore) -> None:
    _seed(store, (0, 100.0), (10, 110.0), (20, 120.0))

    quotation = store.latest_before(ETH, T0, T0 + timedelta(minutes=15))

    assert quotation.price == 110.0
    assert quotation.time == T0 + timedelta(minutes=10)
    assert quotation.asset == ETH
    assert quotation.source == "diadata"


def test_window_excludes_start_and_includes_end(store: SqlTimeSeriesStore) -> None:
    _seed(store, (0, 100.0), (10, 110.0))

    assert store.latest_before(ETH, T0, T0 + timedelta(minutes=10)).price == 110.0
    with pytest.raises(QuotationNotFoundError):
        store.latest_before(ETH, T0 + timedelta(minutes=10), T0 + timedelta(minutes=30))


def test_range_is_strictly_descending(store: SqlTimeSeriesStore) -> None:
    _seed(store, (20, 120.0), (0, 100.0), (10, 110.0))

    quotations = store.range(ETH, T0 - timedelta(minutes=1), T0 + timedelta(hours=1))

    times = [q.time for q in quotations]
    assert times == sorted(times, reverse=True)
    assert len(set(times)) == len(times)
    assert [q.price for q in quotations] == [120.0, 110.0, 100.0]


def test_range_only_returns_requested_asset(store: SqlTimeSeriesStore) -> None:
    _seed(store, (0, 100.0))
    store.append(AssetQuotation(asset=BTC, price=40000.0, time=T0))

    quotations = store.range(BTC, T0 - timedelta(minutes=1), T0 + timedelta(minutes=1))

    assert [q.price for q in quotations] == [40000.0]


def test_empty_range_raises_no_data(store: SqlTimeSeriesStore) -> None:
    with pytest.raises(QuotationNotFoundError, match="no assetQuotation in DB"):
        store.range(ETH, T0, T0 + timedelta(days=1))


def test_oldest_returns_earliest_point(store: SqlTimeSeriesStore) -> None:
    _seed(store, (30, 130.0), (-60, 90.0), (0, 100.0))

    oldest = store.oldest(ETH)

    assert oldest.price == 90.0
    assert oldest.time == T0 - timedelta(minutes=60)


def test_oldest_without_points_raises_no_data(store: SqlTimeSeriesStore) -> None:
    with pytest.raises(QuotationNotFoundError):
        store.oldest(ETH)


def test_points_carry_identifying_tags(store: SqlTimeSeriesStore, session_factory: sessionmaker[Session]) -> None:
    _seed(store, (0, 1234.5678))

    with session_factory() as session:
        point = session.query(QuotationPointOrm).one()

    assert (point.symbol, point.name, point.address, point.blockchain) == (
        ETH.symbol,
        ETH.name,
        ETH.address,
        ETH.blockchain,
    )
    assert point.price == Decimal("1234.5678")


def test_driver_failure_is_tier_unavailable() -> None:
    session = Mock()
    session.execute.side_effect = OperationalError("SELECT", {}, Exception("database is locked"))
    store = SqlTimeSeriesStore(mock_session_factory(session))

    with pytest.raises(TierUnavailableError) as excinfo:
        store.latest_before(ETH, T0, T0 + timedelta(minutes=1))
    assert excinfo.value.tier == "timeseries"


def test_append_failure_rolls_back_and_raises() -> None:
    session = Mock()
    session.add_all.side_effect = OperationalError("INSERT", {}, Exception("disk full"))
    factory = mock_session_factory(session)
    store = SqlTimeSeriesStore(factory)

    with pytest.raises(TierUnavailableError):
        store.append(AssetQuotation(asset=ETH, price=1.0, time=T0))
    exc_type = factory.begin.return_value.__exit__.call_args.args[0]
    assert exc_type is OperationalError


def test_undecodable_point_is_tier_unavailable() -> None:
    session = Mock()
    session.execute.return_value.all.return_value = [(10**15, "1.0")]
    store = SqlTimeSeriesStore(mock_session_factory(session))

    with pytest.raises(TierUnavailableError) as excinfo:
        store.latest_before(ETH, T0, T0 + timedelta(minutes=1))
    assert excinfo.value.tier == "timeseries"


def test_store_serves_parallel_requests(tmp_path: Path) -> None:
    engine = create_engine(
        f"sqlite:///{tmp_path / 'quotations.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    TimeSeriesBase.metadata.create_all(engine)
    store = SqlTimeSeriesStore(sessionmaker(engine, expire_on_commit=False))
    window = (T0 - timedelta(minutes=1), T0 + timedelta(hours=1))

    def work(worker: int) -> int:
        for step in range(10):
            store.append(AssetQuotation(asset=ETH, price=float(worker), time=T0 + timedelta(seconds=worker * 100 + step)))
            store.range(ETH, *window)
        return worker

    try:
        with ThreadPoolExecutor(max_workers=8) as pool:
            assert list(pool.map(work, range(8))) == list(range(8))

        assert len(store.range(ETH, *window)) == 80
    finally:
        engine.dispose()


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (1.5, 1.5),
        (3, 3.0),
        (Decimal("2500.125"), 2500.125),
        ("0.000012345", 0.000012345),
        (b"42.0", 42.0),
    ],
)
def test_parse_price_accepts_native_representations(raw: object, expected: float) -> None:
    assert parse_price(raw) == expected


@pytest.mark.parametrize("raw", [None, True, "abc", object()])
def test_parse_price_rejects_garbage(raw: object) -> None:
    with pytest.raises(ValueError):
        parse_price(raw)


@pytest.mark.parametrize(
    "raw",
    [
        "2024-01-01T12:00:00Z",
        "2024-01-01T12:00:00+00:00",
        "2024-01-01T14:00:00+02:00",
        1704110400,
        "1704110400",
        1704110400 * 10**9,
        str(1704110400 * 10**9),
        datetime(2024, 1, 1, 12, 0),
    ],
)
def test_parse_time_accepts_native_representations(raw: object) -> None:
    parsed = parse_time(raw)

    assert parsed == T0
    assert parsed.tzinfo == timezone.utc


def test_parse_time_truncates_nanosecond_fraction() -> None:
    parsed = parse_time("2024-01-01T12:00:00.123456789Z")

    assert parsed == T0.replace(microsecond=123456)


def test_parse_time_keeps_nanosecond_epoch_precision_to_microseconds() -> None:
    parsed = parse_time(1704110400 * 10**9 + 123_456_789)

    assert parsed == T0.replace(microsecond=123456)


@pytest.mark.parametrize("raw", [10**15, "1000000000000000", -(10**15)])
def test_parse_time_rejects_out_of_range_epochs(raw: object) -> None:
    with pytest.raises(ValueError):
        parse_time(raw)
