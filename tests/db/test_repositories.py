from datetime import timedelta
from unittest.mock import Mock

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from db import models
from db.repositories import AssetRepository, HistoricalQuotationRepository
from domain.errors import AssetNotFoundError, TierUnavailableError, UnresolvedPrecisionError
from domain.quotation import AssetQuotation
from tests.constants import BTC, ETH, T0, USDC_ETHEREUM, USDC_POLYGON
from tests.helpers.sessions import mock_session_factory


@pytest.fixture()
def asset_repo(session_factory: sessionmaker[Session]) -> AssetRepository:
    return AssetRepository(session_factory)


@pytest.fixture()
def repo(session_factory: sessionmaker[Session]) -> HistoricalQuotationRepository:
    return HistoricalQuotationRepository(session_factory)


def test_insert_is_idempotent(asset_repo: AssetRepository, repo: HistoricalQuotationRepository) -> None:
    asset_repo.create(ETH)
    quotation = AssetQuotation(asset=ETH, price=2000.0, time=T0, source="coingecko")

    repo.insert(quotation)
    repo.insert(quotation)

    stored = repo.list_range(ETH, T0 - timedelta(hours=1), T0 + timedelta(hours=1))
    assert len(stored) == 1
    assert stored[0].price == 2000.0
    assert stored[0].source == "coingecko"


def test_same_time_from_different_sources_is_kept(
    asset_repo: AssetRepository, repo: HistoricalQuotationRepository
) -> None:
    asset_repo.create(ETH)

    repo.insert(AssetQuotation(asset=ETH, price=2000.0, time=T0, source="coingecko"))
    repo.insert(AssetQuotation(asset=ETH, price=2001.0, time=T0, source="diadata"))

    stored = repo.list_range(ETH, T0 - timedelta(hours=1), T0 + timedelta(hours=1))
    assert {q.source for q in stored} == {"coingecko", "diadata"}


def test_list_range_is_ascending_and_carries_decimals(
    asset_repo: AssetRepository, repo: HistoricalQuotationRepository
) -> None:
    asset_repo.create(ETH)
    for minutes in (30, 0, 15):
        repo.insert(AssetQuotation(asset=ETH, price=2000.0 + minutes, time=T0 + timedelta(minutes=minutes)))

    lookup = ETH.model_copy(update={"decimals": 0})
    stored = repo.list_range(lookup, T0 - timedelta(minutes=1), T0 + timedelta(hours=1))

    times = [q.time for q in stored]
    assert times == sorted(times)
    assert len(set(times)) == len(times)
    assert [q.price for q in stored] == [2000.0, 2015.0, 2030.0]
    assert all(q.asset.decimals == 18 for q in stored)


def test_list_range_bounds_are_exclusive(asset_repo: AssetRepository, repo: HistoricalQuotationRepository) -> None:
    asset_repo.create(ETH)
    repo.insert(AssetQuotation(asset=ETH, price=1.0, time=T0))
    repo.insert(AssetQuotation(asset=ETH, price=2.0, time=T0 + timedelta(minutes=10)))

    stored = repo.list_range(ETH, T0, T0 + timedelta(minutes=10))

    assert stored == []


def test_list_range_with_unresolved_decimals_fails(
    session_factory: sessionmaker[Session], repo: HistoricalQuotationRepository
) -> None:
    with session_factory.begin() as session:
        session.add(
            models.AssetOrm(
                symbol=BTC.symbol, name=BTC.name, address=BTC.address, blockchain=BTC.blockchain, decimals=None
            )
        )
    repo.insert(AssetQuotation(asset=BTC, price=40000.0, time=T0))

    with pytest.raises(UnresolvedPrecisionError):
        repo.list_range(BTC, T0 - timedelta(hours=1), T0 + timedelta(hours=1))


def test_insert_for_unregistered_asset_fails(repo: HistoricalQuotationRepository) -> None:
    with pytest.raises(AssetNotFoundError):
        repo.insert(AssetQuotation(asset=ETH, price=1.0, time=T0))


def test_last_timestamp(asset_repo: AssetRepository, repo: HistoricalQuotationRepository) -> None:
    asset_repo.create(ETH)
    assert repo.last_timestamp(ETH) is None

    repo.insert(AssetQuotation(asset=ETH, price=1.0, time=T0 + timedelta(days=1)))
    repo.insert(AssetQuotation(asset=ETH, price=2.0, time=T0))

    assert repo.last_timestamp(ETH) == T0 + timedelta(days=1)


def test_driver_failure_is_tier_unavailable() -> None:
    session = Mock()
    session.scalar.side_effect = OperationalError("SELECT", {}, Exception("connection reset"))
    repo = HistoricalQuotationRepository(mock_session_factory(session))

    with pytest.raises(TierUnavailableError) as excinfo:
        repo.last_timestamp(ETH)
    assert excinfo.value.tier == "historical"


def test_asset_registry_lists_by_symbol_in_insertion_order(asset_repo: AssetRepository) -> None:
    asset_repo.create(USDC_POLYGON)
    asset_repo.create(ETH)
    asset_repo.create(USDC_ETHEREUM)

    assert asset_repo.list_by_symbol("USDC") == [USDC_POLYGON, USDC_ETHEREUM]
    assert asset_repo.list_by_symbol("DOGE") == []


def test_asset_create_is_get_or_create(asset_repo: AssetRepository, session_factory: sessionmaker[Session]) -> None:
    first = asset_repo.create(ETH)
    second = asset_repo.create(ETH)

    assert first == second == ETH
    with session_factory() as session:
        assert session.query(models.AssetOrm).count() == 1
    assert asset_repo.get(ETH.blockchain, ETH.address) == ETH
    assert asset_repo.get("Ethereum", "0xdead") is None
