from typing import Generator

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from db.models import Base
from services.timeseries_store import TimeSeriesBase

engine: Engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
_session_factory = sessionmaker(engine, expire_on_commit=False)


@pytest.fixture(scope="function")
def session_factory() -> sessionmaker[Session]:
    return _session_factory


@pytest.fixture(scope="function", autouse=True)
def reset_db() -> Generator[None, None, None]:
    Base.metadata.create_all(engine)
    TimeSeriesBase.metadata.create_all(engine)
    yield
    TimeSeriesBase.metadata.drop_all(engine)
    Base.metadata.drop_all(engine)
