from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from db.models import Base
from services.timeseries_store import TimeSeriesBase


def create_db_engine(database_url: str, *, echo: bool = False) -> Engine:
    engine: Engine = create_engine(database_url, echo=echo)

    Base.metadata.create_all(engine)
    TimeSeriesBase.metadata.create_all(engine)
    return engine


def init_db(database_url: str = "sqlite:///asset_quotations.db", *, echo: bool = False) -> sessionmaker[Session]:
    return sessionmaker(create_db_engine(database_url, echo=echo), expire_on_commit=False)
