from typing import Any, Dict, List, Mapping, Optional, Union
import logging

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool
from sqlalchemy.sql import Executable

from ..config import get_settings
from ..errors import ConnectivityError, QueryError

logger = logging.getLogger(__name__)

Base = declarative_base()


def make_engine(database_url: str) -> Engine:
    # no pooling: every gateway call pays for its own connection
    return create_engine(database_url, poolclass=NullPool, future=True)


engine = make_engine(get_settings().database_url)


def create_tables(bind: Optional[Engine] = None):
    bind = bind or engine
    try:
        from .models.sefaz_status import SefazStatus
        from .models.nfe_document import NfeDocument

        logger.info(f"tables: {list(Base.metadata.tables.keys())}")

        Base.metadata.create_all(bind=bind)
        logger.info("Tables created successfully!")

    except Exception as e:
        logger.error(f"Error creating tables: {e}")
        raise


class PersistenceGateway:
    """Runs one parameterized statement per call on a fresh connection.

    The connection is released on every exit path. There is no transaction
    spanning two calls: each call commits on its own.
    """

    def __init__(self, bind: Optional[Engine] = None):
        self.engine = bind or engine

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    def execute(
        self,
        statement: Union[str, Executable],
        params: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        if isinstance(statement, str):
            statement = text(statement)

        try:
            connection = self.engine.connect()
        except SQLAlchemyError as e:
            logger.error(f"Error connecting to the database: {e}")
            raise ConnectivityError("Database unreachable", details=str(e)) from e

        try:
            if params:
                result = connection.execute(statement, dict(params))
            else:
                result = connection.execute(statement)

            rows = []
            if result.returns_rows:
                rows = [dict(row) for row in result.mappings().all()]
            connection.commit()
            return rows

        except DBAPIError as e:
            if e.connection_invalidated:
                logger.error(f"Database connection lost: {e}")
                raise ConnectivityError("Database connection lost", details=str(e)) from e
            logger.error(f"Error executing statement: {e}")
            raise QueryError("Statement failed", details=str(e.orig)) from e
        except SQLAlchemyError as e:
            logger.error(f"Error executing statement: {e}")
            raise QueryError("Statement failed", details=str(e)) from e
        finally:
            connection.close()
