"""
Store Service - Persistent object store used by the import service.

The import service never talks to the ORM directly. It goes through the
PersistentObjectStore interface, which creates, finds, lists and deletes
records and commits or rolls back the unit of work. SqlAlchemyObjectStore is
the implementation backed by a SQLAlchemy session.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


class PersistentObjectStore(ABC):
    """Persistence operations the import service depends on."""

    @abstractmethod
    def create_object(self, record_type: type) -> Any:
        """Create a new, pending record of the given type."""
        pass

    @abstractmethod
    def find_object(self, record_type: type, field_name: str, value: Any) -> Optional[Any]:
        """Return the first record whose field equals value, or None."""
        pass

    @abstractmethod
    def get_objects(self, record_type: type, criteria: Optional[Dict[str, Any]] = None) -> List[Any]:
        """Return all records of a type matching the equality criteria."""
        pass

    @abstractmethod
    def delete(self, obj: Any):
        pass

    @abstractmethod
    def commit(self):
        pass

    @abstractmethod
    def rollback(self):
        pass

    def flush(self):
        """Push pending changes to the backend without committing."""
        pass

    @contextmanager
    def savepoint(self):
        """
        Scope the changes of one row.

        An exception raised inside the block undoes only that block and is
        re-raised. Stores without nested transactions just run the block.
        """
        yield


class SqlAlchemyObjectStore(PersistentObjectStore):
    """
    PersistentObjectStore over a SQLAlchemy session.

    Queries flush first so records created earlier in the same unit of work
    are visible to later lookups.
    """

    def __init__(self, db_session: Session):
        self.session = db_session

    def create_object(self, record_type: type) -> Any:
        obj = record_type()
        self.session.add(obj)
        return obj

    def find_object(self, record_type: type, field_name: str, value: Any) -> Optional[Any]:
        if value is None:
            return None
        self.session.flush()
        return self.session.query(record_type).filter(
            getattr(record_type, field_name) == value
        ).first()

    def get_objects(self, record_type: type, criteria: Optional[Dict[str, Any]] = None) -> List[Any]:
        self.session.flush()
        query = self.session.query(record_type)
        for field_name, value in (criteria or {}).items():
            query = query.filter(getattr(record_type, field_name) == value)
        return query.all()

    def delete(self, obj: Any):
        self.session.delete(obj)

    def flush(self):
        self.session.flush()

    @contextmanager
    def savepoint(self):
        with self.session.begin_nested():
            yield
            # Constraint violations surface here, inside the row that caused them
            self.session.flush()

    def commit(self):
        self.session.commit()
        logger.debug("Object store committed")

    def rollback(self):
        self.session.rollback()
        logger.debug("Object store rolled back")


def enable_sqlite_savepoints(engine: Engine):
    """
    Let SAVEPOINT work on pysqlite.

    The driver opens transactions lazily and never around SAVEPOINT, so
    transaction control is handed to SQLAlchemy, which emits BEGIN itself.
    """
    if engine.dialect.name != 'sqlite':
        return

    @event.listens_for(engine, 'connect')
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _emit_begin(conn):
        conn.exec_driver_sql('BEGIN')
