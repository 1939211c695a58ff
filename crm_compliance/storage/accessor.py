"""
Storage accessor for the CRM store.

Provides the abstract keyed-CRUD interface the compliance engine depends on
and a SQLAlchemy implementation of it. Rows are exchanged as plain dicts.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional, Union

from sqlalchemy import Table, create_engine, event, func, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.sql import ClauseElement, Executable

from ..utils import utc_now
from .schema import get_table, metadata

logger = logging.getLogger(__name__)

TableRef = Union[str, Table]
Record = Dict[str, Any]


def _table(ref: TableRef) -> Table:
    return ref if isinstance(ref, Table) else get_table(ref)


def _row_to_dict(row: Any) -> Record:
    return dict(row._mapping)


def _where(
    table: Table,
    conditions: Optional[Mapping[str, Any]],
    include_deleted: bool,
) -> List[ClauseElement]:
    """Equality conditions plus the soft delete filter."""
    clauses: List[ClauseElement] = []
    if not include_deleted and "deleted_at" in table.c:
        clauses.append(table.c.deleted_at.is_(None))
    for key, value in (conditions or {}).items():
        if value is None:
            continue
        if key not in table.c:
            raise ValueError(f"Unknown column '{key}' on table '{table.name}'")
        clauses.append(table.c[key] == value)
    return clauses


class TransactionScope:
    """
    One database transaction.

    Statements run on a single connection. ``commit`` or ``rollback`` ends the
    transaction explicitly; leaving the scope without a commit rolls back.
    """

    def __init__(self, connection: Connection):
        self._connection = connection
        self._transaction = connection.begin()

    @property
    def is_active(self) -> bool:
        return self._transaction.is_active

    def execute(self, statement: Executable) -> int:
        """Execute a DML statement and return the affected row count."""
        result = self._connection.execute(statement)
        return result.rowcount or 0

    def query(self, statement: Executable) -> List[Record]:
        """Execute a SELECT and return rows as dicts."""
        return [_row_to_dict(row) for row in self._connection.execute(statement)]

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        """Run a block inside a SAVEPOINT, rolling back only that block on error."""
        nested = self._connection.begin_nested()
        try:
            yield
        except Exception:
            nested.rollback()
            raise
        else:
            nested.commit()

    def commit(self) -> None:
        self._transaction.commit()

    def rollback(self) -> None:
        if self._transaction.is_active:
            self._transaction.rollback()


class StorageAccessor(ABC):
    """Abstract interface for generic table access."""

    @abstractmethod
    def create(self, table: TableRef, fields: Mapping[str, Any]) -> Record:
        """
        Insert a record.

        Args:
            table: Table name or object
            fields: Column values; ``id`` and timestamps are filled if absent

        Returns:
            The stored record
        """
        pass

    @abstractmethod
    def find_by_id(
        self, table: TableRef, record_id: str, include_deleted: bool = False
    ) -> Optional[Record]:
        """Get one record by primary key, or None."""
        pass

    @abstractmethod
    def find(
        self,
        table: TableRef,
        conditions: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        include_deleted: bool = False,
    ) -> List[Record]:
        """Find records matching equality conditions."""
        pass

    @abstractmethod
    def update(
        self,
        table: TableRef,
        record_id: str,
        fields: Mapping[str, Any],
        conditions: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Record]:
        """
        Update one record.

        Args:
            table: Table name or object
            record_id: Primary key of the record
            fields: Column values to set
            conditions: Extra equality conditions the row must also satisfy

        Returns:
            The updated record, or None if no row matched
        """
        pass

    @abstractmethod
    def count(
        self, table: TableRef, conditions: Optional[Mapping[str, Any]] = None
    ) -> int:
        """Count records matching equality conditions."""
        pass

    @abstractmethod
    def query(self, statement: Executable) -> List[Record]:
        """Run a SELECT statement and return rows."""
        pass

    @abstractmethod
    def execute(self, statement: Executable) -> int:
        """Run a DML statement in its own transaction and return the row count."""
        pass

    @abstractmethod
    def transaction(self) -> Any:
        """Context manager yielding a ``TransactionScope``."""
        pass


class SQLStorageAccessor(StorageAccessor):
    """SQLAlchemy storage accessor."""

    def __init__(self, database_url: Optional[str] = None, engine: Optional[Engine] = None):
        """
        Initialize the accessor.

        Args:
            database_url: SQLAlchemy database URL
            engine: Pre-built engine, used instead of ``database_url``
        """
        if engine is None:
            if not database_url:
                raise ValueError("database_url or engine is required")
            engine = self._create_engine(database_url)
        self.engine = engine

    @staticmethod
    def _create_engine(database_url: str) -> Engine:
        if database_url.startswith("sqlite"):
            # SQLite doesn't support pool_size and max_overflow
            engine = create_engine(
                database_url,
                pool_pre_ping=True,
                connect_args={"check_same_thread": False},
            )

            # pysqlite needs these hooks for SAVEPOINT to behave
            @event.listens_for(engine, "connect")
            def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
                dbapi_connection.isolation_level = None

            @event.listens_for(engine, "begin")
            def _on_begin(connection: Connection) -> None:
                connection.exec_driver_sql("BEGIN")

            return engine

        return create_engine(
            database_url,
            pool_pre_ping=True,
            pool_size=10,
            max_overflow=20,
        )

    def initialize(self) -> None:
        """Create missing tables."""
        metadata.create_all(bind=self.engine)
        logger.debug(f"Schema initialized on {self.engine.url.render_as_string()}")

    def dispose(self) -> None:
        self.engine.dispose()

    def create(self, table: TableRef, fields: Mapping[str, Any]) -> Record:
        t = _table(table)
        values = dict(fields)
        values.setdefault("id", str(uuid.uuid4()))

        now = utc_now()
        for column in ("created_at", "updated_at"):
            if column in t.c and values.get(column) is None:
                values[column] = now

        with self.engine.begin() as connection:
            connection.execute(insert(t).values(**values))
            row = connection.execute(select(t).where(t.c.id == values["id"])).first()

        return _row_to_dict(row)

    def find_by_id(
        self, table: TableRef, record_id: str, include_deleted: bool = False
    ) -> Optional[Record]:
        t = _table(table)
        clauses = _where(t, None, include_deleted)
        statement = select(t).where(t.c.id == record_id, *clauses)

        with self.engine.connect() as connection:
            row = connection.execute(statement).first()

        return _row_to_dict(row) if row is not None else None

    def find(
        self,
        table: TableRef,
        conditions: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        include_deleted: bool = False,
    ) -> List[Record]:
        t = _table(table)
        statement = select(t).where(*_where(t, conditions, include_deleted))

        if order_by:
            if order_by not in t.c:
                raise ValueError(f"Unknown column '{order_by}' on table '{t.name}'")
            column = t.c[order_by]
            statement = statement.order_by(column.desc() if descending else column.asc())
        if limit is not None:
            statement = statement.limit(limit)
        if offset:
            statement = statement.offset(offset)

        return self.query(statement)

    def update(
        self,
        table: TableRef,
        record_id: str,
        fields: Mapping[str, Any],
        conditions: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Record]:
        t = _table(table)
        values = dict(fields)
        if "updated_at" in t.c and "updated_at" not in values:
            values["updated_at"] = utc_now()

        clauses = _where(t, None, include_deleted=False)
        for key, value in (conditions or {}).items():
            if key not in t.c:
                raise ValueError(f"Unknown column '{key}' on table '{t.name}'")
            clauses.append(t.c[key].is_(None) if value is None else t.c[key] == value)

        statement = update(t).where(t.c.id == record_id, *clauses).values(**values)

        with self.engine.begin() as connection:
            result = connection.execute(statement)
            if not result.rowcount:
                return None
            row = connection.execute(select(t).where(t.c.id == record_id)).first()

        return _row_to_dict(row)

    def count(
        self, table: TableRef, conditions: Optional[Mapping[str, Any]] = None
    ) -> int:
        t = _table(table)
        statement = (
            select(func.count()).select_from(t).where(*_where(t, conditions, False))
        )
        with self.engine.connect() as connection:
            return int(connection.execute(statement).scalar_one())

    def query(self, statement: Executable) -> List[Record]:
        with self.engine.connect() as connection:
            return [_row_to_dict(row) for row in connection.execute(statement)]

    def execute(self, statement: Executable) -> int:
        with self.engine.begin() as connection:
            result = connection.execute(statement)
            return result.rowcount or 0

    @contextmanager
    def transaction(self) -> Iterator[TransactionScope]:
        with self.engine.connect() as connection:
            scope = TransactionScope(connection)
            try:
                yield scope
            except BaseException:
                scope.rollback()
                raise
            else:
                # Not committed by the caller
                scope.rollback()
