"""
SQLAlchemy relational store adapter.
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import MetaData, Table, create_engine, func, insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from migration_engine.core.exceptions import CollaboratorError

logger = logging.getLogger(__name__)


class SqlAlchemyRelationalStore:
    """
    RelationalStore over a SQLAlchemy engine.

    Tables are reflected on first use. Dependency order comes from the
    reflected foreign keys.
    """

    def __init__(self, engine: Engine, schema: Optional[str] = None):
        self.engine = engine
        self.schema = schema
        self._metadata = MetaData(schema=schema)
        self._tables: Dict[str, Table] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_url(cls, url: str, schema: Optional[str] = None, **engine_kwargs) -> "SqlAlchemyRelationalStore":
        engine_kwargs.setdefault("pool_pre_ping", True)
        return cls(create_engine(url, **engine_kwargs), schema=schema)

    def _table(self, name: str) -> Table:
        with self._lock:
            table = self._tables.get(name)
            if table is None:
                try:
                    table = Table(name, self._metadata, autoload_with=self.engine)
                except SQLAlchemyError as e:
                    raise CollaboratorError(f"Failed to reflect table {name}: {e}") from e
                self._tables[name] = table
            return table

    def count(self, table: str) -> int:
        t = self._table(table)
        try:
            with self.engine.connect() as conn:
                return conn.execute(select(func.count()).select_from(t)).scalar_one()
        except SQLAlchemyError as e:
            raise CollaboratorError(f"Failed to count rows in {table}: {e}") from e

    def page_rows(self, table: str, cursor: Any, size: int, key_column: str = "id") -> List[Dict[str, Any]]:
        t = self._table(table)
        key = t.c[key_column]
        query = select(t).order_by(key).limit(size)
        if cursor is not None:
            query = query.where(key > cursor)
        try:
            with self.engine.connect() as conn:
                return [dict(row._mapping) for row in conn.execute(query)]
        except SQLAlchemyError as e:
            raise CollaboratorError(f"Failed to read rows from {table}: {e}") from e

    def upsert(self, table: str, rows: Sequence[Dict[str, Any]], key_column: str = "id") -> int:
        """Insert the rows whose key is not present yet. Returns the number inserted."""
        if not rows:
            return 0
        t = self._table(table)
        key = t.c[key_column]
        keys = [row[key_column] for row in rows]
        try:
            with self.engine.begin() as conn:
                existing = set(conn.execute(select(key).where(key.in_(keys))).scalars())
                new_rows = [row for row in rows if row[key_column] not in existing]
                if new_rows:
                    conn.execute(insert(t), new_rows)
        except SQLAlchemyError as e:
            raise CollaboratorError(f"Failed to write rows to {table}: {e}") from e
        return len(new_rows)

    def tables_in_dependency_order(self) -> List[str]:
        metadata = MetaData(schema=self.schema)
        try:
            metadata.reflect(bind=self.engine)
        except SQLAlchemyError as e:
            raise CollaboratorError(f"Failed to reflect schema: {e}") from e
        return [table.name for table in metadata.sorted_tables]
