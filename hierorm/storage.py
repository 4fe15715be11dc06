"""
Storage executor protocol and its SQLAlchemy implementation.

The engine only ever talks to storage through four calls: execute a built
Query, apply a list of per-table manipulations, allocate a new identity in a
base table, and open a transaction. SqlStorage realizes them with SQLAlchemy
Core statements over a sessionmaker.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Literal, Optional, Protocol, Tuple, runtime_checkable

import sqlalchemy as sa
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from hierorm.query import Query

##############################
# 1) Manipulations
##############################


class TableManipulation(BaseModel):
    """
    One statement against one table.

    ``id`` addresses a row by its ID column; ``match`` addresses rows by other
    columns (junction tables). An update whose target row is missing inserts it.
    """
    table: str
    command: Literal["insert", "update", "delete"]
    id: Optional[int] = None
    fields: Dict[str, Any] = Field(default_factory=dict)
    match: Dict[str, Any] = Field(default_factory=dict)

    def __str__(self) -> str:
        target = f"ID={self.id}" if self.id is not None else f"match={self.match}"
        return f"{self.command.upper()} {self.table} {target} fields={sorted(self.fields)}"


##############################
# 2) Storage Protocol
##############################


@runtime_checkable
class StorageExecutor(Protocol):
    """Storage collaborator used by the engine."""
    def execute(self, query: Query) -> List[Dict[str, Any]]: ...
    def manipulate(self, manipulations: List[TableManipulation]) -> None: ...
    def next_identity(self, table: str, fields: Dict[str, Any]) -> int: ...
    def transaction(self) -> Any: ...


##############################
# 3) SQLAlchemy Storage
##############################


class SqlStorage(StorageExecutor):
    """
    SQLAlchemy-backed storage.

    Tables are described in a MetaData that create_tables() fills from the
    schema registry; tables it did not create are reflected on first use.
    The session of an open transaction is kept per thread so nested
    transaction() blocks and every call made inside them share one unit of work.
    """

    def __init__(self, engine: sa.Engine, session_factory: Optional[Callable[[], Session]] = None) -> None:
        self._logger = logging.getLogger("SqlStorage")
        self.engine = engine
        self._session_factory = session_factory or sessionmaker(bind=engine)
        self.metadata = sa.MetaData()
        self._local = threading.local()
        self._logger.info(f"Initialized SQL storage on {engine.url}")

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> "SqlStorage":
        if url.startswith("sqlite") and (":memory:" in url or url.rstrip("/") == "sqlite:"):
            # one shared connection, or every session would see its own empty database
            engine = sa.create_engine(
                url, echo=echo, poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        else:
            engine = sa.create_engine(url, echo=echo)
        return cls(engine)

    def get_session(self, existing_session: Optional[Session] = None) -> Tuple[Session, bool]:
        """
        Get a session: the given one, the one of the open transaction, or a new one.

        Returns:
            Tuple of (session, should_close_when_done)
        """
        if existing_session is not None:
            return existing_session, False
        active = getattr(self._local, "session", None)
        if active is not None:
            return active, False
        self._logger.debug("Creating new session")
        return self._session_factory(), True

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Run the enclosed calls in one transaction; nested blocks join the outer one."""
        active = getattr(self._local, "session", None)
        if active is not None:
            yield active
            return
        session = self._session_factory()
        self._local.session = session
        try:
            yield session
            session.commit()
        except Exception:
            self._logger.error("Transaction failed, rolling back")
            session.rollback()
            raise
        finally:
            self._local.session = None
            session.close()

    ##############################
    # Schema
    ##############################

    def create_tables(self, registry: Any) -> List[str]:
        """Create the table of every registered class that owns one, plus junction tables."""
        created: List[str] = []
        for name in registry.registered_classes():
            if not registry.has_table(name) or name in self.metadata.tables:
                continue
            columns = [sa.Column("ID", sa.Integer, primary_key=True, autoincrement=True)]
            for column, codec in registry.table_columns(name).items():
                columns.append(sa.Column(column, codec.column_type(), nullable=True))
            indexes = [
                sa.Index(f"ix_{name}_{index.name}", *index.columns, unique=index.unique)
                for index in registry.database_indexes(name)
            ]
            sa.Table(name, self.metadata, *columns, *indexes)
            created.append(name)
        for info in registry.junction_tables():
            if info.table in self.metadata.tables:
                continue
            columns = [
                sa.Column("ID", sa.Integer, primary_key=True, autoincrement=True),
                sa.Column(info.parent_field, sa.Integer, nullable=False, default=0, index=True),
                sa.Column(info.component_field, sa.Integer, nullable=False, default=0, index=True),
            ]
            for field, tag in info.extra_fields.items():
                for column, codec in registry.codec(tag).columns(field).items():
                    columns.append(sa.Column(column, codec.column_type(), nullable=True))
            sa.Table(info.table, self.metadata, *columns)
            created.append(info.table)
        self.metadata.create_all(self.engine)
        self._logger.info(f"Created tables: {created}")
        return created

    def table(self, name: str) -> sa.Table:
        table = self.metadata.tables.get(name)
        if table is None:
            table = sa.Table(name, self.metadata, autoload_with=self.engine)
        return table

    ##############################
    # Executor
    ##############################

    def execute(self, query: Query) -> List[Dict[str, Any]]:
        sql = query.sql()
        self._logger.debug(f"Executing: {sql} {query.params}")
        session, should_close = self.get_session()
        try:
            result = session.execute(sa.text(sql), query.params)
            return [dict(row) for row in result.mappings().all()]
        finally:
            if should_close:
                session.close()

    def next_identity(self, table: str, fields: Dict[str, Any]) -> int:
        """Insert a minimal row into a base table and return its generated ID."""
        with self.transaction() as session:
            result = session.execute(sa.insert(self.table(table)).values(**fields))
            new_id = int(result.inserted_primary_key[0])
        self._logger.debug(f"Allocated {table}.ID={new_id}")
        return new_id

    def manipulate(self, manipulations: List[TableManipulation]) -> None:
        with self.transaction() as session:
            for manipulation in manipulations:
                self._logger.debug(f"Manipulating: {manipulation}")
                table = self.table(manipulation.table)
                if manipulation.command == "insert":
                    values = dict(manipulation.fields)
                    if manipulation.id is not None:
                        values["ID"] = manipulation.id
                    values.update(manipulation.match)
                    session.execute(sa.insert(table).values(**values))
                elif manipulation.command == "update":
                    self._update(session, table, manipulation)
                else:
                    condition = self._condition(table, manipulation)
                    session.execute(sa.delete(table).where(condition))

    def _update(self, session: Session, table: sa.Table, manipulation: TableManipulation) -> None:
        condition = self._condition(table, manipulation)
        if manipulation.fields:
            result = session.execute(sa.update(table).where(condition).values(**manipulation.fields))
            missing = result.rowcount == 0
        else:
            found = session.execute(sa.select(sa.func.count()).select_from(table).where(condition)).scalar()
            missing = not found
        if missing:
            values = dict(manipulation.fields)
            values.update(manipulation.match)
            if manipulation.id is not None:
                values["ID"] = manipulation.id
            self._logger.debug(f"No row in {table.name} to update, inserting instead")
            session.execute(sa.insert(table).values(**values))

    @staticmethod
    def _condition(table: sa.Table, manipulation: TableManipulation) -> Any:
        clauses = []
        if manipulation.id is not None:
            clauses.append(table.c.ID == manipulation.id)
        clauses.extend(table.c[column] == value for column, value in manipulation.match.items())
        if not clauses:
            raise ValueError(f"{manipulation.command} on {table.name} needs an id or a match")
        return sa.and_(*clauses)

    def get_registry_status(self) -> Dict[str, Any]:
        return {
            "storage": "sql",
            "url": str(self.engine.url),
            "tables": sorted(self.metadata.tables),
            "in_transaction": getattr(self._local, "session", None) is not None,
        }
