"""
Common fixtures and record classes for the engine tests.

Every test gets a fresh in-memory SQLite database behind a storage wrapper
that records the queries, manipulations and identity allocations it sees.
"""
import pytest
from typing import Any, Dict, List

from hierorm.engine import Engine
from hierorm.query import Query
from hierorm.record import Record
from hierorm.storage import SqlStorage, TableManipulation


# Custom test markers
def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "integration: marks tests that hit the SQLite database")


# ========================================================================
# Test record classes
# ========================================================================

class Root(Record):
    """Base of a three-level hierarchy."""
    db = {"Title": "Varchar(255)", "A": "Int", "B": "Varchar(50)"}


class Middle(Root):
    db = {"X": "Int"}


class Leaf(Middle):
    db = {"Y": "Varchar(100)", "Price": "Money"}


class Sibling(Root):
    db = {"Z": "Boolean"}


class Passthrough(Root):
    """Declares nothing, so it owns no table."""


class Author(Record):
    db = {"Name": "Varchar(100)"}
    has_many = {"Articles": "Article"}


class Article(Record):
    db = {
        "Headline": "Varchar(255)",
        "Published": "Datetime",
        "Status": "Enum('Draft,Published', 'Draft')",
    }
    has_one = {"Author": "Author"}
    many_many = {"Tags": "Tag"}
    many_many_extra_fields = {"Tags": {"Weight": "Int"}}
    defaults = {"Status": "Draft"}
    default_sort = '"Headline" ASC'


class Tag(Record):
    db = {"Label": "Varchar(50)"}
    belongs_many_many = {"Articles": "Article"}


class Person(Record):
    """Self-referencing many-many."""
    db = {"Name": "Varchar(50)"}
    many_many = {"Friends": "Person"}
    belongs_many_many = {"FriendOf": "Person"}


MODELS = [Root, Middle, Leaf, Sibling, Passthrough, Author, Article, Tag, Person]


# ========================================================================
# Storage wrapper
# ========================================================================

class RecordingStorage(SqlStorage):
    """SqlStorage that remembers every call the engine makes."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.reset()

    def reset(self) -> None:
        self.queries: List[Query] = []
        self.manipulations: List[List[TableManipulation]] = []
        self.identities: List[str] = []

    def execute(self, query: Query) -> List[Dict[str, Any]]:
        self.queries.append(query)
        return super().execute(query)

    def manipulate(self, manipulations: List[TableManipulation]) -> None:
        self.manipulations.append(list(manipulations))
        super().manipulate(manipulations)

    def next_identity(self, table: str, fields: Dict[str, Any]) -> int:
        self.identities.append(table)
        return super().next_identity(table, fields)


# ========================================================================
# Fixtures
# ========================================================================

@pytest.fixture
def storage():
    """A recording storage over a fresh in-memory database."""
    storage = RecordingStorage.from_url("sqlite:///:memory:")
    yield storage
    storage.engine.dispose()


@pytest.fixture
def models():
    """The record classes registered by the engine fixture."""
    return list(MODELS)


@pytest.fixture
def engine(storage):
    """An engine with every test class registered and its tables created."""
    engine = Engine(storage, classes=MODELS)
    engine.create_tables()
    storage.reset()
    return engine


@pytest.fixture
def leaf(engine, storage):
    """A persisted Leaf record."""
    record = engine.create("Leaf", Title="leaf", A=1, B="x", X=5, Y="y")
    record.write()
    storage.reset()
    return record
