"""
hierorm: ActiveRecord persistence over table-per-class hierarchies.

A logical record is spread over one table per class in its ancestry that
declares fields, all rows sharing the ID allocated in the base table.
"""
from .components import ComponentSet, RecordSet
from .engine import Engine
from .errors import ConfigurationError, DestroyedRecordError, HierOrmError, ValidationException
from .fields import FieldCodec, FieldTypeRegistry, MoneyValue
from .query import Query, QueryBuilder
from .record import Record, loose_equals
from .schema import SchemaRegistry
from .settings import EngineSettings, configure_logging
from .storage import SqlStorage, StorageExecutor, TableManipulation
from .validation import ValidationResult, Validator

__all__ = [
    "ComponentSet", "ConfigurationError", "DestroyedRecordError", "Engine", "EngineSettings",
    "FieldCodec", "FieldTypeRegistry", "HierOrmError", "MoneyValue", "Query", "QueryBuilder",
    "Record", "RecordSet", "SchemaRegistry", "SqlStorage", "StorageExecutor", "TableManipulation",
    "ValidationException", "ValidationResult", "Validator", "configure_logging", "loose_equals",
]
