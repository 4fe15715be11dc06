"""
Engine: the facade tying schema, storage, caches and writers together.

```python
engine = Engine(SqlStorage.from_url("sqlite:///:memory:"), classes=[Page, Tag])
engine.create_tables()
page = engine.create(Page, Title="Home")
page.write()
engine.get_one(Page, {"Title": "Home"})
```

Caches belong to the engine instance; scope one engine per request or
transaction context when several writers share a database.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Type, Union

from hierorm.cache import LookupCache, lookup_key
from hierorm.components import RecordSet
from hierorm.fields import FieldTypeRegistry
from hierorm.query import FilterSpec, LimitSpec, Query, QueryBuilder
from hierorm.record import Record
from hierorm.relations import RelationResolver
from hierorm.schema.registry import ClassRef, SchemaRegistry
from hierorm.settings import EngineSettings, configure_logging
from hierorm.storage import SqlStorage, StorageExecutor
from hierorm.validation import Validator
from hierorm.writer import RecordWriter


class Engine:
    """Persistence engine for one storage backend and one set of record classes."""

    def __init__(
        self,
        storage: StorageExecutor,
        classes: Optional[Iterable[Type[Record]]] = None,
        field_types: Optional[FieldTypeRegistry] = None,
        validator: Optional[Validator] = None,
        cache_lookups: bool = True,
        subclass_access: bool = True,
    ) -> None:
        self._logger = logging.getLogger("Engine")
        self.storage = storage
        self.registry = SchemaRegistry(field_types)
        self.validator = validator
        self.cache = LookupCache(enabled=cache_lookups)
        self.builder = QueryBuilder(self.registry, subclass_access=subclass_access)
        self.writer = RecordWriter(self)
        self.relations = RelationResolver(self)
        for record_class in classes or []:
            self.register(record_class)
        self._logger.info(f"Engine ready with {len(self.registry.registered_classes())} classes")

    @classmethod
    def from_settings(cls, settings: Optional[EngineSettings] = None,
                      classes: Optional[Iterable[Type[Record]]] = None, **kwargs: Any) -> "Engine":
        settings = settings or EngineSettings.from_env()
        configure_logging(settings.log_level)
        storage = SqlStorage.from_url(settings.database_url, echo=settings.echo_sql)
        return cls(storage, classes, cache_lookups=settings.cache_lookups,
                   subclass_access=settings.subclass_access, **kwargs)

    ##############################
    # Schema
    ##############################

    def register(self, record_class: Type[Record]) -> None:
        self.registry.register(record_class)

    def create_tables(self) -> List[str]:
        """Create the tables of every registered class (SqlStorage only)."""
        return self.storage.create_tables(self.registry)

    def reload_schema(self) -> None:
        self.registry.reload()
        self.cache.flush_all()

    ##############################
    # Construction
    ##############################

    def create(self, cls: ClassRef, **values: Any) -> Record:
        """A new, unsaved record of ``cls`` with defaults populated and ``values`` set."""
        record_class = self._record_class(cls)
        return record_class(self, values)

    def _record_class(self, cls: ClassRef) -> Type[Record]:
        name = self.registry.class_name(cls)
        record_class = self.registry.class_for(name)
        return record_class

    def hydrate(self, cls: ClassRef, rows: Sequence[Dict[str, Any]]) -> RecordSet:
        """Records for storage rows, instantiated as their RecordClassName where it is known."""
        requested = self.registry.class_name(cls)
        records = []
        for row in rows:
            class_name = row.get("RecordClassName") or row.get("ClassName") or requested
            if not self.registry.is_registered(class_name):
                self._logger.warning(f"Unknown class '{class_name}' in {requested} row {row.get('ID')}, using {requested}")
                class_name = requested
            codecs = self.registry.column_codecs(class_name)
            decoded = {}
            for column, value in row.items():
                codec = codecs.get(column)
                decoded[column] = codec.decode(value) if codec is not None else value
            records.append(self.registry.class_for(class_name)(self, decoded, from_storage=True))
        return RecordSet(records)

    ##############################
    # Queries
    ##############################

    def build_sql(self, cls: ClassRef, filter: FilterSpec = None, sort: Optional[str] = None,
                  limit: LimitSpec = None, join: Optional[str] = None, restrict_classes: bool = True,
                  having: Optional[Union[str, List[str]]] = None) -> Query:
        return self.builder.build(cls, filter, sort, limit, join, restrict_classes, having)

    def get(self, cls: ClassRef, filter: FilterSpec = None, sort: Optional[str] = None,
            join: Optional[str] = None, limit: LimitSpec = None) -> RecordSet:
        query = self.build_sql(cls, filter, sort, limit, join)
        return self.hydrate(cls, self.storage.execute(query))

    def get_one(self, cls: ClassRef, filter: FilterSpec = None, cache: bool = True,
                sort: Optional[str] = None) -> Optional[Record]:
        """First matching record or None; hits and misses are cached per class."""
        class_name = self.registry.class_name(cls)
        key = lookup_key(filter, sort)
        if cache:
            hit, record = self.cache.lookup(class_name, key)
            if hit:
                return record

        query = self.build_sql(class_name, filter, sort, limit=1)
        record = self.hydrate(class_name, self.storage.execute(query)).first()
        if cache:
            self.cache.store(class_name, key, record)
        return record

    def get_by_id(self, cls: ClassRef, record_id: Any, cache: bool = True) -> Optional[Record]:
        try:
            record_id = int(record_id)
        except (TypeError, ValueError):
            self._logger.warning(f"get_by_id() passed a non-numeric ID {record_id!r}")
            return None
        if record_id <= 0:
            return None
        return self.get_one(cls, {"ID": record_id}, cache=cache)

    ##############################
    # Writes
    ##############################

    def write(self, record: Record, force_insert: bool = False, force_write: bool = False,
              write_components: bool = False) -> int:
        return self.writer.write(record, force_insert, force_write, write_components)

    def delete(self, record: Record) -> None:
        self.writer.delete(record)

    def delete_by_id(self, cls: ClassRef, record_id: int) -> bool:
        record = self.get_by_id(cls, record_id, cache=False)
        if record is None:
            self._logger.warning(f"{self.registry.class_name(cls)}({record_id}) not found, nothing deleted")
            return False
        record.delete()
        return True

    def flush_cache(self, cls: Optional[ClassRef] = None) -> None:
        """Flush lookups for the ancestry of ``cls`` (everything when None)."""
        if cls is None:
            self.cache.flush_all()
            return
        name = self.registry.class_name(cls)
        self.cache.flush(self.registry.ancestry(name), self.registry.base_class(name))

    def get_registry_status(self) -> Dict[str, Any]:
        status: Dict[str, Any] = {
            "schema": self.registry.get_registry_status(),
            "cache": self.cache.get_status(),
        }
        if hasattr(self.storage, "get_registry_status"):
            status["storage"] = self.storage.get_registry_status()
        return status
