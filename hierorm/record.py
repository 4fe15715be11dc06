"""
Record: the in-memory form of one logical row spread across a class hierarchy.

Subclasses declare their schema in the class body:

```python
class Page(Record):
    db = {"Title": "Varchar(255)", "Sort": "Int"}
    has_one = {"Parent": "Page"}
    has_many = {"Comments": "Comment"}
    many_many = {"Tags": "Tag"}
    defaults = {"Sort": 0}
    indexes = {"Sort": True}
    default_sort = '"Sort" ASC'
```

A record keeps three maps: ``record`` (current values), ``original`` (values
as last persisted) and ``changed`` (field -> severity). Severity 1 means the
new value only differs in representation from the old one under loose
comparison (``0`` vs ``""``); severity 2 means the value changed.
"""
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from hierorm.cache import ComponentCache
from hierorm.errors import ConfigurationError, DestroyedRecordError, HierOrmError
from hierorm.fields import MoneyValue, is_numeric
from hierorm.schema.descriptors import FIXED_FIELDS
from hierorm.validation import ValidationResult

if TYPE_CHECKING:
    from hierorm.engine import Engine
    from hierorm.components import ComponentSet

_EMPTY_FOR_NULL = ("", 0, 0.0, False)


def _snapshot(value: Any) -> Any:
    """Composite values are mutable, so snapshots hold their own copy."""
    return value.copy() if isinstance(value, MoneyValue) else value


def _is_empty_value(value: Any) -> bool:
    if isinstance(value, MoneyValue):
        return not value.exists()
    return value is None or value in _EMPTY_FOR_NULL


def strictly_equal(a: Any, b: Any) -> bool:
    """Same type and same value."""
    if a is b:
        return True
    if type(a) is not type(b):
        return False
    try:
        return bool(a == b)
    except (TypeError, ValueError):
        return False


def loose_equals(a: Any, b: Any) -> bool:
    """
    Equality after type juggling: None matches empty values, numbers match
    numeric strings, an empty string matches zero, booleans compare by truthiness.
    """
    if strictly_equal(a, b):
        return True
    if isinstance(a, bool) or isinstance(b, bool):
        return _truthy(a) == _truthy(b)
    if a is None or b is None:
        other = b if a is None else a
        return other in _EMPTY_FOR_NULL or other == [] or other == {}
    if isinstance(a, str) and isinstance(b, str):
        return is_numeric(a) and is_numeric(b) and float(a) == float(b)
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return a == b
    if isinstance(a, (int, float)) or isinstance(b, (int, float)):
        number, other = (a, b) if isinstance(a, (int, float)) else (b, a)
        if isinstance(other, str):
            if not other.strip():
                return number == 0
            return is_numeric(other) and float(other) == number
        return False
    try:
        return bool(a == b)
    except (TypeError, ValueError):
        return False


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value not in ("", "0")
    return bool(value)


class Record:
    """Base class of every persisted class; never stored itself."""
    db: Dict[str, str] = {}
    has_one: Dict[str, str] = {}
    has_many: Dict[str, str] = {}
    many_many: Dict[str, str] = {}
    belongs_many_many: Dict[str, str] = {}
    many_many_extra_fields: Dict[str, Dict[str, str]] = {}
    indexes: Dict[str, Any] = {}
    defaults: Dict[str, Any] = {}
    default_sort: Optional[str] = None

    def __init__(self, engine: "Engine", record: Optional[Dict[str, Any]] = None, from_storage: bool = False) -> None:
        self._engine = engine
        self.registry = engine.registry
        self.registry.class_name(type(self))
        self.destroyed = False
        self.old_id = 0
        self.components = ComponentCache()
        self.changed: Dict[str, int] = {}

        name = type(self).__name__
        if from_storage and record is not None:
            self.record: Dict[str, Any] = dict(record)
            self.record["ID"] = int(self.record.get("ID") or 0)
            self.record.setdefault("ClassName", name)
            self.record.setdefault("RecordClassName", self.record["ClassName"] or name)
            self.original: Dict[str, Any] = {field: _snapshot(value) for field, value in self.record.items()}
            return

        self.record = {"ID": 0, "ClassName": name, "RecordClassName": name}
        self.original = {}
        self.populate_defaults()
        for field, value in (record or {}).items():
            self.set(field, value)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.record.get('ID')})"

    def __getitem__(self, field: str) -> Any:
        return self.get(field)

    def __setitem__(self, field: str, value: Any) -> None:
        self.set(field, value)

    @property
    def engine(self) -> "Engine":
        return self._engine

    @property
    def id(self) -> int:
        return int(self.get("ID") or 0)

    @property
    def class_name(self) -> str:
        return type(self).__name__

    ##############################
    # Field access
    ##############################

    def _check_destroyed(self) -> None:
        if self.destroyed:
            raise DestroyedRecordError(type(self).__name__, self.old_id)

    def get(self, field: str) -> Any:
        self._check_destroyed()
        if field in self.record:
            return self.record[field]
        tag = self.registry.db(type(self), field)
        if tag is not None:
            codec = self.registry.codec(tag)
            if codec.composite:
                value = codec.from_record(field, self.record)
                self.record[field] = value
                if self.original and field not in self.original:
                    self.original[field] = _snapshot(value)
                return value
        return None

    def set(self, field: str, value: Any) -> "Record":
        self._check_destroyed()
        tag = self.registry.db(type(self), field)
        if tag is not None:
            codec = self.registry.codec(tag)
            if codec.composite:
                value = codec.coerce(value)
                current = self.get(field)
            else:
                current = self.record.get(field)
        else:
            current = self.record.get(field)

        if strictly_equal(current, value):
            self.record[field] = value
            return self

        severity = 1 if loose_equals(current, value) else 2
        self.changed[field] = max(self.changed.get(field, 0), severity)
        self.record[field] = value

        if field.endswith("ID") and len(field) > 2 and self.registry.has_one(type(self), field[:-2]):
            self.components.invalidate(field[:-2])
        return self

    def has_field(self, field: str) -> bool:
        return (
            field in self.record
            or self.registry.db(type(self), field) is not None
            or self.registry.has_database_field(type(self), field)
        )

    def has_database_field(self, field: str) -> bool:
        return self.registry.has_database_field(type(self), field)

    def to_map(self) -> Dict[str, Any]:
        self._check_destroyed()
        return dict(self.record)

    def is_empty(self) -> bool:
        ignored = set(FIXED_FIELDS) | {"RecordClassName", "OldID"}
        for field, value in self.record.items():
            if field in ignored:
                continue
            if not _is_empty_value(value):
                return False
        return True

    def update(self, data: Dict[str, Any]) -> "Record":
        """
        Set several fields at once. ``"Relation.Field"`` keys write through
        one-to-one relations, saving a new related record and linking it first.
        """
        for key, value in data.items():
            if "." not in key:
                self.set(key, value)
                continue
            *relations, field = key.split(".")
            target: Record = self
            for relation in relations:
                if not self.registry.has_one(type(target), relation):
                    raise ConfigurationError(f"{type(target).__name__} has no has_one relation '{relation}'")
                parent = target
                target = parent.get_component(relation)
                if not target.exists():
                    target.write()
                    parent.set(f"{relation}ID", target.id)
                    parent.write()
            target.set(field, value)
            target.write()
        return self

    def cast_update(self, data: Dict[str, Any]) -> "Record":
        """Set raw values, decoding each through the codec of its declared type."""
        for field, value in data.items():
            tag = self.registry.db(type(self), field)
            if tag is not None and not self.registry.codec(tag).composite:
                value = self.registry.codec(tag).decode(value)
            self.set(field, value)
        return self

    def populate_defaults(self) -> None:
        """
        Fill unset fields from ``defaults``, the most-derived declaration first.
        Defaults count as full changes. A list of IDs given for a many-many
        relation becomes its initial component set.
        """
        for ancestor in reversed(self.registry.ancestry(type(self))):
            for field, value in self.registry.descriptor(ancestor).defaults.items():
                if isinstance(value, (list, tuple)) and self._is_many_many(field):
                    self.get_many_many_components(field).set_by_id_list(value)
                    continue
                if self.record.get(field) is None:
                    self.set(field, value)
                    if field in self.changed:
                        self.changed[field] = 2

    def _is_many_many(self, name: str) -> bool:
        relation = self.registry.relation(type(self), name)
        return relation is not None and relation.kind in ("many_many", "belongs_many_many")

    ##############################
    # Change tracking
    ##############################

    def _collect_composite_changes(self) -> None:
        for field, value in self.record.items():
            if isinstance(value, MoneyValue) and value.is_changed():
                self.changed[field] = 2

    def changed_fields(self, min_severity: int = 1, database_fields_only: bool = False) -> Dict[str, Dict[str, Any]]:
        """Changed fields with their ``before``/``after`` values and ``level``."""
        self._check_destroyed()
        self._collect_composite_changes()
        result: Dict[str, Dict[str, Any]] = {}
        for field, level in self.changed.items():
            if level < min_severity:
                continue
            if database_fields_only and not self.registry.has_database_field(type(self), field):
                continue
            result[field] = {
                "before": self.original.get(field),
                "after": self.record.get(field),
                "level": level,
            }
        return result

    def is_changed(self, field: Optional[str] = None, min_severity: int = 1) -> bool:
        changes = self.changed_fields(min_severity)
        if field is None:
            return bool(changes)
        return field in changes

    def force_all_changed(self) -> "Record":
        self._check_destroyed()
        for field in self.record:
            self.changed[field] = 2
        return self

    def mark_clean(self) -> None:
        """Adopt the current values as persisted; called after a successful write."""
        for value in self.record.values():
            if isinstance(value, MoneyValue):
                value.mark_clean()
        self.original = {field: _snapshot(value) for field, value in self.record.items()}
        self.changed = {}

    def exists(self) -> bool:
        if self.destroyed:
            return False
        try:
            return int(self.record.get("ID") or 0) > 0
        except (TypeError, ValueError):
            return False

    def is_in_db(self) -> bool:
        return self.exists()

    ##############################
    # Class changes and copies
    ##############################

    def set_class_name(self, class_name: str) -> "Record":
        if not self.registry.is_registered(class_name) or not self.registry.is_subclass(
                class_name, self.registry.base_class(type(self))):
            raise ConfigurationError(
                f"{class_name} is not a class of the {self.registry.base_class(type(self))} hierarchy"
            )
        self.set("ClassName", class_name)
        self.record["RecordClassName"] = class_name
        return self

    def new_class_instance(self, class_name: str) -> "Record":
        """A copy of this record as an instance of ``class_name``, fully marked for writing."""
        new_class = self.registry.class_for(class_name)
        if new_class is None:
            raise ConfigurationError(f"Unknown record class '{class_name}'")
        original_class = self.get("ClassName") or type(self).__name__
        data = {field: _snapshot(value) for field, value in self.record.items()}
        data.update(ClassName=original_class, RecordClassName=original_class)
        instance = new_class(self._engine, data, from_storage=True)
        if class_name != original_class:
            instance.set_class_name(class_name)
            instance.force_all_changed()
        return instance

    def duplicate(self, do_write: bool = True) -> "Record":
        self._check_destroyed()
        data = {field: _snapshot(value) for field, value in self.record.items()}
        data["ID"] = 0
        clone = type(self)(self._engine, data, from_storage=True)
        clone.original = {}
        clone.force_all_changed()
        if do_write:
            clone.write()
        return clone

    def merge(self, other: "Record", priority: str = "right", include_relations: bool = True,
              overwrite_with_empty: bool = False) -> "Record":
        """
        Merge the fields and relations of ``other``, a saved record of the same
        class, into this one.

        With ``priority="right"`` non-empty values of ``other`` win (empty ones
        too when ``overwrite_with_empty``); with ``"left"`` ``other`` only fills
        fields that are empty here. Foreign keys follow the same rule, so
        one-to-one relations move with them. The components of ``other``'s
        one-to-many relations are moved here; its many-many components are
        added here as well. Only the relations are written; write this record
        yourself.
        """
        if priority not in ("left", "right"):
            raise ValueError(f"priority must be 'left' or 'right', not {priority!r}")
        if other.class_name != self.class_name:
            raise HierOrmError(f"Cannot merge {other!r} into {self!r}: expected a {self.class_name}")
        if not other.exists():
            raise HierOrmError(f"Write {other!r} before merging it, so its relations can be transferred")

        fields = list(self.registry.db(type(self)))
        fields += [f"{name}ID" for name in self.registry.has_one(type(self))]
        for field in fields:
            left, right = self.get(field), other.get(field)
            if priority == "left" and not _is_empty_value(left):
                continue
            if priority == "right" and not overwrite_with_empty and _is_empty_value(right):
                continue
            self.set(field, _snapshot(right))

        if include_relations:
            for name, relation in self.registry.relations(type(self)).items():
                if relation.kind in ("many_many", "belongs_many_many"):
                    theirs = other.get_many_many_components(name)
                    if theirs.exists():
                        self.get_many_many_components(name).add_many(theirs.get_id_list())
                elif relation.kind == "one_to_many":
                    theirs = other.get_components(name)
                    if theirs.exists():
                        self.get_components(name).add_many(theirs.to_list())
                    other.components.invalidate(name)
        return self

    ##############################
    # Hooks
    ##############################

    def validate(self) -> ValidationResult:
        return ValidationResult()

    def on_before_write(self) -> None:
        pass

    def on_after_write(self) -> None:
        pass

    def on_before_delete(self) -> None:
        pass

    def on_after_delete(self) -> None:
        pass

    ##############################
    # Persistence
    ##############################

    def write(self, force_insert: bool = False, force_write: bool = False, write_components: bool = False) -> int:
        return self._engine.write(self, force_insert=force_insert, force_write=force_write,
                                  write_components=write_components)

    def delete(self) -> None:
        self._engine.delete(self)

    def destroy(self) -> None:
        """Flag the instance as gone; any later get or set raises."""
        if not self.destroyed:
            self.old_id = int(self.record.get("ID") or 0) or self.old_id
        self.components.clear()
        self.destroyed = True

    def flush_cache(self) -> None:
        self._engine.flush_cache(type(self))
        self.components.clear()

    ##############################
    # Components
    ##############################

    def resolve_relation(self, name: str) -> Any:
        return self._engine.relations.resolve_relation(self, name)

    def get_component(self, name: str) -> "Record":
        return self._engine.relations.get_component(self, name)

    def set_component(self, name: str, component: "Record") -> None:
        self._engine.relations.set_component(self, name, component)

    def get_components(self, name: str, filter: Any = None, sort: Optional[str] = None,
                       join: Optional[str] = None, limit: Any = None) -> "ComponentSet":
        return self._engine.relations.get_components(self, name, filter, sort, join, limit)

    def get_many_many_components(self, name: str, filter: Any = None, sort: Optional[str] = None,
                                 join: Optional[str] = None, limit: Any = None) -> "ComponentSet":
        return self._engine.relations.get_many_many_components(self, name, filter, sort, join, limit)

    def get_component_join_field(self, name: str) -> str:
        return self.registry.component_join_field(type(self), name)

    def get_reverse_association(self, class_name: str) -> Optional[str]:
        return self.registry.reverse_association(type(self), class_name)

    def get_many_many_join(self, name: str, base_table: str) -> str:
        return self._engine.relations.get_many_many_join(self, name, base_table)

    def get_many_many_filter(self, name: str, base_table: str) -> str:
        return self._engine.relations.get_many_many_filter(self, name, base_table)

    def write_components(self) -> None:
        self._engine.writer.write_components(self)

    def component_names(self) -> List[str]:
        return list(self.registry.relations(type(self)))
