"""
Record collections.

RecordSet is an ordered list of records returned by queries. ComponentSet is
the value of a one-to-many or many-many relation: it remembers its owner and
the join metadata, so records can be added or removed without re-deriving the
relation. While the owner is unsaved, additions and removals are held and
replayed by write() once the owner has an ID.
"""
import logging
from typing import Any, Callable, Dict, Iterable, Iterator, List, Literal, Optional, Tuple, Union, TYPE_CHECKING

from hierorm.storage import TableManipulation

if TYPE_CHECKING:
    from hierorm.engine import Engine
    from hierorm.record import Record

logger = logging.getLogger("RelationResolver")

RecordOrId = Union["Record", int]


class RecordSet:
    """An ordered collection of records."""

    def __init__(self, items: Optional[Iterable["Record"]] = None) -> None:
        self.items: List["Record"] = list(items or [])

    def __iter__(self) -> Iterator["Record"]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def __getitem__(self, index: int) -> "Record":
        return self.items[index]

    def __contains__(self, item: Any) -> bool:
        if isinstance(item, int):
            return item in self.get_id_list()
        return item in self.items

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.items!r})"

    def count(self) -> int:
        return len(self.items)

    def exists(self) -> bool:
        return bool(self.items)

    def first(self) -> Optional["Record"]:
        return self.items[0] if self.items else None

    def last(self) -> Optional["Record"]:
        return self.items[-1] if self.items else None

    def find(self, field: str, value: Any) -> Optional["Record"]:
        for item in self.items:
            if item.get(field) == value:
                return item
        return None

    def column(self, field: str = "ID") -> List[Any]:
        return [item.get(field) for item in self.items]

    def get_id_list(self) -> List[int]:
        return [item.id for item in self.items]

    def map(self, key: str = "ID", value: str = "ID") -> Dict[Any, Any]:
        return {item.get(key): item.get(value) for item in self.items}

    def filter_by(self, predicate: Callable[["Record"], bool]) -> "RecordSet":
        return RecordSet(item for item in self.items if predicate(item))

    def to_list(self) -> List["Record"]:
        return list(self.items)


class ComponentSet(RecordSet):
    """The records of a one-to-many or many-many relation of ``owner``."""

    def __init__(
        self,
        engine: "Engine",
        kind: Literal["one_to_many", "many_many"],
        component_class: str,
        owner: "Record",
        relation: Optional[str] = None,
        join_field: Optional[str] = None,
        table: Optional[str] = None,
        parent_field: Optional[str] = None,
        component_field: Optional[str] = None,
        items: Optional[Iterable["Record"]] = None,
    ) -> None:
        super().__init__(items)
        self._engine = engine
        self.kind = kind
        self.component_class = component_class
        self.owner = owner
        self.relation = relation
        self.join_field = join_field
        self.table = table
        self.parent_field = parent_field
        self.component_field = component_field
        self.pending: List[Tuple[str, "Record", Dict[str, Any]]] = []

    def __repr__(self) -> str:
        return f"ComponentSet({self.kind}, {self.component_class}, owner={self.owner!r}, items={len(self.items)})"

    def _resolve(self, item: RecordOrId) -> Optional["Record"]:
        if isinstance(item, int):
            record = self._engine.get_by_id(self.component_class, item)
            if record is None:
                logger.warning(f"{self.component_class}({item}) not found, ignoring")
            return record
        return item

    def add(self, item: RecordOrId, extra_fields: Optional[Dict[str, Any]] = None) -> None:
        record = self._resolve(item)
        if record is None:
            return
        if record not in self.items and not (record.exists() and record.id in self.get_id_list()):
            self.items.append(record)
        if self.owner.exists():
            self._apply("add", record, extra_fields or {})
        else:
            self.pending.append(("add", record, dict(extra_fields or {})))

    def add_many(self, items: Iterable[RecordOrId]) -> None:
        for item in items:
            self.add(item)

    def remove(self, item: RecordOrId) -> None:
        record = self._resolve(item)
        if record is None:
            return
        self.items = [i for i in self.items if i is not record and not (record.exists() and i.id == record.id)]
        if self.owner.exists():
            self._apply("remove", record, {})
        else:
            self.pending = [p for p in self.pending if p[1] is not record]

    def remove_many(self, items: Iterable[RecordOrId]) -> None:
        for item in items:
            self.remove(item)

    def remove_all(self) -> None:
        for record in list(self.items):
            self.remove(record)

    def set_by_id_list(self, ids: Iterable[int]) -> None:
        """Make the set contain exactly the records with the given IDs."""
        wanted = [int(i) for i in ids if int(i) > 0]
        for record in list(self.items):
            if record.id not in wanted:
                self.remove(record)
        current = self.get_id_list()
        for record_id in wanted:
            if record_id not in current:
                self.add(record_id)

    def write(self) -> None:
        """Replay held additions and removals now that the owner has been saved."""
        if not self.owner.exists():
            logger.warning(f"Cannot write components of unsaved {self.owner!r}")
            return
        pending, self.pending = self.pending, []
        for action, record, extra_fields in pending:
            self._apply(action, record, extra_fields)
        for record in self.items:
            if record.exists() and record.is_changed():
                record.write()

    def _apply(self, action: str, record: "Record", extra_fields: Dict[str, Any]) -> None:
        owner_id = self.owner.id
        if self.kind == "one_to_many":
            record.set(self.join_field, owner_id if action == "add" else 0)
            record.write()
        else:
            if not record.exists():
                record.write()
            match = {self.parent_field: owner_id, self.component_field: record.id}
            manipulations = [TableManipulation(table=self.table, command="delete", match=match)]
            if action == "add":
                manipulations.append(TableManipulation(
                    table=self.table, command="insert", match=match, fields=self._encode_extra(extra_fields),
                ))
            with self._engine.storage.transaction():
                self._engine.storage.manipulate(manipulations)
            self._engine.flush_cache(self.component_class)
            self._engine.flush_cache(self.owner.class_name)
        logger.debug(f"{action} {record!r} on {self!r}")

    def _encode_extra(self, extra_fields: Dict[str, Any]) -> Dict[str, Any]:
        if not extra_fields:
            return {}
        declared = self._engine.registry.many_many_extra_fields(self.owner.class_name, self.relation)
        encoded: Dict[str, Any] = {}
        for field, value in extra_fields.items():
            tag = declared.get(field)
            if tag is None:
                encoded[field] = value
                continue
            codec = self._engine.registry.codec(tag)
            if codec.composite:
                codec.write_to_manipulation(encoded, field, value)
            else:
                encoded[field] = codec.encode(value)
        return encoded

