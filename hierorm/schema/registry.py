"""
Schema/relation registry.

Builds a ClassDescriptor for every registered record class from the
declarations in its own class body, then answers merged questions across the
ancestry: fields, relations, tables and junction layouts. Every answer is
memoized per class until reload() is called explicitly.
"""
import logging
import re
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar, Union

from hierorm.errors import ConfigurationError
from hierorm.fields import FieldCodec, FieldTypeRegistry
from hierorm.schema.descriptors import (
    DEFAULT_JOIN_FIELD, FIXED_FIELDS, ROOT_FIELDS, BelongsManyMany, ClassDescriptor,
    IndexDescriptor, ManyManyInfo, ManyToMany, OneToMany, OneToOne, RelationDescriptor,
)
from hierorm.schema.hierarchy import ClassHierarchy

T = TypeVar('T')
ClassRef = Union[str, type]
_INDEX_DECLARATION = re.compile(r"^\s*(unique|index|fulltext)\s*\((.*)\)\s*$", re.IGNORECASE)


class SchemaRegistry:
    """Per-engine registry of record classes and their merged declarations."""

    def __init__(self, field_types: Optional[FieldTypeRegistry] = None) -> None:
        self._logger = logging.getLogger("SchemaRegistry")
        self.field_types = field_types or FieldTypeRegistry.default()
        self._classes: Dict[str, type] = {}
        self._descriptors: Dict[str, ClassDescriptor] = {}
        self._hierarchy = ClassHierarchy()
        self._memo: Dict[Tuple[str, str], Any] = {}
        self._lock = threading.RLock()

    ##############################
    # 1) Registration
    ##############################

    def register(self, record_class: type) -> ClassDescriptor:
        """Register a record class and every record ancestor it has."""
        from hierorm.record import Record

        if not isinstance(record_class, type) or not issubclass(record_class, Record) or record_class is Record:
            raise ConfigurationError(f"{record_class!r} is not a Record subclass")

        with self._lock:
            name = record_class.__name__
            existing = self._classes.get(name)
            if existing is record_class:
                return self._descriptors[name]
            if existing is not None:
                self._logger.warning(f"Replacing registered class {name} with {record_class!r}")

            parent_class = self._record_parent(record_class)
            parent = None
            if parent_class is not None:
                parent = self.register(parent_class).name

            descriptor = ClassDescriptor.from_class(record_class, parent)
            self._classes[name] = record_class
            self._descriptors[name] = descriptor
            self._hierarchy.add_class(name, parent)
            # a new class changes subclass lists and inverse lookups
            if self._memo:
                self._logger.info(f"Dropping {len(self._memo)} memoized schema answers for {name}")
            self._memo.clear()
            self._logger.info(f"Registered {name} (parent={parent}, owns_table={descriptor.owns_table})")
            return descriptor

    @staticmethod
    def _record_parent(record_class: type) -> Optional[type]:
        from hierorm.record import Record

        for base in record_class.__bases__:
            if issubclass(base, Record) and base is not Record:
                return base
        return None

    def reload(self) -> None:
        """Re-read every class body and drop all memoized answers."""
        with self._lock:
            classes = list(self._classes.values())
            self._classes.clear()
            self._descriptors.clear()
            self._hierarchy.clear()
            self._memo.clear()
            for record_class in classes:
                self.register(record_class)
            self._logger.info(f"Reloaded schema for {len(classes)} classes")

    def _memoized(self, kind: str, name: str, compute: Callable[[], T]) -> T:
        key = (kind, name)
        with self._lock:
            if key not in self._memo:
                self._memo[key] = compute()
            return self._memo[key]

    ##############################
    # 2) Classes and ancestry
    ##############################

    def class_name(self, cls: ClassRef) -> str:
        name = cls if isinstance(cls, str) else cls.__name__
        if name not in self._descriptors:
            raise ConfigurationError(f"Unknown record class '{name}'; register it first")
        return name

    def is_registered(self, name: str) -> bool:
        return name in self._descriptors

    def class_for(self, name: str) -> Optional[type]:
        return self._classes.get(name)

    def descriptor(self, cls: ClassRef) -> ClassDescriptor:
        return self._descriptors[self.class_name(cls)]

    def registered_classes(self) -> List[str]:
        return list(self._descriptors)

    def ancestry(self, cls: ClassRef) -> List[str]:
        """Class names from the hierarchy root down to ``cls``."""
        name = self.class_name(cls)
        return self._memoized("ancestry", name, lambda: self._hierarchy.ancestry(name))

    def subclasses_for(self, cls: ClassRef) -> List[str]:
        """``cls`` followed by every registered subclass."""
        name = self.class_name(cls)
        return self._memoized("subclasses", name, lambda: self._hierarchy.subclasses(name))

    def base_class(self, cls: ClassRef) -> str:
        return self.ancestry(cls)[0]

    def is_subclass(self, cls: ClassRef, ancestor: ClassRef) -> bool:
        return self.class_name(ancestor) in self.ancestry(cls)

    def has_table(self, cls: ClassRef) -> bool:
        return self.descriptor(cls).owns_table

    def data_classes_for(self, cls: ClassRef, include_subclasses: bool = True) -> List[str]:
        """Classes owning a table that make up records of ``cls``: ancestry, then subclasses."""
        name = self.class_name(cls)

        def compute() -> List[str]:
            classes = [c for c in self.ancestry(name) if self.has_table(c)]
            if include_subclasses:
                classes += [c for c in self.subclasses_for(name)[1:] if self.has_table(c)]
            return classes

        return self._memoized(f"data_classes:{include_subclasses}", name, compute)

    ##############################
    # 3) Merged declarations
    ##############################

    def _merged(self, cls: ClassRef, attribute: str) -> Dict[str, Any]:
        """Root-first merge of a per-class declaration map; the leaf wins on collisions."""
        name = self.class_name(cls)

        def compute() -> Dict[str, Any]:
            merged: Dict[str, Any] = {}
            for ancestor in self.ancestry(name):
                merged.update(getattr(self._descriptors[ancestor], attribute))
            return merged

        return self._memoized(f"merged:{attribute}", name, compute)

    def db(self, cls: ClassRef, field: Optional[str] = None) -> Any:
        fields = self._merged(cls, "db")
        if field is None:
            return dict(fields)
        return fields.get(field)

    def has_one(self, cls: ClassRef, name: Optional[str] = None) -> Any:
        return self._targets(self._merged(cls, "has_one"), name)

    def has_many(self, cls: ClassRef, name: Optional[str] = None) -> Any:
        return self._targets(self._merged(cls, "has_many"), name)

    def many_many(self, cls: ClassRef, name: Optional[str] = None) -> Any:
        return self._targets(self._merged(cls, "many_many"), name)

    def belongs_many_many(self, cls: ClassRef, name: Optional[str] = None) -> Any:
        return self._targets(self._merged(cls, "belongs_many_many"), name)

    @staticmethod
    def _targets(relations: Dict[str, RelationDescriptor], name: Optional[str]) -> Any:
        if name is None:
            return {rel: descriptor.target for rel, descriptor in relations.items()}
        descriptor = relations.get(name)
        return descriptor.target if descriptor is not None else None

    def relation(self, cls: ClassRef, name: str) -> Optional[RelationDescriptor]:
        """The descriptor for relation ``name``, or None when ``cls`` declares no such relation."""
        for attribute in ("has_one", "has_many", "many_many", "belongs_many_many"):
            descriptor = self._merged(cls, attribute).get(name)
            if descriptor is not None:
                return descriptor
        return None

    def relations(self, cls: ClassRef) -> Dict[str, RelationDescriptor]:
        merged: Dict[str, RelationDescriptor] = {}
        for attribute in ("belongs_many_many", "many_many", "has_many", "has_one"):
            merged.update(self._merged(cls, attribute))
        return merged

    def many_many_extra_fields(self, cls: ClassRef, name: Optional[str] = None) -> Dict[str, Any]:
        forward: Dict[str, ManyToMany] = self._merged(cls, "many_many")
        if name is None:
            return {rel: dict(d.extra_fields) for rel, d in forward.items() if d.extra_fields}
        info = self.many_many_info(cls, name)
        return dict(info.extra_fields) if info else {}

    def defaults(self, cls: ClassRef) -> Dict[str, Any]:
        return dict(self._merged(cls, "defaults"))

    def default_sort(self, cls: ClassRef) -> Optional[str]:
        for ancestor in reversed(self.ancestry(cls)):
            sort = self._descriptors[ancestor].default_sort
            if sort:
                return sort
        return None

    ##############################
    # 4) Inverse resolution
    ##############################

    def component_join_field(self, cls: ClassRef, name: str) -> str:
        """
        Foreign key column on the target of has_many ``name`` that points back at ``cls``.

        An explicit ``"Target.Relation"`` declaration wins. Otherwise the target's
        has_one relations are scanned for one pointing at the owner's ancestry,
        most-derived ancestor first. Falls back to ``ParentID``.
        """
        owner = self.class_name(cls)

        def compute() -> str:
            relation: Optional[OneToMany] = self._merged(owner, "has_many").get(name)
            if relation is None:
                raise ConfigurationError(f"{owner} has no has_many relation '{name}'")
            target_has_one: Dict[str, OneToOne] = self._merged(relation.target, "has_one")
            if relation.inverse:
                inverse = target_has_one.get(relation.inverse)
                if inverse is None:
                    raise ConfigurationError(
                        f"{owner}.{name} names {relation.target}.{relation.inverse} as its inverse "
                        f"but {relation.target} has no such has_one"
                    )
                return inverse.foreign_key
            for ancestor in reversed(self.ancestry(owner)):
                matches = [h for h in target_has_one.values() if h.target == ancestor]
                if len(matches) == 1:
                    return matches[0].foreign_key
                if len(matches) > 1:
                    names = ", ".join(h.name for h in matches)
                    raise ConfigurationError(
                        f"{owner}.{name} is ambiguous: {relation.target} has several has_one "
                        f"relations to {ancestor} ({names}); declare it as '{relation.target}.<Relation>'"
                    )
            self._logger.warning(
                f"No has_one on {relation.target} points back at {owner}; "
                f"{owner}.{name} uses {DEFAULT_JOIN_FIELD}"
            )
            return DEFAULT_JOIN_FIELD

        return self._memoized(f"join_field:{name}", owner, compute)

    def many_many_info(self, cls: ClassRef, name: str) -> Optional[ManyManyInfo]:
        """
        Junction layout for a many_many or belongs_many_many relation, seen from ``cls``.

        Returns None when ``cls`` declares neither. A belongs_many_many whose
        inverse cannot be resolved to exactly one many_many is a configuration error.
        """
        owner = self.class_name(cls)

        def compute() -> Optional[ManyManyInfo]:
            forward: Optional[ManyToMany] = self._merged(owner, "many_many").get(name)
            if forward is not None:
                return ManyManyInfo(
                    parent_class=forward.declared_by,
                    component_class=forward.target,
                    parent_field=forward.parent_field,
                    component_field=forward.component_field,
                    table=forward.table,
                    extra_fields=dict(forward.extra_fields),
                )
            belongs: Optional[BelongsManyMany] = self._merged(owner, "belongs_many_many").get(name)
            if belongs is None:
                return None
            inverse = self._resolve_belongs_many_many(owner, belongs)
            return ManyManyInfo(
                parent_class=belongs.declared_by,
                component_class=belongs.target,
                parent_field=inverse.component_field,
                component_field=inverse.parent_field,
                table=inverse.table,
                extra_fields=dict(inverse.extra_fields),
            )

        return self._memoized(f"many_many:{name}", owner, compute)

    def _resolve_belongs_many_many(self, owner: str, belongs: BelongsManyMany) -> ManyToMany:
        if not self.is_registered(belongs.target):
            raise ConfigurationError(
                f"{owner}.{belongs.name} refers to unregistered class '{belongs.target}'"
            )
        candidates: Dict[str, ManyToMany] = self._merged(belongs.target, "many_many")
        owner_ancestry = self.ancestry(owner)
        if belongs.inverse:
            inverse = candidates.get(belongs.inverse)
            if inverse is None or inverse.target not in owner_ancestry:
                raise ConfigurationError(
                    f"{owner}.{belongs.name} names {belongs.target}.{belongs.inverse} as its inverse "
                    f"but no such many_many points at {owner}"
                )
            return inverse
        matches = [m for m in candidates.values() if m.target in owner_ancestry]
        if not matches:
            raise ConfigurationError(f"Orphaned belongs_many_many {owner}.{belongs.name}")
        if len(matches) > 1:
            names = ", ".join(m.name for m in matches)
            raise ConfigurationError(
                f"{owner}.{belongs.name} is ambiguous between {belongs.target} relations ({names}); "
                f"declare it as '{belongs.target}.<Relation>'"
            )
        return matches[0]

    def junction_tables(self) -> List[ManyManyInfo]:
        tables: Dict[str, ManyManyInfo] = {}
        for name in self.registered_classes():
            for relation in self._descriptors[name].many_many.values():
                tables[relation.table] = self.many_many_info(name, relation.name)
        return list(tables.values())

    def reverse_association(self, cls: ClassRef, target: ClassRef) -> Optional[str]:
        """
        Name of the first relation on ``cls`` pointing at ``target``, or None.

        Many-many relations are searched first (declared, then belonging),
        then has_many and finally has_one.
        """
        owner = self.class_name(cls)
        wanted = self.class_name(target)
        for attribute in ("many_many", "belongs_many_many", "has_many", "has_one"):
            for name, relation in self._merged(owner, attribute).items():
                if relation.target == wanted:
                    return name
        return None

    ##############################
    # 5) Tables and columns
    ##############################

    def custom_database_fields(self, cls: ClassRef) -> Dict[str, str]:
        """Fields stored in the table of ``cls`` itself: its own db plus has_one keys."""
        descriptor = self.descriptor(cls)
        fields = dict(descriptor.db)
        for relation in descriptor.has_one.values():
            fields[relation.foreign_key] = "ForeignKey"
        return fields

    def database_fields(self, cls: ClassRef) -> Dict[str, str]:
        """Logical fields of the table of ``cls``; the root table adds the bookkeeping columns."""
        name = self.class_name(cls)

        def compute() -> Dict[str, str]:
            fields: Dict[str, str] = {}
            if self.descriptor(name).is_root:
                fields.update(ROOT_FIELDS)
            fields.update(self.custom_database_fields(name))
            return fields

        return dict(self._memoized("database_fields", name, compute))

    def own_table_field_type(self, cls: ClassRef, field: str) -> Optional[str]:
        return self.database_fields(cls).get(field)

    def has_database_field(self, cls: ClassRef, field: str) -> bool:
        if field in FIXED_FIELDS:
            return True
        return any(field in self.database_fields(c) for c in self.ancestry(cls))

    def table_for_field(self, cls: ClassRef, field: str) -> Optional[str]:
        """The class whose table stores ``field`` for records of ``cls``."""
        if field == "ID":
            return self.base_class(cls)
        for owner in self.data_classes_for(cls):
            if field in self.database_fields(owner) or field in self.table_columns(owner):
                return owner
        return None

    def field_type(self, cls: ClassRef, field: str) -> Optional[str]:
        owner = self.table_for_field(cls, field)
        if owner is None:
            return None
        return self.database_fields(owner).get(field)

    def codec(self, tag: str) -> FieldCodec:
        return self.field_types.codec(tag)

    def table_columns(self, cls: ClassRef) -> Dict[str, FieldCodec]:
        """Physical columns of the table of ``cls`` (excluding ID), composites expanded."""
        name = self.class_name(cls)

        def compute() -> Dict[str, FieldCodec]:
            columns: Dict[str, FieldCodec] = {}
            for field, tag in self.database_fields(name).items():
                columns.update(self.codec(tag).columns(field))
            return columns

        return dict(self._memoized("table_columns", name, compute))

    def composite_fields(self, cls: ClassRef) -> Dict[str, str]:
        return {field: tag for field, tag in self.database_fields(cls).items()
                if self.field_types.is_composite(tag)}

    def column_codecs(self, cls: ClassRef) -> Dict[str, FieldCodec]:
        """Codec per physical column across every table a query on ``cls`` reads."""
        name = self.class_name(cls)

        def compute() -> Dict[str, FieldCodec]:
            codecs: Dict[str, FieldCodec] = {}
            for owner in self.data_classes_for(name):
                for column, codec in self.table_columns(owner).items():
                    codecs.setdefault(column, codec)
            return codecs

        return self._memoized("column_codecs", name, compute)

    def database_indexes(self, cls: ClassRef) -> List[IndexDescriptor]:
        """
        Indexes of the table of ``cls``: one per has_one key, the ones the class
        declares in ``indexes`` and ``ClassName`` on a root table.

        A declaration maps a name to ``True`` (index the column of that name),
        ``"unique"`` (a unique index on it) or ``"unique (A, B)"`` /
        ``"index (A, B)"`` for multi-column indexes. ``fulltext`` declarations
        become plain indexes.
        """
        name = self.class_name(cls)

        def compute() -> List[IndexDescriptor]:
            descriptor = self.descriptor(name)
            columns = set(self.table_columns(name)) | {"ID"}
            indexes: Dict[str, IndexDescriptor] = {}
            if descriptor.is_root:
                indexes["ClassName"] = IndexDescriptor(name="ClassName", columns=["ClassName"])
            for relation in descriptor.has_one.values():
                key = relation.foreign_key
                indexes[key] = IndexDescriptor(name=key, columns=[key])
            for key, declaration in descriptor.indexes.items():
                index = self._parse_index(name, key, declaration)
                missing = [c for c in index.columns if c not in columns]
                if missing:
                    raise ConfigurationError(f"Index {name}.{key} refers to unknown columns {missing}")
                indexes[key] = index
            return list(indexes.values())

        return self._memoized("indexes", name, compute)

    @staticmethod
    def _parse_index(owner: str, key: str, declaration: Any) -> IndexDescriptor:
        if declaration is True:
            return IndexDescriptor(name=key, columns=[key])
        if isinstance(declaration, str):
            if declaration.strip().lower() == "unique":
                return IndexDescriptor(name=key, columns=[key], unique=True)
            match = _INDEX_DECLARATION.match(declaration)
            if match:
                columns = [c.strip().strip('"') for c in match.group(2).split(",") if c.strip()]
                if columns:
                    return IndexDescriptor(name=key, columns=columns, unique=match.group(1).lower() == "unique")
        raise ConfigurationError(f"Cannot read index declaration {owner}.{key}: {declaration!r}")

    def get_registry_status(self) -> Dict[str, Any]:
        hierarchies: Dict[str, List[str]] = {}
        for name in self.registered_classes():
            hierarchies.setdefault(self.base_class(name), []).append(name)
        return {
            "class_count": len(self._descriptors),
            "hierarchies": hierarchies,
            "tables": [n for n in self.registered_classes() if self.has_table(n)],
            "junction_tables": [info.table for info in self.junction_tables()],
            "memoized_entries": len(self._memo),
        }
