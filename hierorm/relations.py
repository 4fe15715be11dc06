"""
Relation resolver: lazily loads and caches the components of a record.

Unsaved owners never cause a query: one-to-one lookups yield a placeholder
and collections come back empty, holding any additions until the owner is
written.
"""
import logging
from typing import Any, Optional, TYPE_CHECKING

from hierorm.cache import lookup_key
from hierorm.components import ComponentSet
from hierorm.errors import ConfigurationError
from hierorm.query import LimitSpec, FilterSpec, Query, column_ref, quote
from hierorm.schema.descriptors import BelongsManyMany, ManyToMany, OneToMany, OneToOne

if TYPE_CHECKING:
    from hierorm.engine import Engine
    from hierorm.record import Record


class RelationResolver:
    """Computes has_one, has_many and many_many components for records of one engine."""

    def __init__(self, engine: "Engine") -> None:
        self._logger = logging.getLogger("RelationResolver")
        self.engine = engine
        self.registry = engine.registry

    def resolve_relation(self, record: "Record", name: str) -> Any:
        """Component or component set for any declared relation ``name``."""
        relation = self.registry.relation(type(record), name)
        if relation is None:
            raise ConfigurationError(f"{type(record).__name__} has no relation '{name}'")
        if isinstance(relation, OneToOne):
            return self.get_component(record, name)
        if isinstance(relation, OneToMany):
            return self.get_components(record, name)
        if isinstance(relation, (ManyToMany, BelongsManyMany)):
            return self.get_many_many_components(record, name)
        raise ConfigurationError(f"Unsupported relation kind {relation.kind}")

    ##############################
    # One-to-one
    ##############################

    def get_component(self, record: "Record", name: str) -> "Record":
        cached = record.components.get(name)
        if cached is not None:
            return cached

        target = self.registry.has_one(type(record), name)
        if target is None:
            raise ConfigurationError(f"{type(record).__name__} has no has_one relation '{name}'")

        foreign_key = f"{name}ID"
        key_value = record.get(foreign_key)
        component = None
        if key_value:
            component = self.engine.get_by_id(target, key_value)
        if component is None:
            component = self.engine.create(target)
            if key_value not in (None, 0, "", "0"):
                self._logger.info(f"{record!r}.{foreign_key}={key_value} points at a missing {target}, resetting")
                record.set(foreign_key, 0)
        return record.components.put(name, component)

    def set_component(self, record: "Record", name: str, component: "Record") -> None:
        """Point has_one ``name`` at ``component`` and cache it."""
        target = self.registry.has_one(type(record), name)
        if target is None:
            raise ConfigurationError(f"{type(record).__name__} has no has_one relation '{name}'")
        if not self.registry.is_subclass(type(component), target):
            raise ConfigurationError(f"{component!r} is not a {target}")
        record.set(f"{name}ID", component.id)
        record.components.put(name, component)

    ##############################
    # One-to-many
    ##############################

    def get_component_join_field(self, record: "Record", name: str) -> str:
        return self.registry.component_join_field(type(record), name)

    def get_components(
        self,
        record: "Record",
        name: str,
        filter: FilterSpec = None,
        sort: Optional[str] = None,
        join: Optional[str] = None,
        limit: LimitSpec = None,
    ) -> ComponentSet:
        target = self.registry.has_many(type(record), name)
        if target is None:
            raise ConfigurationError(f"{type(record).__name__} has no has_many relation '{name}'")
        join_field = self.registry.component_join_field(type(record), name)
        key = f"{name}_{lookup_key(filter, sort, join, limit)}"

        cached = record.components.get(key, self.engine.cache)
        if cached is not None:
            return cached

        result = ComponentSet(self.engine, "one_to_many", target, record, relation=name, join_field=join_field)
        if not record.exists():
            return record.components.put(key, result)

        query = self.components_query(record, name, filter, sort, join, limit)
        result.items = list(self.engine.hydrate(target, self.engine.storage.execute(query)))
        return record.components.put(key, result, self._stamp(target))

    def components_query(
        self,
        record: "Record",
        name: str,
        filter: FilterSpec = None,
        sort: Optional[str] = None,
        join: Optional[str] = None,
        limit: LimitSpec = None,
    ) -> Query:
        target = self.registry.has_many(type(record), name)
        if target is None:
            raise ConfigurationError(f"{type(record).__name__} has no has_many relation '{name}'")
        join_field = self.registry.component_join_field(type(record), name)
        query = self.engine.builder.build(target, filter, sort, limit, join)
        column = self.engine.builder.qualify(target, join_field)
        query.add_where(f"{column} = {query.bind(record.id)}")
        return query

    ##############################
    # Many-many
    ##############################

    def get_many_many_components(
        self,
        record: "Record",
        name: str,
        filter: FilterSpec = None,
        sort: Optional[str] = None,
        join: Optional[str] = None,
        limit: LimitSpec = None,
    ) -> ComponentSet:
        info = self.registry.many_many_info(type(record), name)
        if info is None:
            raise ConfigurationError(f"{type(record).__name__} has no many_many relation '{name}'")
        key = f"{name}_{lookup_key(filter, sort, join, limit)}"

        cached = record.components.get(key, self.engine.cache)
        if cached is not None:
            return cached

        result = ComponentSet(
            self.engine, "many_many", info.component_class, record, relation=name,
            table=info.table, parent_field=info.parent_field, component_field=info.component_field,
        )
        if not record.exists():
            return record.components.put(key, result)

        query = self.many_many_components_query(record, name, filter, sort, join, limit)
        result.items = list(self.engine.hydrate(info.component_class, self.engine.storage.execute(query)))
        return record.components.put(key, result, self._stamp(info.component_class))

    def many_many_components_query(
        self,
        record: "Record",
        name: str,
        filter: FilterSpec = None,
        sort: Optional[str] = None,
        join: Optional[str] = None,
        limit: LimitSpec = None,
    ) -> Query:
        info = self.registry.many_many_info(type(record), name)
        if info is None:
            raise ConfigurationError(f"{type(record).__name__} has no many_many relation '{name}'")
        base_table = self.registry.base_class(info.component_class)
        query = self.engine.builder.build(
            info.component_class, filter, sort, limit,
            join=self.get_many_many_join(record, name, base_table),
        )
        if join:
            query.add_join(join)
        query.add_where(self.get_many_many_filter(record, name, base_table))
        for field, tag in info.extra_fields.items():
            for column in self.registry.codec(tag).columns(field):
                query.add_select(f"{column_ref(info.table, column)} AS {quote(column)}", column)
        return query

    def get_many_many_join(self, record: "Record", name: str, base_table: str) -> str:
        """INNER JOIN of the junction table of ``name`` onto ``base_table``."""
        info = self.registry.many_many_info(type(record), name)
        if info is None:
            raise ConfigurationError(f"{type(record).__name__} has no many_many relation '{name}'")
        return (f"INNER JOIN {quote(info.table)} ON "
                f"{column_ref(info.table, info.component_field)} = {column_ref(base_table, 'ID')}")

    def get_many_many_filter(self, record: "Record", name: str, base_table: str) -> str:
        """Predicate restricting the junction table of ``name`` to rows of ``record``."""
        info = self.registry.many_many_info(type(record), name)
        if info is None:
            raise ConfigurationError(f"{type(record).__name__} has no many_many relation '{name}'")
        return f"{column_ref(info.table, info.parent_field)} = {int(record.id)}"

    def _stamp(self, target: str) -> tuple:
        base = self.registry.base_class(target)
        return base, self.engine.cache.generation(base)
