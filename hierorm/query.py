"""
Relational query construction for record classes.

QueryBuilder.build() assembles the SELECT for a class: every table of the
hierarchy that stores part of the record, LEFT JOINed on ID, a computed
RecordClassName column for polymorphic hydration and a ClassName restriction
when the class is not the root of its hierarchy. The resulting Query is a
plain data structure; rendering it to SQL is the only thing it does itself.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

from hierorm.errors import ConfigurationError
from hierorm.schema.registry import ClassRef, SchemaRegistry

FilterSpec = Union[None, str, Dict[str, Any], List[Any]]
LimitSpec = Union[None, int, str, Dict[str, Any], Tuple[int, int]]


def quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def column_ref(table: str, column: str) -> str:
    return f"{quote(table)}.{quote(column)}"


def parse_limit(limit: LimitSpec) -> Tuple[Optional[int], int]:
    """Accepts ``10``, ``"10"``, ``"20, 10"`` (offset, count), ``(20, 10)`` or ``{"start", "limit"}``."""
    if limit is None or limit == "":
        return None, 0
    if isinstance(limit, dict):
        count = limit.get("limit")
        return (int(count) if count is not None else None), int(limit.get("start") or 0)
    if isinstance(limit, (tuple, list)):
        offset, count = limit
        return int(count), int(offset)
    if isinstance(limit, int):
        return limit, 0
    text = str(limit).strip()
    if "," in text:
        offset, count = text.split(",", 1)
        return int(count), int(offset)
    return int(text), 0


class Query(BaseModel):
    """Intermediate form of a SELECT, realized by the storage executor."""
    from_table: str
    select: List[str] = Field(default_factory=list)
    selected: List[str] = Field(default_factory=list)  # output column names, in order
    joins: List[str] = Field(default_factory=list)
    where: List[str] = Field(default_factory=list)
    group_by: List[str] = Field(default_factory=list)
    having: List[str] = Field(default_factory=list)
    order_by: Optional[str] = None
    limit: Optional[int] = None
    offset: int = 0
    params: Dict[str, Any] = Field(default_factory=dict)
    queried_tables: List[str] = Field(default_factory=list)

    def add_select(self, expression: str, alias: str) -> bool:
        """Add an output column unless one with the same name is already selected."""
        if alias in self.selected:
            return False
        self.select.append(expression)
        self.selected.append(alias)
        return True

    def bind(self, value: Any) -> str:
        """Register a bound parameter and return its placeholder."""
        name = f"p{len(self.params)}"
        while name in self.params:
            name = f"{name}_"
        self.params[name] = value
        return f":{name}"

    def add_where(self, predicate: str) -> None:
        if predicate and predicate.strip():
            self.where.append(predicate)

    def add_join(self, clause: str) -> None:
        if clause and clause not in self.joins:
            self.joins.append(clause)

    def sql(self) -> str:
        parts = [f"SELECT {', '.join(self.select) or '*'}", f"FROM {quote(self.from_table)}"]
        parts.extend(self.joins)
        if self.where:
            parts.append("WHERE " + " AND ".join(f"({w})" for w in self.where))
        if self.group_by:
            parts.append("GROUP BY " + ", ".join(self.group_by))
        if self.having:
            parts.append("HAVING " + " AND ".join(f"({h})" for h in self.having))
        if self.order_by:
            parts.append(f"ORDER BY {self.order_by}")
        if self.limit is not None:
            parts.append(f"LIMIT {int(self.limit)}")
            if self.offset:
                parts.append(f"OFFSET {int(self.offset)}")
        return " ".join(parts)

    def __str__(self) -> str:
        return self.sql()


class QueryBuilder:
    """Builds Query objects for record classes from the schema registry."""

    def __init__(self, registry: SchemaRegistry, subclass_access: bool = True) -> None:
        self._logger = logging.getLogger("QueryBuilder")
        self.registry = registry
        self.subclass_access = subclass_access

    def build(
        self,
        cls: ClassRef,
        filter: FilterSpec = None,
        sort: Optional[str] = None,
        limit: LimitSpec = None,
        join: Optional[str] = None,
        restrict_classes: bool = True,
        having: Optional[Union[str, List[str]]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Query:
        name = self.registry.class_name(cls)
        base = self.registry.base_class(name)
        tables = self.registry.data_classes_for(name, include_subclasses=self.subclass_access)
        if not tables or tables[0] != base:
            raise ConfigurationError(f"Can't find data classes (classes linked to tables) for {name}")

        query = Query(from_table=base, queried_tables=list(tables))
        if params:
            query.params.update(params)
        query.add_select(f"{column_ref(base, 'ID')} AS {quote('ID')}", "ID")
        for table in tables:
            if table != base:
                query.add_join(f"LEFT JOIN {quote(table)} ON {column_ref(table, 'ID')} = {column_ref(base, 'ID')}")
            for field, tag in self.registry.database_fields(table).items():
                codec = self.registry.codec(tag)
                if codec.composite:
                    codec.expand_into_query(query, table, field)
                else:
                    query.add_select(f"{column_ref(table, field)} AS {quote(field)}", field)

        class_name_column = column_ref(base, "ClassName")
        query.add_select(
            f"CASE WHEN {class_name_column} IS NOT NULL AND {class_name_column} <> '' "
            f"THEN {class_name_column} ELSE '{base}' END AS {quote('RecordClassName')}",
            "RecordClassName",
        )

        if restrict_classes and name != base:
            classes = self.registry.subclasses_for(name)
            placeholders = ", ".join(query.bind(c) for c in classes)
            query.add_where(f"{class_name_column} IN ({placeholders})")

        self.apply_filter(query, name, filter)

        if join:
            query.add_join(join)
            query.group_by.append(column_ref(base, "ID"))

        if having:
            query.having.extend([having] if isinstance(having, str) else having)

        query.order_by = sort if sort else self.registry.default_sort(name)
        query.limit, query.offset = parse_limit(limit)

        self._logger.debug(f"Built query for {name}: {query.sql()}")
        return query

    def apply_filter(self, query: Query, cls: ClassRef, filter: FilterSpec) -> None:
        """
        Add a caller filter. Strings are raw SQL predicates. Dicts map field
        names to values (None -> IS NULL, sequences -> IN) and are qualified
        with the table that stores the field. Lists are AND-ed.
        """
        if filter is None:
            return
        if isinstance(filter, str):
            query.add_where(filter)
        elif isinstance(filter, dict):
            for field, value in filter.items():
                column = self.qualify(cls, field)
                if value is None:
                    query.add_where(f"{column} IS NULL")
                elif isinstance(value, (list, tuple, set, frozenset)):
                    values = list(value)
                    if not values:
                        query.add_where("1 = 0")
                    else:
                        query.add_where(f"{column} IN ({', '.join(query.bind(v) for v in values)})")
                else:
                    query.add_where(f"{column} = {query.bind(value)}")
        elif isinstance(filter, list):
            for item in filter:
                self.apply_filter(query, cls, item)
        else:
            raise TypeError(f"Unsupported filter {filter!r}")

    def qualify(self, cls: ClassRef, field: str) -> str:
        if "." in field or '"' in field:
            return field
        table = self.registry.table_for_field(cls, field)
        return column_ref(table, field) if table else quote(field)
