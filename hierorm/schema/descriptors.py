"""
Declarative metadata: class descriptors and the tagged relation variants.
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

ROOT_FIELDS: Dict[str, str] = {
    "ClassName": "Varchar(255)",
    "Created": "Datetime",
    "LastEdited": "Datetime",
}
FIXED_FIELDS = ("ID", "ClassName", "Created", "LastEdited")
DEFAULT_JOIN_FIELD = "ParentID"


class OneToOne(BaseModel):
    """``has_one``: the owner holds the foreign key ``<name>ID``."""
    kind: Literal["one_to_one"] = "one_to_one"
    name: str
    target: str
    declared_by: str

    @property
    def foreign_key(self) -> str:
        return f"{self.name}ID"


class OneToMany(BaseModel):
    """``has_many``: the inverse side of a one-to-one declared on the target."""
    kind: Literal["one_to_many"] = "one_to_many"
    name: str
    target: str
    declared_by: str
    inverse: Optional[str] = None


class ManyToMany(BaseModel):
    """``many_many``: owning side of a junction table ``<DeclaringClass>_<name>``."""
    kind: Literal["many_many"] = "many_many"
    name: str
    target: str
    declared_by: str
    extra_fields: Dict[str, str] = Field(default_factory=dict)

    @property
    def table(self) -> str:
        return f"{self.declared_by}_{self.name}"

    @property
    def parent_field(self) -> str:
        return f"{self.declared_by}ID"

    @property
    def component_field(self) -> str:
        return "ChildID" if self.target == self.declared_by else f"{self.target}ID"


class BelongsManyMany(BaseModel):
    """``belongs_many_many``: inverse of a many_many declared on the target."""
    kind: Literal["belongs_many_many"] = "belongs_many_many"
    name: str
    target: str
    declared_by: str
    inverse: Optional[str] = None


RelationDescriptor = Annotated[
    Union[OneToOne, OneToMany, ManyToMany, BelongsManyMany],
    Field(discriminator="kind"),
]


class ManyManyInfo(BaseModel):
    """Junction table layout as seen from one side of a many-many relation."""
    parent_class: str
    component_class: str
    parent_field: str
    component_field: str
    table: str
    extra_fields: Dict[str, str] = Field(default_factory=dict)


class IndexDescriptor(BaseModel):
    """A table index; ``name`` is the declared key, the physical name is derived by storage."""
    name: str
    columns: List[str]
    unique: bool = False


class ClassDescriptor(BaseModel):
    """One class in a record hierarchy and the declarations it makes itself."""
    name: str
    parent: Optional[str] = None
    record_class: Any = Field(default=None, exclude=True)
    db: Dict[str, str] = Field(default_factory=dict)
    has_one: Dict[str, OneToOne] = Field(default_factory=dict)
    has_many: Dict[str, OneToMany] = Field(default_factory=dict)
    many_many: Dict[str, ManyToMany] = Field(default_factory=dict)
    belongs_many_many: Dict[str, BelongsManyMany] = Field(default_factory=dict)
    indexes: Dict[str, Any] = Field(default_factory=dict)
    defaults: Dict[str, Any] = Field(default_factory=dict)
    default_sort: Optional[str] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def is_root(self) -> bool:
        return self.parent is None

    @property
    def owns_table(self) -> bool:
        return self.is_root or bool(self.db) or bool(self.has_one)

    def relations(self) -> List[RelationDescriptor]:
        return [*self.has_one.values(), *self.has_many.values(),
                *self.many_many.values(), *self.belongs_many_many.values()]

    @classmethod
    def from_class(cls, record_class: Any, parent: Optional[str]) -> "ClassDescriptor":
        """Read the declarations a record class makes in its own body."""
        own = vars(record_class)
        name = record_class.__name__
        extra_fields: Dict[str, Dict[str, str]] = dict(own.get("many_many_extra_fields") or {})
        return cls(
            name=name,
            parent=parent,
            record_class=record_class,
            db=dict(own.get("db") or {}),
            has_one={rel: OneToOne(name=rel, target=target, declared_by=name)
                     for rel, target in (own.get("has_one") or {}).items()},
            has_many={rel: OneToMany(name=rel, declared_by=name, **_split_inverse(target))
                      for rel, target in (own.get("has_many") or {}).items()},
            many_many={rel: ManyToMany(name=rel, target=target, declared_by=name,
                                       extra_fields=dict(extra_fields.get(rel) or {}))
                       for rel, target in (own.get("many_many") or {}).items()},
            belongs_many_many={rel: BelongsManyMany(name=rel, declared_by=name, **_split_inverse(target))
                               for rel, target in (own.get("belongs_many_many") or {}).items()},
            defaults=dict(own.get("defaults") or {}),
            indexes=dict(own.get("indexes") or {}),
            default_sort=own.get("default_sort"),
        )


def _split_inverse(declaration: str) -> Dict[str, Optional[str]]:
    """``"Target.Relation"`` names the inverse explicitly; ``"Target"`` leaves it inferred."""
    target, _, inverse = declaration.partition(".")
    return {"target": target, "inverse": inverse or None}
