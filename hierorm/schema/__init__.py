"""
Schema and relation metadata for record hierarchies.

This package turns the declarations made in record class bodies into
descriptors and answers merged questions about them across the ancestry.
"""
from .descriptors import (
    BelongsManyMany, ClassDescriptor, ManyManyInfo, ManyToMany, OneToMany, OneToOne,
    RelationDescriptor,
)
from .hierarchy import ClassHierarchy, ClassNode
from .registry import SchemaRegistry

__all__ = [
    "BelongsManyMany", "ClassDescriptor", "ClassHierarchy", "ClassNode", "ManyManyInfo",
    "ManyToMany", "OneToMany", "OneToOne", "RelationDescriptor", "SchemaRegistry",
]
