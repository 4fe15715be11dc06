"""
Class hierarchy graph for registered record classes.

Each node knows its parent and its direct children, which is enough to
answer ancestry (root-first) and subclass (pre-order) questions without
touching the Python classes again.
"""
import logging
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field

logger = logging.getLogger("SchemaRegistry")


class ClassNode(BaseModel):
    """A class in the hierarchy graph."""
    name: str
    parent: Optional[str] = None
    children: List[str] = Field(default_factory=list)  # registration order

    def add_child(self, name: str) -> None:
        if name not in self.children:
            self.children.append(name)

    def __str__(self) -> str:
        return f"ClassNode({self.name}, parent={self.parent}, children={len(self.children)})"

    def __repr__(self) -> str:
        return self.__str__()


class ClassHierarchy(BaseModel):
    """
    Parent/child links between record classes.

    Provides:
    1. ancestry of a class, root first
    2. all subclasses of a class, the class itself first
    3. the root of the hierarchy a class belongs to
    """
    nodes: Dict[str, ClassNode] = Field(default_factory=dict)

    def add_class(self, name: str, parent: Optional[str]) -> ClassNode:
        node = self.nodes.get(name)
        if node is None:
            node = ClassNode(name=name, parent=parent)
            self.nodes[name] = node
        else:
            node.parent = parent
        if parent is not None:
            parent_node = self.nodes.get(parent)
            if parent_node is None:
                parent_node = ClassNode(name=parent)
                self.nodes[parent] = parent_node
            parent_node.add_child(name)
        logger.debug(f"Added {node} to class hierarchy")
        return node

    def has_class(self, name: str) -> bool:
        return name in self.nodes

    def ancestry(self, name: str) -> List[str]:
        chain: List[str] = []
        seen: Set[str] = set()
        current: Optional[str] = name
        while current is not None and current not in seen:
            seen.add(current)
            chain.append(current)
            node = self.nodes.get(current)
            current = node.parent if node else None
        chain.reverse()
        return chain

    def root(self, name: str) -> str:
        return self.ancestry(name)[0]

    def subclasses(self, name: str) -> List[str]:
        result: List[str] = []
        stack = [name]
        while stack:
            current = stack.pop()
            if current in result:
                continue
            result.append(current)
            node = self.nodes.get(current)
            if node:
                stack.extend(reversed(node.children))
        return result

    def is_subclass(self, name: str, ancestor: str) -> bool:
        return ancestor in self.ancestry(name)

    def clear(self) -> None:
        self.nodes.clear()
