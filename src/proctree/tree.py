"""Persistent process tree, reconciled in place from successive snapshots.

Nodes live in an arena keyed by a node id. A node holds the ordered ids of
its children and the id of its parent; the parent link is only a lookup key.
A pid that stays present across snapshots keeps the same ProcessNode object,
so views can redraw just the part of the tree that changed.
"""

import itertools
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum

from proctree.collector import ProcessRecord
from proctree.names import has_node_token

DEBUG_FLAGS = re.compile(r"\s--(inspect|debug)(-(brk|port))?(=\d+)?")

TERMINATED_PREFIX = "[[ "
TERMINATED_SUFFIX = " ]]"


class _Terminated:
    """Sentinel record for a process that left the snapshot."""

    def __repr__(self) -> str:
        return "TERMINATED"


TERMINATED = _Terminated()


class ChangeKind(Enum):
    NONE = "none"
    NODE = "node"
    TREE = "tree"


@dataclass(frozen=True)
class ChangeTarget:
    """What a view has to redraw after a merge."""

    kind: ChangeKind
    node_id: int | None = None

    @classmethod
    def none(cls) -> "ChangeTarget":
        return cls(ChangeKind.NONE)

    @classmethod
    def node(cls, node_id: int) -> "ChangeTarget":
        return cls(ChangeKind.NODE, node_id)

    @classmethod
    def whole_tree(cls) -> "ChangeTarget":
        return cls(ChangeKind.TREE)

    def __bool__(self) -> bool:
        return self.kind is not ChangeKind.NONE


class DebugScope(Enum):
    """Which debug actions make sense for a node.

    Values are the context tags a command layer keys its menus on.
    """

    NONE = ""
    SELF = "node"
    CHILDREN = "subs"
    BOTH = "node-subs"

    @classmethod
    def from_flags(cls, self_debuggable: bool, any_child_debuggable: bool) -> "DebugScope":
        if self_debuggable and any_child_debuggable:
            return cls.BOTH
        if self_debuggable:
            return cls.SELF
        if any_child_debuggable:
            return cls.CHILDREN
        return cls.NONE


class Collapsible(Enum):
    NONE = "none"
    EXPANDED = "expanded"


def is_debuggable(command: str) -> bool:
    """Whether a command line accepts a debugger attach."""
    return DEBUG_FLAGS.search(command) is not None or has_node_token(command)


def format_label(name: str, load: float | None, mem_mb: float | None) -> str:
    """Build the display label: ``name (load%, memMB)``.

    Whole-percent samples (the Windows load pass) print without decimals;
    ``ps`` samples keep the one decimal ``ps`` reports.
    """
    if load is not None and mem_mb is not None:
        percent = str(load) if isinstance(load, int) else f"{load:.1f}"
        return f"{name} ({percent}%, {mem_mb:.2f}MB)"
    if mem_mb is not None:
        return f"{name} ({mem_mb:.2f}MB)"
    return name


@dataclass(eq=False)
class ProcessNode:
    """Persistent state for one observed process."""

    node_id: int
    pid: int
    parent_id: int | None
    command_line: str = ""
    name: str = ""
    label: str = ""
    load: float | None = None
    mem_mb: float | None = None
    debuggable: bool = False
    terminated: bool = False
    debug_scope: DebugScope = DebugScope.NONE
    collapsible: Collapsible = Collapsible.NONE
    children: list[int] = field(default_factory=list)

    @property
    def id(self) -> str:
        """Identifier exposed to views."""
        return str(self.node_id)


class ProcessTree:
    """Arena of ProcessNodes rooted at a fixed pid."""

    def __init__(self, root_pid: int, keep_terminated: bool = False) -> None:
        self.keep_terminated = keep_terminated
        self._ids = itertools.count(1)
        self._nodes: dict[int, ProcessNode] = {}
        self._live: dict[int, int] = {}  # pid -> node_id, live nodes only
        self.root = self._create(root_pid, parent_id=None)

    def __len__(self) -> int:
        return len(self._nodes)

    def get(self, node_id: int) -> ProcessNode | None:
        return self._nodes.get(node_id)

    def find(self, pid: int) -> ProcessNode | None:
        """Live node for ``pid``; terminated nodes are never returned."""
        node_id = self._live.get(pid)
        return self._nodes[node_id] if node_id is not None else None

    def children(self, node: ProcessNode | None = None) -> list[ProcessNode]:
        node = node or self.root
        return [self._nodes[child_id] for child_id in node.children]

    def parent(self, node: ProcessNode) -> ProcessNode | None:
        if node.parent_id is None:
            return None
        return self._nodes.get(node.parent_id)

    def walk(self, node: ProcessNode | None = None) -> Iterator[ProcessNode]:
        """Depth-first pre-order traversal."""
        node = node or self.root
        yield node
        for child in self.children(node):
            yield from self.walk(child)

    def merge(
        self,
        record: ProcessRecord,
        new_nodes: list[ProcessNode] | None = None,
    ) -> ChangeTarget:
        """Reconcile the tree with a fresh snapshot rooted at the same pid.

        Args:
            record: Root record of the snapshot
            new_nodes: If given, collects nodes created by this merge

        Returns:
            The smallest redraw target. A change that lands on the root is
            reported as the whole tree, because views cannot address the
            root on its own.
        """
        if new_nodes is None:
            new_nodes = []
        target = self._merge(self.root, record, new_nodes)
        if target.kind is ChangeKind.NODE and target.node_id == self.root.node_id:
            return ChangeTarget.whole_tree()
        return target

    def _create(self, pid: int, parent_id: int | None) -> ProcessNode:
        node = ProcessNode(node_id=next(self._ids), pid=pid, parent_id=parent_id)
        self._nodes[node.node_id] = node
        self._live[pid] = node.node_id
        return node

    def _drop(self, node: ProcessNode) -> None:
        for child in self.children(node):
            self._drop(child)
        del self._nodes[node.node_id]
        if self._live.get(node.pid) == node.node_id:
            del self._live[node.pid]

    def _mark_terminated(self, node: ProcessNode) -> bool:
        """Flag a node as terminated; returns True on the transition."""
        if not node.label.startswith(TERMINATED_PREFIX):
            node.label = f"{TERMINATED_PREFIX}{node.label}{TERMINATED_SUFFIX}"
        if node.terminated:
            return False
        node.terminated = True
        if self._live.get(node.pid) == node.node_id:
            del self._live[node.pid]
        return True

    def _merge(
        self,
        node: ProcessNode,
        record: ProcessRecord | _Terminated,
        new_nodes: list[ProcessNode],
    ) -> ChangeTarget:
        old_label = node.label
        old_command = node.command_line

        if isinstance(record, ProcessRecord):
            node.command_line = record.command
            node.name = record.name
            if record.load is not None:
                node.load = record.load
            node.mem_mb = record.mem_mb
            node.label = format_label(node.name, node.load, node.mem_mb)
        else:
            self._mark_terminated(node)
        changed = node.label != old_label or node.command_line != old_command

        node.debuggable = not node.terminated and is_debuggable(node.command_line)

        child_changes: list[ChangeTarget] = []
        if isinstance(record, ProcessRecord):
            changed = self._merge_children(node, record, new_nodes, child_changes) or changed
        else:
            for child in self.children(node):
                child_target = self._merge(child, TERMINATED, new_nodes)
                if child_target:
                    child_changes.append(child_target)

        old_scope = node.debug_scope
        node.debug_scope = DebugScope.from_flags(
            node.debuggable,
            any(child.debuggable for child in self.children(node)),
        )
        changed = changed or node.debug_scope is not old_scope

        old_collapsible = node.collapsible
        node.collapsible = Collapsible.EXPANDED if node.children else Collapsible.NONE
        changed = changed or node.collapsible is not old_collapsible

        # Own changes or changes in several children: redraw this subtree
        if changed or len(child_changes) > 1:
            return ChangeTarget.node(node.node_id)
        # A single changed descendant is redrawn on its own
        if len(child_changes) == 1:
            return child_changes[0]
        return ChangeTarget.none()

    def _merge_children(
        self,
        node: ProcessNode,
        record: ProcessRecord,
        new_nodes: list[ProcessNode],
        child_changes: list[ChangeTarget],
    ) -> bool:
        """Diff children against the record; returns True on structural change."""
        structural = False
        existing = self.children(node)
        reusable = {child.pid: child for child in existing if not child.terminated}
        next_children: list[int] = []

        for child_record in record.children:
            child = reusable.pop(child_record.pid, None)
            if child is None:
                child = self._create(child_record.pid, parent_id=node.node_id)
                new_nodes.append(child)
                structural = True
            child_target = self._merge(child, child_record, new_nodes)
            if child_target:
                child_changes.append(child_target)
            next_children.append(child.node_id)

        matched = set(next_children)
        for child in existing:
            if child.node_id in matched:
                continue
            if not self.keep_terminated:
                self._drop(child)
                structural = True
                continue
            was_terminated = child.terminated
            child_target = self._merge(child, TERMINATED, new_nodes)
            if not was_terminated:
                structural = True
            elif child_target:
                child_changes.append(child_target)
            next_children.append(child.node_id)

        node.children = next_children
        return structural
