# tandem/modules/graph.py
"""
Dependency graph between packages.

Nodes are package names. An edge ``depend_on(child, parent)`` means *child*
needs *parent* installed first, so *parent* is a prerequisite. Two adjacency
maps are kept in sync:

    _depends_on[child]  = {parents}
    _dependents[parent] = {children}

Aliases map a provided name to the canonical node (``provides=``), every
public lookup goes through them. Cycles are rejected when the edge is added,
which is what makes ``topo_sorted_layers`` always terminate.
"""

from __future__ import annotations
import copy
from collections import deque
from typing import Dict, Iterator, List, Optional, Set, Tuple

from tandem.modules.errors import TandemError
from tandem.modules.package import PackageRef, Reason, Source


class GraphError(TandemError):
    pass


class SelfReferentialError(GraphError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"{name} can not depend on itself")


class CircularDependencyError(GraphError):
    def __init__(self, child: str, parent: str):
        self.child = child
        self.parent = parent
        super().__init__(f"circular dependency: {parent} already depends on {child}")


class ConflictingAliasError(GraphError):
    def __init__(self, alias: str, current: str, wanted: str):
        self.alias = alias
        self.current = current
        self.wanted = wanted
        super().__init__(f"alias {alias} already points to {current}, can not point it to {wanted}")


_DOT_COLORS = {
    Source.REPO: "lightskyblue",
    Source.AUR: "lightgreen",
    Source.SRCINFO: "khaki",
    Source.LOCAL: "lightgrey",
    Source.MISSING: "salmon",
}


class DependencyGraph:
    def __init__(self):
        self._nodes: Set[str] = set()
        self._aliases: Dict[str, str] = {}          # alias -> canonical
        self._alias_index: Dict[str, Set[str]] = {}  # canonical -> {aliases}
        self._info: Dict[str, PackageRef] = {}
        self._depends_on: Dict[str, Set[str]] = {}
        self._dependents: Dict[str, Set[str]] = {}

    # -------------------------
    # nodes and aliases
    # -------------------------
    def _resolve(self, name: str) -> str:
        return self._aliases.get(name, name)

    def add_node(self, name: str):
        self._nodes.add(self._resolve(name))

    def alias(self, name: str, alias: str):
        """Make ``alias`` resolve to ``name``, adding ``name`` as a node if needed."""
        current = self._aliases.get(alias)
        if current is not None and current != name:
            raise ConflictingAliasError(alias, current, name)
        self._nodes.add(name)
        if alias == name or current == name:
            return
        self._aliases[alias] = name
        self._alias_index.setdefault(name, set()).add(alias)

    def get_aliases(self, name: str) -> Set[str]:
        return set(self._alias_index.get(self._resolve(name), ()))

    def exists(self, name: str) -> bool:
        return self._resolve(name) in self._nodes

    def set_node_info(self, name: str, ref: PackageRef):
        self._info[self._resolve(name)] = ref

    def get_node_info(self, name: str) -> Optional[PackageRef]:
        return self._info.get(self._resolve(name))

    def nodes(self) -> List[str]:
        return sorted(self._nodes)

    def items(self) -> Iterator[Tuple[str, Optional[PackageRef]]]:
        for name in sorted(self._nodes):
            yield name, self._info.get(name)

    def __len__(self):
        return len(self._nodes)

    def __contains__(self, name):
        return self.exists(name)

    # -------------------------
    # edges
    # -------------------------
    def depend_on(self, child: str, parent: str):
        child = self._resolve(child)
        parent = self._resolve(parent)

        if child == parent:
            raise SelfReferentialError(child)
        if self.depends_on_node(parent, child):
            raise CircularDependencyError(child, parent)

        self._nodes.add(child)
        self._nodes.add(parent)
        self._depends_on.setdefault(child, set()).add(parent)
        self._dependents.setdefault(parent, set()).add(child)

    def depends_on_node(self, child: str, parent: str) -> bool:
        """True if ``child`` needs ``parent``, directly or transitively."""
        return self._resolve(parent) in self.dependencies(child)

    def has_dependent(self, parent: str, child: str) -> bool:
        return self._resolve(child) in self.dependents(parent)

    def immediate_dependencies(self, name: str) -> Set[str]:
        return set(self._depends_on.get(self._resolve(name), ()))

    def immediate_dependents(self, name: str) -> Set[str]:
        return set(self._dependents.get(self._resolve(name), ()))

    def dependencies(self, name: str) -> Set[str]:
        return self._transitive(self._depends_on, self._resolve(name))

    def dependents(self, name: str) -> Set[str]:
        return self._transitive(self._dependents, self._resolve(name))

    @staticmethod
    def _transitive(adjacency: Dict[str, Set[str]], start: str) -> Set[str]:
        out: Set[str] = set()
        queue = deque(adjacency.get(start, ()))
        while queue:
            node = queue.popleft()
            if node in out:
                continue
            out.add(node)
            queue.extend(adjacency.get(node, ()))
        return out

    # -------------------------
    # ordering
    # -------------------------
    def leaves(self) -> List[str]:
        """Nodes without prerequisites."""
        return sorted(n for n in self._nodes if not self._depends_on.get(n))

    def _remove(self, name: str):
        self._nodes.discard(name)
        self._info.pop(name, None)
        for parent in self._depends_on.pop(name, set()):
            children = self._dependents.get(parent)
            if children is not None:
                children.discard(name)
                if not children:
                    del self._dependents[parent]
        for child in self._dependents.pop(name, set()):
            parents = self._depends_on.get(child)
            if parents is not None:
                parents.discard(name)
                if not parents:
                    del self._depends_on[child]
        for alias in self._alias_index.pop(name, set()):
            self._aliases.pop(alias, None)

    def topo_sorted_layers(self) -> List[List[str]]:
        """Batches of names; every prerequisite of a node sits in an earlier batch."""
        work = DependencyGraph()
        work._nodes = set(self._nodes)
        work._depends_on = copy.deepcopy(self._depends_on)
        work._dependents = copy.deepcopy(self._dependents)

        layers: List[List[str]] = []
        while work._nodes:
            layer = work.leaves()
            for name in layer:
                work._remove(name)
            layers.append(layer)
        return layers

    def topo_sorted_layer_map(self) -> List[Dict[str, PackageRef]]:
        return [
            {name: self._info[name] for name in layer if name in self._info}
            for layer in self.topo_sorted_layers()
        ]

    # -------------------------
    # pruning
    # -------------------------
    def prune(self, name: str) -> List[str]:
        """
        Remove a node and its edges, then every prerequisite left without
        dependents that was not requested explicitly. Dependents of the node
        stay in the graph. Returns the removed names.
        """
        name = self._resolve(name)
        if name not in self._nodes:
            return []

        removed: List[str] = []
        queue = deque([name])
        while queue:
            cur = queue.popleft()
            if cur not in self._nodes:
                continue
            parents = self._depends_on.get(cur, set()).copy()
            self._remove(cur)
            removed.append(cur)
            for parent in sorted(parents):
                if self._dependents.get(parent):
                    continue
                ref = self._info.get(parent)
                if ref is not None and ref.reason == Reason.EXPLICIT:
                    continue
                queue.append(parent)
        return removed

    # -------------------------
    # rendering
    # -------------------------
    def to_dot(self) -> str:
        lines = ["digraph tandem {", "  rankdir=LR;", "  node [style=filled];"]
        for name, ref in self.items():
            color = _DOT_COLORS.get(ref.source, "white") if ref else "white"
            shape = "box" if ref is not None and ref.reason == Reason.EXPLICIT else "ellipse"
            label = f"{name}\\n{ref.version}" if ref is not None and ref.version else name
            lines.append(f'  "{name}" [label="{label}", fillcolor={color}, shape={shape}];')
        for child in sorted(self._depends_on):
            for parent in sorted(self._depends_on[child]):
                lines.append(f'  "{child}" -> "{parent}";')
        lines.append("}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, object]:
        """Plain-data view (layers, nodes, edges) used by the YAML export."""
        return {
            "layers": self.topo_sorted_layers(),
            "nodes": {
                name: {
                    "source": ref.source.value,
                    "reason": ref.reason.label,
                    "version": ref.version,
                    "base": ref.package_base,
                } if ref else {}
                for name, ref in self.items()
            },
            "depends_on": {c: sorted(p) for c, p in sorted(self._depends_on.items())},
        }
