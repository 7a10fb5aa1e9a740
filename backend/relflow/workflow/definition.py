"""Workflow definitions: a DAG of tasks and actions over named parameters.

A `DefinitionBuilder` collects parameters, nodes and explicit ordering edges.
Registration is purely structural; no body runs until the engine drives a
run. `build()` freezes everything into a `Definition`, which is immutable and
can back any number of concurrent runs.

Each node is a tagged record (`NodeKind.TASK` or `NodeKind.ACTION`) holding a
tuple of input slots and a single body callable. The body is invoked as
``body(ctx, *inputs)`` with inputs resolved in slot order.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Union

from .exceptions import DefinitionError
from .params import ParamDef
from .retries import RetryPolicy


class NodeKind(str, Enum):
    TASK = "task"
    ACTION = "action"


class InputSource(str, Enum):
    PARAM = "param"
    NODE = "node"
    CONST = "const"


@dataclass(frozen=True)
class Value:
    """Handle to a value that can feed node inputs or top-level outputs."""

    source: InputSource
    name: str
    literal: Any = field(default=None, compare=False)
    owner: int = field(default=0, compare=False, repr=False)


@dataclass(frozen=True)
class Dependency:
    """Handle to an Action node; usable only as an ordering edge."""

    node: str
    owner: int = field(default=0, compare=False, repr=False)


After = Union[Value, Dependency]


@dataclass(frozen=True)
class Node:
    """A registered task or action.

    `timeout_seconds` of None defers to the engine default; 0 disables the
    per-attempt timeout for this node (approval gates).
    """

    name: str
    kind: NodeKind
    body: Callable[..., Any]
    inputs: tuple[Value, ...]
    after: tuple[str, ...] = ()
    result_type: Any = Any
    retry: RetryPolicy | None = None
    timeout_seconds: float | None = None

    @property
    def data_dependencies(self) -> tuple[str, ...]:
        return tuple(
            dict.fromkeys(v.name for v in self.inputs if v.source is InputSource.NODE)
        )

    @property
    def dependencies(self) -> tuple[str, ...]:
        return tuple(dict.fromkeys(self.data_dependencies + self.after))


class Definition:
    """Frozen workflow graph produced by DefinitionBuilder.build()."""

    __slots__ = ("name", "params", "nodes", "outputs", "_dependents")

    def __init__(
        self,
        name: str,
        params: Mapping[str, ParamDef],
        nodes: Iterable[Node],
        outputs: Mapping[str, Value],
    ):
        node_map = {node.name: node for node in nodes}
        dependents: dict[str, list[str]] = {name: [] for name in node_map}
        for node in node_map.values():
            for upstream in node.dependencies:
                dependents[upstream].append(node.name)
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "params", MappingProxyType(dict(params)))
        object.__setattr__(self, "nodes", MappingProxyType(node_map))
        object.__setattr__(self, "outputs", MappingProxyType(dict(outputs)))
        object.__setattr__(
            self,
            "_dependents",
            MappingProxyType({k: tuple(v) for k, v in dependents.items()}),
        )

    def __setattr__(self, key: str, value: Any) -> None:
        raise AttributeError(f"Definition is immutable; cannot set {key!r}")

    def __repr__(self) -> str:
        return f"Definition(name={self.name!r}, nodes={len(self.nodes)})"

    @property
    def node_names(self) -> tuple[str, ...]:
        return tuple(self.nodes)

    def node(self, name: str) -> Node:
        try:
            return self.nodes[name]
        except KeyError:
            raise DefinitionError(f"unknown node {name!r}") from None

    def dependencies(self, name: str) -> tuple[str, ...]:
        return self.node(name).dependencies

    def dependents(self, name: str) -> tuple[str, ...]:
        self.node(name)
        return self._dependents[name]

    def ancestors(self, name: str) -> frozenset[str]:
        return frozenset(_walk(name, self.dependencies))

    def descendants(self, name: str) -> frozenset[str]:
        return frozenset(_walk(name, self.dependents))

    def roots(self) -> tuple[str, ...]:
        return tuple(name for name, node in self.nodes.items() if not node.dependencies)


def _walk(start: str, edges: Callable[[str], Iterable[str]]) -> set[str]:
    seen: set[str] = set()
    queue = deque(edges(start))
    while queue:
        current = queue.popleft()
        if current in seen:
            continue
        seen.add(current)
        queue.extend(edges(current))
    return seen


@dataclass
class _NodeSpec:
    kind: NodeKind
    body: Callable[..., Any]
    inputs: tuple[Value, ...]
    result_type: Any
    retry: RetryPolicy | None
    timeout_seconds: float | None
    after: list[str] = field(default_factory=list)


class DefinitionBuilder:
    """Collects parameters, nodes and ordering edges for a workflow."""

    def __init__(self, name: str):
        if not name or not name.strip():
            raise DefinitionError("definition name must be non-empty")
        self.name = name
        self._params: dict[str, ParamDef] = {}
        self._nodes: dict[str, _NodeSpec] = {}
        self._outputs: dict[str, Value] = {}
        self._const_count = 0
        self._built = False

    def param(self, param: ParamDef) -> Value:
        """Declare a top-level input and return a handle to its value."""
        self._ensure_open()
        self._ensure_free(param.name)
        self._params[param.name] = param
        return Value(InputSource.PARAM, param.name, owner=id(self))

    def const(self, value: Any) -> Value:
        """Return a handle to a literal value."""
        self._ensure_open()
        self._const_count += 1
        return Value(
            InputSource.CONST, f"const#{self._const_count}", literal=value, owner=id(self)
        )

    def task(
        self,
        name: str,
        body: Callable[..., Any],
        *inputs: Value,
        after: Iterable[After] = (),
        result_type: Any = Any,
        retry: RetryPolicy | None = None,
        timeout_seconds: float | None = None,
    ) -> Value:
        """Register a node whose return value feeds dependents."""
        self._add_node(
            name, NodeKind.TASK, body, inputs, after, result_type, retry, timeout_seconds
        )
        return Value(InputSource.NODE, name, owner=id(self))

    def action(
        self,
        name: str,
        body: Callable[..., Any],
        *inputs: Value,
        after: Iterable[After] = (),
        retry: RetryPolicy | None = None,
        timeout_seconds: float | None = None,
    ) -> Dependency:
        """Register a side-effecting node with no output."""
        self._add_node(
            name, NodeKind.ACTION, body, inputs, after, type(None), retry, timeout_seconds
        )
        return Dependency(name, owner=id(self))

    def add_ordering(self, before: After, after: After) -> None:
        """Require `after` to run only once `before` has succeeded.

        Raises DefinitionError, leaving the builder unchanged, when the edge
        would close a cycle.
        """
        self._ensure_open()
        source = self._node_ref(before)
        target = self._node_ref(after)
        self._check_edge(source, target)
        spec = self._nodes[target]
        if source not in spec.after:
            spec.after.append(source)

    def output(self, name: str, value: Value) -> None:
        """Expose `value` under `name` in the run result."""
        self._ensure_open()
        if name in self._outputs:
            raise DefinitionError(f"duplicate output {name!r}")
        self._check_value(value)
        if value.source is InputSource.NODE and self._nodes[value.name].kind is NodeKind.ACTION:
            raise DefinitionError(f"action {value.name!r} has no output")
        self._outputs[name] = value

    def build(self) -> Definition:
        """Freeze the builder into an immutable Definition."""
        self._ensure_open()
        if not self._nodes:
            raise DefinitionError(f"definition {self.name!r} has no nodes")
        nodes = [
            Node(
                name=name,
                kind=spec.kind,
                body=spec.body,
                inputs=spec.inputs,
                after=tuple(spec.after),
                result_type=spec.result_type,
                retry=spec.retry,
                timeout_seconds=spec.timeout_seconds,
            )
            for name, spec in self._nodes.items()
        ]
        self._built = True
        return Definition(self.name, self._params, nodes, self._outputs)

    def _add_node(
        self,
        name: str,
        kind: NodeKind,
        body: Callable[..., Any],
        inputs: tuple[Value, ...],
        after: Iterable[After],
        result_type: Any,
        retry: RetryPolicy | None,
        timeout_seconds: float | None,
    ) -> None:
        self._ensure_open()
        if not name or not name.strip():
            raise DefinitionError("node name must be non-empty")
        self._ensure_free(name)
        if not callable(body):
            raise DefinitionError(f"body of {name!r} is not callable")
        for value in inputs:
            if isinstance(value, Dependency):
                msg = f"{name!r} uses action {value.node!r} as an input; use after= instead"
                raise DefinitionError(msg)
            self._check_value(value)
            if value.source is InputSource.NODE and self._nodes[value.name].kind is NodeKind.ACTION:
                raise DefinitionError(f"action {value.name!r} has no output")
        upstream = list(dict.fromkeys(self._node_ref(ref) for ref in after))
        self._nodes[name] = _NodeSpec(
            kind=kind,
            body=body,
            inputs=tuple(inputs),
            result_type=result_type,
            retry=retry,
            timeout_seconds=timeout_seconds,
            after=upstream,
        )

    def _check_edge(self, source: str, target: str) -> None:
        if source == target:
            raise DefinitionError(f"node {source!r} cannot run after itself")
        # Walk upstream from the source; reaching the target means the new
        # edge would close a loop.
        if target in _walk(source, self._upstream_of):
            raise DefinitionError(f"ordering {source!r} -> {target!r} would create a cycle")

    def _upstream_of(self, name: str) -> list[str]:
        spec = self._nodes[name]
        data = [v.name for v in spec.inputs if v.source is InputSource.NODE]
        return data + spec.after

    def _node_ref(self, ref: After) -> str:
        if isinstance(ref, Dependency):
            name = ref.node
            owner = ref.owner
        elif isinstance(ref, Value) and ref.source is InputSource.NODE:
            name = ref.name
            owner = ref.owner
        else:
            raise DefinitionError(f"{ref!r} is not a node handle")
        if owner != id(self) or name not in self._nodes:
            raise DefinitionError(f"unknown node {name!r}")
        return name

    def _check_value(self, value: Value) -> None:
        if not isinstance(value, Value):
            raise DefinitionError(f"{value!r} is not a value handle")
        if value.owner != id(self):
            raise DefinitionError(f"{value.name!r} belongs to another definition")
        if value.source is InputSource.PARAM and value.name not in self._params:
            raise DefinitionError(f"unknown parameter {value.name!r}")
        if value.source is InputSource.NODE and value.name not in self._nodes:
            raise DefinitionError(f"unknown node {value.name!r}")

    def _ensure_free(self, name: str) -> None:
        if name in self._params or name in self._nodes:
            raise DefinitionError(f"name {name!r} is already declared")

    def _ensure_open(self) -> None:
        if self._built:
            raise DefinitionError(f"definition {self.name!r} is already built")
