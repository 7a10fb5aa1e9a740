"""Tests for DefinitionBuilder, Definition and DefinitionRegistry."""

import pytest

from relflow.workflow import (
    Definition,
    DefinitionBuilder,
    DefinitionError,
    DefinitionRegistry,
    InputSource,
    NodeKind,
    ParamDef,
)


def _noop(ctx, *args):
    return None


def _chain() -> tuple[DefinitionBuilder, dict]:
    builder = DefinitionBuilder("chain")
    x = builder.param(ParamDef("x"))
    a = builder.task("a", _noop, x)
    b = builder.task("b", _noop, a)
    c = builder.task("c", _noop, b)
    return builder, {"x": x, "a": a, "b": b, "c": c}


class TestBuilderRegistration:
    """Tests for registering parameters and nodes."""

    def test_build_records_nodes_in_registration_order(self) -> None:
        builder, _ = _chain()
        definition = builder.build()
        assert definition.node_names == ("a", "b", "c")
        assert definition.roots() == ("a",)
        assert definition.dependencies("c") == ("b",)
        assert definition.dependents("a") == ("b",)

    def test_task_returns_node_handle(self) -> None:
        builder = DefinitionBuilder("handles")
        handle = builder.task("a", _noop)
        assert handle.source is InputSource.NODE
        assert handle.name == "a"

    def test_duplicate_node_name(self) -> None:
        builder = DefinitionBuilder("dupes")
        builder.task("a", _noop)
        with pytest.raises(DefinitionError, match="already declared"):
            builder.task("a", _noop)

    def test_param_and_node_share_namespace(self) -> None:
        builder = DefinitionBuilder("dupes")
        builder.param(ParamDef("version"))
        with pytest.raises(DefinitionError, match="already declared"):
            builder.task("version", _noop)

    def test_foreign_handle_rejected(self) -> None:
        """Handles from another builder never resolve."""
        other = DefinitionBuilder("other")
        foreign = other.task("a", _noop)
        builder = DefinitionBuilder("mine")
        with pytest.raises(DefinitionError, match="another definition"):
            builder.task("b", _noop, foreign)

    def test_action_cannot_be_input(self) -> None:
        builder = DefinitionBuilder("actions")
        ping = builder.action("ping", _noop)
        with pytest.raises(DefinitionError, match="after="):
            builder.task("b", _noop, ping)

    def test_action_as_after(self) -> None:
        builder = DefinitionBuilder("actions")
        ping = builder.action("ping", _noop)
        builder.task("b", _noop, after=[ping])
        definition = builder.build()
        assert definition.node("ping").kind is NodeKind.ACTION
        assert definition.dependencies("b") == ("ping",)

    def test_body_must_be_callable(self) -> None:
        with pytest.raises(DefinitionError, match="not callable"):
            DefinitionBuilder("bad").task("a", "not a function")

    def test_empty_definition_cannot_build(self) -> None:
        with pytest.raises(DefinitionError, match="no nodes"):
            DefinitionBuilder("empty").build()

    def test_builder_closed_after_build(self) -> None:
        builder, _ = _chain()
        builder.build()
        with pytest.raises(DefinitionError, match="already built"):
            builder.task("d", _noop)

    def test_const_values(self) -> None:
        builder = DefinitionBuilder("consts")
        one = builder.const(1)
        builder.task("a", _noop, one)
        definition = builder.build()
        (value,) = definition.node("a").inputs
        assert value.source is InputSource.CONST
        assert value.literal == 1
        assert definition.dependencies("a") == ()


class TestOrdering:
    """Tests for explicit ordering edges and cycle detection."""

    def test_add_ordering_between_independent_nodes(self) -> None:
        builder = DefinitionBuilder("order")
        a = builder.task("a", _noop)
        b = builder.task("b", _noop)
        builder.add_ordering(a, b)
        definition = builder.build()
        assert definition.dependencies("b") == ("a",)

    def test_cycle_rejected_and_builder_unchanged(self) -> None:
        """c -> a would close a -> b -> c, so nothing is recorded."""
        builder, handles = _chain()
        with pytest.raises(DefinitionError, match="cycle"):
            builder.add_ordering(handles["c"], handles["a"])
        definition = builder.build()
        assert definition.dependencies("a") == ()
        assert definition.ancestors("c") == frozenset({"a", "b"})

    def test_self_edge_rejected(self) -> None:
        builder, handles = _chain()
        with pytest.raises(DefinitionError, match="after itself"):
            builder.add_ordering(handles["a"], handles["a"])

    def test_redundant_edge_is_ignored(self) -> None:
        builder, handles = _chain()
        builder.add_ordering(handles["a"], handles["c"])
        builder.add_ordering(handles["a"], handles["c"])
        definition = builder.build()
        assert definition.dependencies("c") == ("b", "a")

    def test_param_is_not_a_node_handle(self) -> None:
        builder, handles = _chain()
        with pytest.raises(DefinitionError, match="not a node handle"):
            builder.add_ordering(handles["x"], handles["a"])

    def test_descendants(self) -> None:
        builder, _ = _chain()
        definition = builder.build()
        assert definition.descendants("a") == frozenset({"b", "c"})
        assert definition.descendants("c") == frozenset()


class TestOutputsAndImmutability:
    """Tests for declared outputs and frozen definitions."""

    def test_declared_outputs(self) -> None:
        builder, handles = _chain()
        builder.output("final", handles["c"])
        definition = builder.build()
        assert list(definition.outputs) == ["final"]

    def test_action_cannot_be_output(self) -> None:
        builder = DefinitionBuilder("outputs")
        action = builder.action("ping", _noop)
        with pytest.raises(DefinitionError):
            builder.output("ping", action)

    def test_duplicate_output(self) -> None:
        builder, handles = _chain()
        builder.output("final", handles["c"])
        with pytest.raises(DefinitionError, match="duplicate output"):
            builder.output("final", handles["b"])

    def test_definition_is_immutable(self) -> None:
        builder, _ = _chain()
        definition = builder.build()
        with pytest.raises(AttributeError):
            definition.name = "other"
        with pytest.raises(TypeError):
            definition.nodes["z"] = definition.node("a")

    def test_unknown_node_lookup(self) -> None:
        builder, _ = _chain()
        with pytest.raises(DefinitionError, match="unknown node"):
            builder.build().node("missing")


class TestDefinitionRegistry:
    """Tests for DefinitionRegistry."""

    def test_register_and_get(self) -> None:
        builder, _ = _chain()
        definition = builder.build()
        registry = DefinitionRegistry()
        registry.register("chain", definition)
        assert registry.get("chain") is definition
        assert "chain" in registry
        assert len(registry) == 1

    def test_factory_built_once(self) -> None:
        calls = []

        def factory() -> Definition:
            calls.append(1)
            return _chain()[0].build()

        registry = DefinitionRegistry()
        registry.register("chain", factory)
        first = registry.get("chain")
        assert registry.get("chain") is first
        assert len(calls) == 1

    def test_duplicate_registration(self) -> None:
        registry = DefinitionRegistry()
        registry.register("chain", _chain()[0].build())
        with pytest.raises(DefinitionError, match="already registered"):
            registry.register("chain", _chain()[0].build())

    def test_unknown_name(self) -> None:
        with pytest.raises(DefinitionError, match="not registered"):
            DefinitionRegistry().get("missing")

    def test_unregister_and_names(self) -> None:
        registry = DefinitionRegistry()
        registry.register("b", _chain()[0].build())
        registry.register("a", _chain()[0].build())
        assert registry.names() == ["a", "b"]
        registry.unregister("a")
        assert registry.names() == ["b"]
