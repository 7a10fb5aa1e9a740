"""Parameter declarations for workflow inputs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping

from pydantic import ValidationError

from .exceptions import DefinitionError, InputValidationError
from .serialization import check_value, dump_value, load_value

HTML_ELEMENTS: tuple[str, ...] = ("input", "textarea", "select", "checkbox")


@dataclass(frozen=True)
class ParamType:
    """Semantic value type of a parameter plus the metadata a UI needs to render it."""

    python_type: Any = str
    html_element: str = "input"
    select_options: tuple[str, ...] = ()
    example: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "select_options", tuple(self.select_options))
        if self.html_element not in HTML_ELEMENTS:
            msg = f"unsupported html element {self.html_element!r}"
            raise DefinitionError(msg)
        if self.html_element == "select" and not self.select_options:
            raise DefinitionError("select parameters require select_options")
        if self.select_options and self.python_type is not str:
            raise DefinitionError("select_options are only supported for string parameters")


STRING = ParamType(str)
LONG_STRING = ParamType(str, html_element="textarea")
BOOL = ParamType(bool, html_element="checkbox")
INT = ParamType(int)
STRING_LIST = ParamType(list[str])


def select(*options: str, example: str | None = None) -> ParamType:
    """Shorthand for a string parameter restricted to `options`."""
    return ParamType(str, html_element="select", select_options=options, example=example)


@dataclass(frozen=True)
class ParamDef:
    """A named top-level input of a workflow definition.

    `check` may return an error message for values that are well-typed but
    still unacceptable (for example an empty version string).
    """

    name: str
    param_type: ParamType = STRING
    doc: str = ""
    check: Callable[[Any], str | None] | None = None

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise DefinitionError("parameter name must be non-empty")

    @property
    def python_type(self) -> Any:
        return self.param_type.python_type

    def validate(self, value: Any) -> Any:
        """Return the validated value or raise ValueError describing the problem."""
        try:
            checked = check_value(self.python_type, value)
        except ValidationError as exc:
            errors = exc.errors()
            detail = errors[0]["msg"] if errors else str(exc)
            msg = f"parameter {self.name!r}: {detail}"
            raise ValueError(msg) from exc
        options = self.param_type.select_options
        if options and checked not in options:
            msg = f"parameter {self.name!r}: {checked!r} is not one of {list(options)}"
            raise ValueError(msg)
        if self.check is not None:
            problem = self.check(checked)
            if problem:
                raise ValueError(f"parameter {self.name!r}: {problem}")
        return checked

    def dump(self, value: Any) -> Any:
        return dump_value(self.python_type, value)

    def load(self, payload: Any) -> Any:
        return load_value(self.python_type, payload)


def validate_inputs(params: Mapping[str, ParamDef], inputs: Mapping[str, Any]) -> dict[str, Any]:
    """Validate run inputs against parameter declarations.

    Every declared parameter must be supplied and nothing else may be. All
    problems are collected before raising so callers can report them at once.
    """
    problems: list[str] = []
    values: dict[str, Any] = {}
    for name in inputs:
        if name not in params:
            problems.append(f"unknown parameter {name!r}")
    for name, param in params.items():
        if name not in inputs:
            problems.append(f"missing parameter {name!r}")
            continue
        try:
            values[name] = param.validate(inputs[name])
        except ValueError as exc:
            problems.append(str(exc))
    if problems:
        raise InputValidationError(problems)
    return values
