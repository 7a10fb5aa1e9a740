"""Typed JSON conversion for parameter values and node outputs."""

from __future__ import annotations

from functools import lru_cache
from typing import Any

from pydantic import TypeAdapter


@lru_cache(maxsize=None)
def adapter_for(python_type: Any) -> TypeAdapter:
    return TypeAdapter(python_type)


def dump_value(python_type: Any, value: Any) -> Any:
    """Convert a value to its JSON-compatible form."""
    return adapter_for(python_type).dump_python(value, mode="json")


def load_value(python_type: Any, payload: Any) -> Any:
    """Rebuild a typed value from its stored JSON form."""
    return adapter_for(python_type).validate_python(payload)


def check_value(python_type: Any, value: Any) -> Any:
    """Validate a caller-supplied value without lax coercion."""
    return adapter_for(python_type).validate_python(value, strict=True)
