"""Helpers resolving ``module:attribute`` references given on the command line."""

from __future__ import annotations

import importlib
import json
from collections.abc import Mapping
from typing import Any, Dict, Optional


def load_object(reference: str) -> Any:
    """Import ``module:attribute`` and return the attribute.

    Raises:
        ValueError: If ``reference`` is not of the form ``module:attribute``.
        ImportError: If the module cannot be imported.
        AttributeError: If the module has no such attribute.
    """
    module_name, sep, attribute = reference.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Expected 'module:attribute', got {reference!r}")
    target: Any = importlib.import_module(module_name)
    for part in attribute.split("."):
        target = getattr(target, part)
    return target


def load_registry(reference: str) -> Any:
    """Load an agent registry; factories are called without arguments."""
    target = load_object(reference)
    if isinstance(target, type) or (callable(target) and not hasattr(target, "invoke")):
        target = target()
    if not hasattr(target, "invoke"):
        raise TypeError(f"{reference} does not provide an agent registry")
    return target


def load_definitions(reference: str) -> Dict[str, Any]:
    """Load a mapping of workflow id to definition."""
    target = load_object(reference)
    if callable(target) and not isinstance(target, Mapping):
        target = target()
    if not isinstance(target, Mapping):
        raise TypeError(f"{reference} does not provide a mapping of workflow definitions")
    return dict(target)


def parse_json_object(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    value = json.loads(raw)
    if not isinstance(value, dict):
        raise ValueError("Workflow data must be a JSON object")
    return value
