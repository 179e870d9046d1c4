"""
Configuration Values

Scenario variables are arbitrarily nested: scalars, sequences and mappings
(e.g. apis -> petstore -> operations -> get-pets -> method). These helpers
walk that tree without knowing its schema.
"""

from typing import Any, Iterator, Union

Scalar = Union[str, int, float, bool, None]
ConfigValue = Union[Scalar, list["ConfigValue"], dict[str, "ConfigValue"]]

SCALAR_TYPES = (str, int, float, bool, type(None))


def check_value(value: Any, path: str = "") -> list[str]:
    """
    Check that a value is a well-formed configuration tree.

    Returns:
        List of problems, each prefixed with the dotted path where it occurred
    """
    where = path or "<root>"

    if isinstance(value, SCALAR_TYPES):
        return []

    if isinstance(value, (list, tuple)):
        problems = []
        for i, item in enumerate(value):
            problems.extend(check_value(item, f"{path}[{i}]"))
        return problems

    if isinstance(value, dict):
        problems = []
        for key, item in value.items():
            if not isinstance(key, str):
                problems.append(f"{where}: mapping key {key!r} is not a string")
                continue
            child = f"{path}.{key}" if path else key
            problems.extend(check_value(item, child))
        return problems

    return [f"{where}: unsupported value type {type(value).__name__}"]


def copy_value(value: ConfigValue) -> ConfigValue:
    """Deep copy a configuration tree (tuples become lists)."""
    if isinstance(value, dict):
        return {k: copy_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [copy_value(v) for v in value]
    return value


def merge_values(base: dict[str, ConfigValue], overlay: dict[str, ConfigValue]) -> dict[str, ConfigValue]:
    """
    Merge overlay into a copy of base.

    Nested mappings are merged key by key; everything else in overlay
    replaces the base value. Neither input is modified.
    """
    merged = copy_value(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_values(merged[key], value)
        else:
            merged[key] = copy_value(value)
    return merged


def iter_leaves(value: ConfigValue, path: str = "") -> Iterator[tuple[str, Scalar]]:
    """Yield (dotted_path, scalar) for every leaf of the tree."""
    if isinstance(value, dict):
        for key, item in value.items():
            yield from iter_leaves(item, f"{path}.{key}" if path else key)
    elif isinstance(value, (list, tuple)):
        for i, item in enumerate(value):
            yield from iter_leaves(item, f"{path}[{i}]")
    else:
        yield path, value

