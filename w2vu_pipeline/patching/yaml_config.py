from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml

from w2vu_pipeline.errors import ConfigPatchError

logger = logging.getLogger(__name__)


def split_path(dotted: str) -> list[str]:
    """Split 'a.b.c' (or yq-style '.a.b.c') into its keys."""
    key = dotted.strip()
    if key.startswith("."):
        key = key[1:]
    parts = key.split(".")
    if not key or any(not p for p in parts):
        raise ConfigPatchError(f"Invalid dotted path: {dotted!r}")
    return parts


def parse_assignments(items: Iterable[str]) -> dict[str, str]:
    """Parse 'path=value' strings, splitting at the first '='."""
    out: dict[str, str] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ConfigPatchError(f"Expected path=value, got {item!r}")
        out[key.strip()] = value
    return out


def load_document(path: Path) -> dict[str, Any]:
    if not path.is_file():
        raise ConfigPatchError(f"Config file not found: {path}")
    with path.open("r", encoding="utf-8") as fh:
        try:
            data = yaml.safe_load(fh)
        except yaml.YAMLError as exc:
            raise ConfigPatchError(f"Could not parse {path}: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigPatchError(f"Config root must be a mapping in {path}, got {type(data).__name__}")
    return data


def save_document(path: Path, doc: Mapping[str, Any]) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        yaml.safe_dump(dict(doc), fh, sort_keys=False, default_flow_style=False, allow_unicode=True)
    os.replace(tmp, path)


def assign(doc: dict[str, Any], dotted: str, value: Any) -> None:
    """Set a leaf in memory, creating missing (or null) intermediate mappings."""
    keys = split_path(dotted)
    node = doc
    for i, key in enumerate(keys[:-1]):
        child = node.get(key)
        if child is None:
            child = {}
            node[key] = child
        elif not isinstance(child, dict):
            where = ".".join(keys[: i + 1])
            raise ConfigPatchError(f"Cannot set {dotted}: {where} holds a {type(child).__name__}, not a mapping")
        node = child
    node[keys[-1]] = value


def remove(doc: dict[str, Any], dotted: str) -> Any:
    keys = split_path(dotted)
    node: Any = doc
    for key in keys[:-1]:
        if not isinstance(node, dict) or key not in node:
            raise ConfigPatchError(f"Cannot delete {dotted}: path does not exist")
        node = node[key]
    if not isinstance(node, dict) or keys[-1] not in node:
        raise ConfigPatchError(f"Cannot delete {dotted}: path does not exist")
    return node.pop(keys[-1])


def lookup(doc: Mapping[str, Any], dotted: str) -> Any:
    node: Any = doc
    for key in split_path(dotted):
        if not isinstance(node, Mapping) or key not in node:
            raise KeyError(dotted)
        node = node[key]
    return node


def set_values(path: Path, updates: Mapping[str, Any]) -> None:
    """Apply several dotted-path writes in a single load/patch/save cycle.

    Values are stored as strings. If any write fails the file is untouched.
    """
    if not updates:
        raise ConfigPatchError(f"No updates given for {path}")
    doc = load_document(path)
    for dotted, value in updates.items():
        assign(doc, dotted, str(value))
    save_document(path, doc)
    logger.info(
        "Updated %s: %s",
        path,
        ", ".join(f"{k} = {v}" for k, v in updates.items()),
    )


def set_value(path: Path, dotted: str, value: Any) -> None:
    set_values(path, {dotted: value})


def add_field(path: Path, parent: str, key: str, value: Any) -> None:
    """Add (or overwrite) key under parent, creating parent if needed."""
    set_value(path, f"{parent.strip('.')}.{key}", value)


def delete_field(path: Path, dotted: str) -> None:
    doc = load_document(path)
    remove(doc, dotted)
    save_document(path, doc)
    logger.info("Deleted field %s from %s", dotted, path)


def get_value(path: Path, dotted: str) -> Any:
    return lookup(load_document(path), dotted)
