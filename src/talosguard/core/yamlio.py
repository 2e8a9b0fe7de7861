#!/usr/bin/env python3
"""
TALOSGUARD YAML I/O
-------------------
Thin wrapper over ruamel.yaml. Documents are loaded in round-trip mode
so that mappings keep their source line numbers (``.lc``), which the
values validator uses to point diagnostics at the offending key.
"""

from pathlib import Path
from typing import Any, List, Optional

from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap
from ruamel.yaml.error import YAMLError


def _parser() -> YAML:
    # A YAML instance carries parser state; never share one across threads
    yaml = YAML(typ='rt')
    yaml.preserve_quotes = True
    return yaml


def load_documents(text: str) -> List[Any]:
    """
    Parses every document in ``text``. Raises YAMLError on bad syntax;
    empty documents are dropped.
    """
    return [doc for doc in _parser().load_all(text) if doc is not None]


def load_document(text: str) -> Optional[Any]:
    """Returns the first non-empty document, or None. Raises YAMLError."""
    docs = load_documents(text)
    return docs[0] if docs else None


def read_document(path: Path) -> Optional[Any]:
    """
    Best-effort load of a file on disk. Missing files and bad YAML both
    come back as None.
    """
    try:
        return load_document(path.read_text(encoding='utf-8-sig'))
    except (OSError, UnicodeDecodeError, YAMLError):
        return None


def is_mapping(value: Any) -> bool:
    return isinstance(value, (dict, CommentedMap))


def get_path(doc: Any, dotted: str) -> Any:
    """Resolves ``a.b.c`` through nested mappings; None when any hop is missing."""
    current = doc
    for key in dotted.split("."):
        if not is_mapping(current):
            return None
        current = current.get(key)
    return current


def key_line(doc: Any, dotted: str) -> Optional[int]:
    """1-based source line of the last key in ``dotted``, if ruamel recorded it."""
    parts = dotted.split(".")
    parent = get_path(doc, ".".join(parts[:-1])) if len(parts) > 1 else doc
    try:
        return parent.lc.key(parts[-1])[0] + 1
    except (AttributeError, KeyError, TypeError, IndexError):
        return None
