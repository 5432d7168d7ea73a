"""
JSON document I/O for the schemaless object store.

The whole store is one versioned document:

    {"version": 3, "entities": {"<kind>": {"<id>": {...record dict...}}}}
"""

import json
import os
from pathlib import Path
from typing import Dict, Any

from .errors import StorageUnavailableError


def empty_store() -> Dict[str, Any]:
    return {"version": 0, "entities": {}}


def load_store(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return empty_store()
    try:
        with path.open("r", encoding="utf-8") as f:
            content = f.read().strip()
    except OSError as e:
        raise StorageUnavailableError(f"Cannot read object store {path}: {e}") from e
    if not content:
        return empty_store()
    try:
        store = json.loads(content)
    except json.JSONDecodeError as e:
        raise StorageUnavailableError(f"Object store {path} is corrupt: {e}") from e
    store.setdefault("version", 0)
    store.setdefault("entities", {})
    return store


def save_store(path: Path, store: Dict[str, Any]) -> None:
    """Write the store atomically: readers see the old or the new document, never half."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(store, f, indent=2, ensure_ascii=False, sort_keys=True)
        os.replace(tmp_path, path)
    except OSError as e:
        raise StorageUnavailableError(f"Cannot write object store {path}: {e}") from e


def diff_dict(old: Dict[str, Any], new: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    changed = {}
    keys = set(old.keys()) | set(new.keys())
    for k in keys:
        ov = old.get(k)
        nv = new.get(k)
        if ov != nv:
            changed[k] = {"old": ov, "new": nv}
    return changed
