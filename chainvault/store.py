"""
Document Store - path-addressed, merge-based JSON tree

Realtime-database semantics the engines rely on:
- get(path)                 deep copy of the node, or None
- set(path, value)          overwrite; None deletes (empty parents are pruned)
- update(path, fields)      shallow merge; a None field deletes that key
- push(path, value) -> id   append under a fresh time-ordered key
- subscribe(path, cb)       cb(path, value) after any write at, above or below `path`

DocumentStore keeps everything in memory. JsonFileStore additionally writes the
whole tree to disk after every mutation (tempfile + os.replace, atomic on the
same filesystem) and restores it on start.

Mutations do not await between reading and writing the tree, so they are atomic
with respect to other coroutines.
"""

import copy
import inspect
import itertools
import json
import logging
import os
import tempfile
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Optional

logger = logging.getLogger("chainvault.store")

Subscriber = Callable[[str, Any], Any]


def _split(path: str) -> list[str]:
    parts = [p for p in path.strip("/").split("/") if p]
    if not parts:
        raise ValueError("empty store path")
    return parts


def _related(a: list[str], b: list[str]) -> bool:
    """True when one path is a prefix of the other."""
    n = min(len(a), len(b))
    return a[:n] == b[:n]


class DocumentStore:

    def __init__(self):
        self._root: dict = {}
        self._subscribers: dict[int, tuple[list[str], Subscriber]] = {}
        self._sub_ids = itertools.count(1)
        self._push_counter = itertools.count()

    # ============================================================
    # READS
    # ============================================================

    def _node(self, parts: list[str]) -> Any:
        node = self._root
        for part in parts:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    async def get(self, path: str) -> Any:
        return copy.deepcopy(self._node(_split(path)))

    async def children(self, path: str) -> dict:
        """Child nodes of a collection as {key: value}; {} when missing."""
        node = await self.get(path)
        return node if isinstance(node, dict) else {}

    # ============================================================
    # WRITES
    # ============================================================

    def _write(self, parts: list[str], value: Any):
        if value is None:
            self._delete(parts)
            return
        node = self._root
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = copy.deepcopy(value)

    def _delete(self, parts: list[str]):
        trail = [self._root]
        node = self._root
        for part in parts[:-1]:
            node = node.get(part) if isinstance(node, dict) else None
            if not isinstance(node, dict):
                return
            trail.append(node)
        node.pop(parts[-1], None)
        # Prune parents left empty
        for depth in range(len(parts) - 1, 0, -1):
            if trail[depth]:
                break
            trail[depth - 1].pop(parts[depth - 1], None)

    async def set(self, path: str, value: Any):
        parts = _split(path)
        self._write(parts, value)
        self._persist()
        await self._notify(parts)

    async def update(self, path: str, fields: dict):
        parts = _split(path)
        current = self._node(parts)
        merged = dict(current) if isinstance(current, dict) else {}
        for key, value in fields.items():
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = copy.deepcopy(value)
        self._write(parts, merged or None)
        self._persist()
        await self._notify(parts)

    async def push(self, path: str, value: Any) -> str:
        key = self.new_key()
        await self.set(f"{path.rstrip('/')}/{key}", value)
        return key

    async def remove(self, path: str):
        await self.set(path, None)

    def new_key(self) -> str:
        """Time-ordered unique key: sorts by creation time across restarts."""
        ms = int(time.time() * 1000)
        return f"{ms:011x}{next(self._push_counter) % 0xFFFF:04x}{uuid.uuid4().hex[:6]}"

    # ============================================================
    # SUBSCRIPTIONS
    # ============================================================

    def subscribe(self, path: str, callback: Subscriber) -> Callable[[], None]:
        """Register a change listener. Returns an unsubscribe function."""
        sub_id = next(self._sub_ids)
        self._subscribers[sub_id] = (_split(path), callback)

        def unsubscribe():
            self._subscribers.pop(sub_id, None)

        return unsubscribe

    async def _notify(self, changed: list[str]):
        for sub_parts, callback in list(self._subscribers.values()):
            if not _related(sub_parts, changed):
                continue
            sub_path = "/".join(sub_parts)
            try:
                result = callback(sub_path, copy.deepcopy(self._node(sub_parts)))
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Store subscriber for '{sub_path}' failed: {e}")

    def _persist(self):
        """Hook for durable subclasses."""


class JsonFileStore(DocumentStore):
    """DocumentStore persisted to a single JSON file."""

    def __init__(self, path: str = "data/store.json"):
        super().__init__()
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.load()

    def load(self) -> bool:
        """Restore the tree from disk. Returns False when no file exists yet."""
        if not self.path.exists():
            logger.info(f"No store file at {self.path}: starting empty")
            return False
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        self._root = data if isinstance(data, dict) else {}
        logger.info(f"Store restored from {self.path} ({len(self._root)} collections)")
        return True

    def _persist(self):
        # ATOMIC WRITE: write to temp file, then rename.
        tmp_fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp", prefix="store_")
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                json.dump(self._root, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, str(self.path))
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            logger.error(f"Failed to persist store to {self.path}")
            raise


def open_store(path: Optional[str]) -> DocumentStore:
    """JsonFileStore when a path is given, in-memory otherwise."""
    return JsonFileStore(path) if path else DocumentStore()
