from __future__ import annotations

import hashlib
import json
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any


def canonical_json(obj: Any) -> str:
    # stable serialization for hashing and stored payloads
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def stable_id(prefix: str, *parts: Any, length: int = 16) -> str:
    """
    Deterministic id derived from its parts.
    - Same parts, same id (idempotent writes keyed on it).
    - Any part changes, id changes.
    """
    s = canonical_json([str(p) for p in parts]).encode("utf-8")
    h = hashlib.sha1(s).hexdigest()
    return f"{prefix}_{h[:length]}"


def new_instance_id(length: int = 12) -> str:
    return uuid.uuid4().hex[:length]


@dataclass(slots=True)
class IdsService:
    """
    Monotonic ids scoped to one engine instance: "<prefix>_<instance>_<n>".
    Safe to call from concurrent ingestion threads.
    """

    instance_id: str = field(default_factory=new_instance_id)
    _counters: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def next_id(self, prefix: str) -> str:
        with self._lock:
            n = self._counters.get(prefix, 0) + 1
            self._counters[prefix] = n
        return f"{prefix}_{self.instance_id}_{n:08d}"
