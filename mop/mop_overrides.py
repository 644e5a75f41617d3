"""
Per-object method tables that shadow the type-level table.

Entries are keyed by object identity and held through a weak reference, so
an override never keeps its object alive; a weakref callback drops the entry
when the object is collected. Writes are serialized per key through a set of
striped locks; reads take no lock at all.
"""

import threading
import weakref
from typing import Any, Callable, Dict, List, Optional, Tuple

from mop.mop_datatypes import MethodTable


class InstanceOverrideStore:
    """A concurrent weak map from object identity to a MethodTable fragment."""

    def __init__(self, stripes: int = 64):
        if stripes < 1:
            raise ValueError("stripes must be at least 1")
        self._entries: Dict[int, Tuple[weakref.ref, MethodTable]] = {}
        # Re-entrant: a weakref callback can fire on this thread while a stripe is held.
        self._locks: List[threading.RLock] = [threading.RLock() for _ in range(stripes)]

    def _lock_for(self, key: int) -> threading.RLock:
        # Object ids are aligned addresses; drop the low bits before striping.
        return self._locks[(key >> 4) % len(self._locks)]

    def _reaper(self, key: int) -> Callable[[weakref.ref], None]:
        def reap(ref):
            with self._lock_for(key):
                entry = self._entries.get(key)
                if entry is not None and entry[0] is ref:
                    del self._entries[key]
        return reap

    def get_override(self, obj: Any) -> Optional[MethodTable]:
        entry = self._entries.get(id(obj))
        if entry is None:
            return None
        ref, table = entry
        # Guards against a stale entry whose id has been recycled.
        if ref() is not obj:
            return None
        return table

    def set_override(self, obj: Any, fragment: MethodTable):
        if not isinstance(fragment, MethodTable):
            fragment = MethodTable.fragment(fragment)
        key = id(obj)
        with self._lock_for(key):
            self._store(obj, key, fragment)

    def _store(self, obj: Any, key: int, fragment: MethodTable):
        entry = self._entries.get(key)
        if entry is not None and entry[0]() is obj:
            ref = entry[0]
        else:
            try:
                ref = weakref.ref(obj, self._reaper(key))
            except TypeError:
                raise TypeError(
                    f"Per-instance overrides need weakly referenceable objects; "
                    f"{type(obj).__name__} does not support weak references"
                ) from None
        self._entries[key] = (ref, fragment)

    def update(self, obj: Any, fn: Callable[[MethodTable], MethodTable]) -> MethodTable:
        """Atomically replace the object's fragment with ``fn(current)``."""
        key = id(obj)
        with self._lock_for(key):
            current = self.get_override(obj) or MethodTable(owner=type(obj))
            new = fn(current)
            self._store(obj, key, new)
        return new

    def discard(self, obj: Any) -> bool:
        key = id(obj)
        with self._lock_for(key):
            entry = self._entries.get(key)
            if entry is None or entry[0]() is not obj:
                return False
            del self._entries[key]
        return True

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, obj: Any) -> bool:
        return self.get_override(obj) is not None
