"""
Permanent mixins: fold one type's methods into another's.

A mixin copies the source's effective entries (its whole class chain,
``object`` excluded) at install time. Later installs win on collisions, and
each collision is reported as a MixinConflictWarning through the trace hook.
There is no unmerge.
"""

import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Tuple

from mop.mop_datatypes import MethodTable
from mop.mop_errors import MixinConflictWarning
from mop.mop_registry import TypeRegistry


@dataclass(frozen=True)
class MixinRecord:
    """One applied mixin: where it came from and what was copied."""
    source: type
    table: MethodTable
    version: int


class MixinMerger:
    def __init__(self, registry: TypeRegistry, report: Callable[[MixinConflictWarning], None]):
        self.registry = registry
        self._report = report
        self._records: Dict[type, List[MixinRecord]] = {}
        self._records_lock = threading.Lock()

    def _flatten(self, source: type) -> MethodTable:
        merged = MethodTable(owner=source)
        # Least derived first so the most derived definition wins the overlay.
        for cls in reversed(source.__mro__):
            if cls is object:
                continue
            merged = merged.overlay(self.registry.lookup(cls))
        return merged.with_interceptors(())

    def install_mixin(self, target: type, source: type) -> MixinRecord:
        if not isinstance(target, type) or not isinstance(source, type):
            raise TypeError("install_mixin expects (type, type)")
        if target is source:
            raise ValueError(f"Cannot mix {source.__name__} into itself")
        fragment = self._flatten(source)
        conflicts: List[MixinConflictWarning] = []

        def on_conflict(name, signature, kind):
            conflicts.append(MixinConflictWarning(target, source, name, signature, kind))

        version = self.registry.merge_mixin(target, fragment, on_conflict)
        record = MixinRecord(source, fragment, version)
        with self._records_lock:
            self._records.setdefault(target, []).append(record)
        # Reported after the write lock is released; listeners may dispatch.
        for warning in conflicts:
            self._report(warning)
        return record

    def records(self, target: type) -> Tuple[MixinRecord, ...]:
        with self._records_lock:
            return tuple(self._records.get(target, ()))

    def mixins_of(self, target: type) -> Tuple[type, ...]:
        return tuple(r.source for r in self.records(target))
