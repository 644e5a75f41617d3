"""
The type registry: one lazily created method table per type.

Each type owns three layers (native, mixin, dynamic). The effective table
is the three overlaid (dynamic > mixin > native) and published as an
immutable snapshot. Readers grab the current snapshot without locking;
writers take the type's lock, replace a layer and publish a new snapshot
with a single attribute assignment.
"""

import inspect
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from mop.mop_datatypes import (
    MethodTable, Signature, Implementation, HookKind,
    as_implementation,
)
from mop.mop_errors import RegistrationConflictError


class TypeSlot:
    """Mutable bookkeeping for one type. Only touched under ``lock``."""
    __slots__ = ("owner", "lock", "native", "mixin", "dynamic", "interceptors", "version", "snapshot")

    def __init__(self, owner: type):
        self.owner = owner
        self.lock = threading.RLock()
        self.native = MethodTable(owner=owner)
        self.mixin = MethodTable(owner=owner)
        self.dynamic = MethodTable(owner=owner)
        self.interceptors: Tuple[Any, ...] = ()
        self.version = 0
        self.snapshot = MethodTable(owner=owner)

    def publish(self):
        self.version += 1
        merged = self.native.overlay(self.mixin).overlay(self.dynamic)
        # Single reference swap; in-flight readers keep the table they already hold.
        self.snapshot = MethodTable(merged.methods, merged.properties, merged.hooks,
                                    self.interceptors, owner=self.owner, version=self.version)


class TypeRegistry:
    """Per-type method tables. Construct one per isolated runtime."""

    def __init__(self):
        self._slots: Dict[type, TypeSlot] = {}
        self._create_lock = threading.Lock()

    def _slot(self, owner: type) -> TypeSlot:
        if not isinstance(owner, type):
            raise TypeError(f"Registry keys must be classes, not {type(owner).__name__}")
        slot = self._slots.get(owner)
        if slot is None:
            with self._create_lock:
                slot = self._slots.get(owner)
                if slot is None:
                    slot = TypeSlot(owner)
                    self._slots[owner] = slot
        return slot

    @contextmanager
    def writing(self, owner: type) -> Iterator[TypeSlot]:
        """Hold the type's write lock; publish a new snapshot if the body succeeds."""
        slot = self._slot(owner)
        with slot.lock:
            yield slot
            slot.publish()

    # --- Reads ---

    def lookup(self, owner: type) -> MethodTable:
        """Current effective table for ``owner``; an empty table for unknown types."""
        return self._slot(owner).snapshot

    def chain(self, cls: type) -> List[Tuple[type, MethodTable]]:
        """(type, table) pairs along the MRO, most derived first."""
        return [(c, self.lookup(c)) for c in cls.__mro__]

    # --- Writes ---

    def register(self, owner: type, name: str, param_types: Optional[Iterable[Any]], impl: Any,
                 allow_overwrite: bool = False) -> Implementation:
        """Registers a native implementation. Identical signatures conflict unless allow_overwrite."""
        implementation = as_implementation(impl, param_types, name=name)
        with self.writing(owner) as slot:
            existing = slot.native.lookup_method(name, implementation.signature)
            if existing is not None and not allow_overwrite:
                raise RegistrationConflictError(owner, name, implementation.signature)
            slot.native = slot.native.with_method(name, implementation)
        return implementation

    def add_dynamic(self, owner: type, name: str, param_types: Optional[Iterable[Any]], impl: Any) -> Implementation:
        """Adds a method to the dynamic layer, shadowing native and mixed-in entries."""
        implementation = as_implementation(impl, param_types, name=name)
        with self.writing(owner) as slot:
            slot.dynamic = slot.dynamic.with_method(name, implementation)
        return implementation

    def remove_dynamic(self, owner: type, name: str, param_types: Optional[Iterable[Any]], rest: Any = None) -> bool:
        signature = Signature(param_types or (), rest=rest)
        with self.writing(owner) as slot:
            if slot.dynamic.lookup_method(name, signature) is None:
                return False
            slot.dynamic = slot.dynamic.without_method(name, signature)
        return True

    def set_property(self, owner: type, name: str, getter: Optional[Callable] = None,
                     setter: Optional[Callable] = None, dynamic: bool = False):
        with self.writing(owner) as slot:
            if dynamic:
                slot.dynamic = slot.dynamic.with_property(name, getter, setter)
            else:
                slot.native = slot.native.with_property(name, getter, setter)

    def set_hook(self, owner: type, kind: HookKind, fn: Optional[Callable]):
        if not isinstance(kind, HookKind):
            kind = HookKind(kind)
        with self.writing(owner) as slot:
            slot.dynamic = slot.dynamic.with_hook(kind, fn)

    def merge_mixin(self, owner: type, fragment: MethodTable,
                    on_conflict: Callable[[str, Optional[Signature], str], None]) -> int:
        """Overlay ``fragment`` onto the mixin layer in one snapshot swap.

        ``on_conflict(name, signature, kind)`` is called for every entry that
        replaces a native or earlier mixin entry on ``owner``. Entries still
        shadowed by the dynamic layer replace nothing visible and are not
        reported. Returns the new version.
        """
        with self.writing(owner) as slot:
            before = slot.native.overlay(slot.mixin)
            dynamic = slot.dynamic
            for name, sig in fragment.signatures():
                if before.lookup_method(name, sig) is not None and dynamic.lookup_method(name, sig) is None:
                    on_conflict(name, sig, "method")
            for name in fragment.properties:
                if name in before.properties and name not in dynamic.properties:
                    on_conflict(name, None, "property")
            for kind in fragment.hooks:
                if kind in before.hooks and kind not in dynamic.hooks:
                    on_conflict(kind.value, None, "hook")
            slot.mixin = slot.mixin.overlay(fragment)
        return slot.version

    def register_class(self, cls: type, target: Optional[type] = None, allow_overwrite: bool = False) -> List[str]:
        """Registers the public functions and properties defined on ``cls``.

        Parameter types come from annotations; unannotated parameters accept
        anything. Returns the registered member names.
        """
        owner = target or cls
        names = []
        for attr, member in vars(cls).items():
            if attr.startswith("_"):
                continue
            if isinstance(member, property):
                self.set_property(owner, attr, member.fget, member.fset)
                names.append(attr)
            elif inspect.isfunction(member):
                self.register(owner, attr, None, as_implementation(member, name=attr), allow_overwrite=allow_overwrite)
                names.append(attr)
        return names

    def version(self, owner: type) -> int:
        return self._slot(owner).snapshot.version
