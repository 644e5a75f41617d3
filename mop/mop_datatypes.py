"""
Defines the core data types for the MOP dispatch runtime.

This module provides the value types every other component works with:
signatures, the tagged Implementation variants, immutable method tables,
category frames, the explicit per-call context, and trace events.
"""

import enum
import inspect
import types
import typing
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union


# =================================================================
# Signatures
# =================================================================

def normalize_param_type(t: Any):
    """Turn a declared parameter type into a class or a tuple of classes (a union)."""
    if t is None or t is Any or t is inspect.Parameter.empty:
        return object
    if t is type(None):
        return t
    origin = typing.get_origin(t)
    if origin is Union or (hasattr(types, "UnionType") and isinstance(t, types.UnionType)):
        members = []
        for arg in typing.get_args(t):
            norm = normalize_param_type(arg)
            if isinstance(norm, tuple):
                members.extend(norm)
            else:
                members.append(norm)
        if object in members:
            return object
        return tuple(dict.fromkeys(members))
    if origin is not None and isinstance(origin, type):
        # Parametrized generics dispatch on their runtime class (list[int] -> list).
        return origin
    if isinstance(t, tuple):
        return normalize_param_type(Union[t]) if t else object
    if not isinstance(t, type):
        raise TypeError(f"Parameter type must be a class, got {t!r}")
    return t


class Signature:
    """Declared parameter types of one implementation, plus an optional variadic tail."""
    __slots__ = ("param_types", "rest")

    def __init__(self, param_types: Iterable[Any] = (), rest: Any = None):
        self.param_types: Tuple[Any, ...] = tuple(normalize_param_type(t) for t in param_types)
        self.rest = normalize_param_type(rest) if rest is not None else None

    @property
    def arity(self) -> int:
        return len(self.param_types)

    @property
    def is_variadic(self) -> bool:
        return self.rest is not None

    def key(self) -> tuple:
        return (self.arity, self.param_types, self.rest)

    def accepts_count(self, n: int) -> bool:
        if self.rest is None:
            return n == self.arity
        return n >= self.arity

    def types_for(self, n: int) -> Tuple[Any, ...]:
        """Parameter types lined up against n arguments."""
        if n <= self.arity:
            return self.param_types[:n]
        return self.param_types + (self.rest,) * (n - self.arity)

    def __eq__(self, other):
        if not isinstance(other, Signature):
            return NotImplemented
        return self.key() == other.key()

    def __hash__(self):
        return hash(self.key())

    def __repr__(self) -> str:
        from mop.mop_printer import Printer
        return f"Signature{Printer().format_signature_types(self)}"


def infer_signature(fn: Callable, skip_first: bool = True) -> Signature:
    """Build a Signature from a Python callable's parameters and annotations.

    The first positional parameter is the receiver (or the call context for
    closure-backed implementations) and does not take part in dispatch.
    """
    try:
        sig = inspect.signature(fn)
    except (TypeError, ValueError):
        # Builtins without introspectable signatures accept anything.
        return Signature((), rest=object)
    try:
        hints = typing.get_type_hints(fn)
    except (NameError, TypeError, AttributeError):
        hints = {}
    positional = []
    rest = None
    for p in sig.parameters.values():
        if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD):
            positional.append(p)
        elif p.kind is inspect.Parameter.VAR_POSITIONAL:
            rest = hints.get(p.name, p.annotation)
            if rest is inspect.Parameter.empty:
                rest = object
    if skip_first and positional:
        positional = positional[1:]
    param_types = []
    for p in positional:
        ann = hints.get(p.name, p.annotation)
        param_types.append(object if ann is inspect.Parameter.empty else ann)
    return Signature(param_types, rest=rest)


# =================================================================
# Implementations (tagged variant)
# =================================================================

class Implementation(ABC):
    """Abstract base class for everything a dispatch can end up invoking."""
    kind = "abstract"

    def __init__(self, signature: Signature, name: Optional[str] = None):
        self.signature = signature
        self.name = name

    @abstractmethod
    def invoke(self, ctx: "CallContext", args: List[Any]) -> Any:
        raise NotImplementedError

    def __repr__(self) -> str:
        from mop.mop_printer import Printer
        return f"<{type(self).__name__} {Printer().format_signature(self.name or '?', self.signature)}>"


class Native(Implementation):
    """A plain host callable, invoked as fn(receiver, *args)."""
    kind = "native"

    def __init__(self, fn: Callable, signature: Optional[Signature] = None, name: Optional[str] = None):
        if not callable(fn):
            raise TypeError(f"Native implementation must be callable, not {type(fn).__name__}")
        super().__init__(signature if signature is not None else infer_signature(fn), name or getattr(fn, "__name__", None))
        self.fn = fn

    def invoke(self, ctx, args):
        return self.fn(ctx.receiver, *args)


class ClosureBacked(Implementation):
    """A closure carrying a captured environment.

    The body is invoked as fn(ctx, *args): ``ctx.receiver`` and ``ctx.delegate``
    are the dispatch receiver and ``ctx.env`` is the captured environment.
    """
    kind = "closure"

    def __init__(self, fn: Callable, captured_env: Optional[Dict[str, Any]] = None,
                 signature: Optional[Signature] = None, name: Optional[str] = None):
        if not callable(fn):
            raise TypeError(f"Closure body must be callable, not {type(fn).__name__}")
        super().__init__(signature if signature is not None else infer_signature(fn), name or getattr(fn, "__name__", None))
        self.fn = fn
        self.captured_env: Dict[str, Any] = dict(captured_env or {})

    def invoke(self, ctx, args):
        return self.fn(ctx.for_closure(self.captured_env), *args)


class DelegatingTo(Implementation):
    """Forwards to another implementation, optionally under a different signature."""
    kind = "delegate"

    def __init__(self, target: Implementation, signature: Optional[Signature] = None, name: Optional[str] = None):
        if not isinstance(target, Implementation):
            raise TypeError("DelegatingTo expects an Implementation target")
        super().__init__(signature if signature is not None else target.signature, name or target.name)
        self.target = target

    def invoke(self, ctx, args):
        return self.target.invoke(ctx, args)


def as_implementation(impl: Any, param_types: Optional[Iterable[Any]] = None,
                      name: Optional[str] = None, rest: Any = None) -> Implementation:
    """Coerce a callable or Implementation into an Implementation with the declared types."""
    if isinstance(impl, Implementation):
        if param_types is None:
            return impl
        sig = Signature(param_types, rest=rest)
        if sig == impl.signature:
            return impl
        return DelegatingTo(impl, sig, name=name)
    sig = Signature(param_types, rest=rest) if param_types is not None else None
    return Native(impl, sig, name=name)


# =================================================================
# Hooks
# =================================================================

class HookKind(enum.Enum):
    METHOD_MISSING = "method-missing"
    PROPERTY_MISSING = "property-missing"
    # Full-interception overrides: when declared on a type, every call that
    # reaches the type table is routed through them.
    INVOKE_METHOD = "invoke-method"
    GET_PROPERTY = "get-property"
    SET_PROPERTY = "set-property"


# =================================================================
# Method tables
# =================================================================

MethodMap = Dict[str, Dict[Signature, Implementation]]
PropertyPair = Tuple[Optional[Callable], Optional[Callable]]


class MethodTable:
    """An immutable table of methods, properties, hooks and interceptors.

    Tables are never mutated in place; every ``with_*`` call returns a new
    table, so a reader holding a reference always sees a consistent view.
    """
    __slots__ = ("methods", "properties", "hooks", "interceptors", "owner", "version")

    def __init__(self, methods: Optional[MethodMap] = None,
                 properties: Optional[Dict[str, PropertyPair]] = None,
                 hooks: Optional[Dict[HookKind, Callable]] = None,
                 interceptors: Tuple[Any, ...] = (),
                 owner: Any = None, version: int = 0):
        self.methods: MethodMap = {n: dict(sigs) for n, sigs in (methods or {}).items() if sigs}
        self.properties: Dict[str, PropertyPair] = dict(properties or {})
        self.hooks: Dict[HookKind, Callable] = dict(hooks or {})
        self.interceptors: Tuple[Any, ...] = tuple(interceptors)
        self.owner = owner
        self.version = version

    @classmethod
    def fragment(cls, methods: Optional[Dict[str, Any]] = None,
                 properties: Optional[Dict[str, Any]] = None,
                 hooks: Optional[Dict[HookKind, Callable]] = None) -> "MethodTable":
        """Build a table from a friendly mapping.

        ``methods`` maps a name to a callable, an Implementation, or a list of
        them (overloads). Callables get their signature from their parameters.
        ``properties`` maps a name to a getter or a ``(getter, setter)`` pair.
        """
        table: MethodMap = {}
        for name, value in (methods or {}).items():
            impls = value if isinstance(value, (list, tuple)) else [value]
            bucket = table.setdefault(name, {})
            for v in impls:
                impl = as_implementation(v, name=name)
                bucket[impl.signature] = impl
        props: Dict[str, PropertyPair] = {}
        for name, value in (properties or {}).items():
            if isinstance(value, tuple):
                getter, setter = value
            else:
                getter, setter = value, None
            props[name] = (getter, setter)
        return cls(table, props, hooks)

    def _copy(self, **changes) -> "MethodTable":
        fields = {
            "methods": self.methods,
            "properties": self.properties,
            "hooks": self.hooks,
            "interceptors": self.interceptors,
            "owner": self.owner,
            "version": self.version,
        }
        fields.update(changes)
        return MethodTable(**fields)

    def candidates(self, name: str) -> Dict[Signature, Implementation]:
        return self.methods.get(name, {})

    def lookup_method(self, name: str, signature: Signature) -> Optional[Implementation]:
        return self.methods.get(name, {}).get(signature)

    def has_member(self, name: str) -> bool:
        return name in self.methods or name in self.properties

    def is_empty(self) -> bool:
        return not (self.methods or self.properties or self.hooks or self.interceptors)

    def with_method(self, name: str, impl: Implementation) -> "MethodTable":
        methods = dict(self.methods)
        bucket = dict(methods.get(name, {}))
        bucket[impl.signature] = impl
        methods[name] = bucket
        return self._copy(methods=methods)

    def without_method(self, name: str, signature: Signature) -> "MethodTable":
        if signature not in self.methods.get(name, {}):
            return self
        methods = dict(self.methods)
        bucket = dict(methods[name])
        del bucket[signature]
        if bucket:
            methods[name] = bucket
        else:
            del methods[name]
        return self._copy(methods=methods)

    def with_property(self, name: str, getter: Optional[Callable], setter: Optional[Callable]) -> "MethodTable":
        props = dict(self.properties)
        props[name] = (getter, setter)
        return self._copy(properties=props)

    def with_hook(self, kind: HookKind, fn: Optional[Callable]) -> "MethodTable":
        hooks = dict(self.hooks)
        if fn is None:
            hooks.pop(kind, None)
        else:
            hooks[kind] = fn
        return self._copy(hooks=hooks)

    def with_interceptors(self, interceptors: Iterable[Any]) -> "MethodTable":
        return self._copy(interceptors=tuple(interceptors))

    def overlay(self, top: "MethodTable") -> "MethodTable":
        """Merge ``top`` over this table; top wins per signature, property and hook."""
        methods = {n: dict(sigs) for n, sigs in self.methods.items()}
        for name, sigs in top.methods.items():
            methods.setdefault(name, {}).update(sigs)
        props = dict(self.properties)
        props.update(top.properties)
        hooks = dict(self.hooks)
        hooks.update(top.hooks)
        return self._copy(methods=methods, properties=props, hooks=hooks,
                          interceptors=self.interceptors + top.interceptors)

    def signatures(self) -> Iterable[Tuple[str, Signature]]:
        for name, sigs in self.methods.items():
            for sig in sigs:
                yield name, sig

    def __repr__(self) -> str:
        owner = getattr(self.owner, "__name__", self.owner)
        return (f"<MethodTable owner={owner!r} methods={sum(len(s) for s in self.methods.values())} "
                f"properties={len(self.properties)} hooks={[k.value for k in self.hooks]}>")


# =================================================================
# Categories
# =================================================================

class CategoryFrame:
    """An ordered list of (receiver-type constraint, table fragment) entries."""

    def __init__(self, entries: Optional[Iterable[Tuple[type, MethodTable]]] = None, name: Optional[str] = None):
        self.entries: List[Tuple[type, MethodTable]] = []
        self.name = name
        for receiver_type, fragment in entries or ():
            self.add(receiver_type, fragment)

    @classmethod
    def of(cls, receiver_type: type, methods: Optional[Dict[str, Any]] = None,
           properties: Optional[Dict[str, Any]] = None, name: Optional[str] = None) -> "CategoryFrame":
        frame = cls(name=name)
        frame.add(receiver_type, MethodTable.fragment(methods, properties))
        return frame

    @classmethod
    def from_class(cls, category: type) -> "CategoryFrame":
        """Build a frame from a class of static methods.

        Each public static method's first parameter is the receiver; its
        annotation (if any) is the receiver-type constraint.
        """
        frame = cls(name=category.__name__)
        grouped: Dict[Any, Dict[str, List[Implementation]]] = {}
        for attr, member in vars(category).items():
            if attr.startswith("_") or not isinstance(member, staticmethod):
                continue
            fn = member.__func__
            params = list(inspect.signature(fn).parameters.values())
            if not params:
                continue
            try:
                hints = typing.get_type_hints(fn)
            except (NameError, TypeError):
                hints = {}
            constraint = normalize_param_type(hints.get(params[0].name))
            grouped.setdefault(constraint, {}).setdefault(attr, []).append(Native(fn, name=attr))
        for constraint, methods in grouped.items():
            frame.add(constraint, MethodTable.fragment(methods))
        return frame

    def add(self, receiver_type: Any, fragment: Any) -> "CategoryFrame":
        if not isinstance(fragment, MethodTable):
            fragment = MethodTable.fragment(fragment)
        self.entries.append((normalize_param_type(receiver_type), fragment))
        return self

    def matching(self, receiver: Any) -> Iterable[Tuple[type, MethodTable]]:
        for constraint, fragment in self.entries:
            if isinstance(receiver, constraint):
                yield constraint, fragment

    def __repr__(self) -> str:
        return f"<CategoryFrame name={self.name!r} entries={len(self.entries)}>"


# =================================================================
# Call context
# =================================================================

class CallContext:
    """Explicit state for one call, passed down the dispatch chain.

    The receiver is fixed at construction; interceptors may rewrite ``args``
    and ``result`` but cannot swap the receiver.
    """
    __slots__ = ("_receiver", "name", "args", "is_property", "delegate", "env",
                 "resolution_mode", "layer", "frames", "result", "suppressed", "_proceed")

    def __init__(self, receiver: Any, name: str, args: Iterable[Any] = (), is_property: bool = False,
                 frames: Tuple[CategoryFrame, ...] = (), resolution_mode: str = "normal"):
        self._receiver = receiver
        self.name = name
        self.args: List[Any] = list(args)
        self.is_property = is_property
        self.delegate = receiver
        self.env: Dict[str, Any] = {}
        self.resolution_mode = resolution_mode
        self.layer: Optional[str] = None
        self.frames = tuple(frames)
        self.result: Any = None
        self.suppressed = False
        self._proceed: Optional[Callable] = None

    @property
    def receiver(self) -> Any:
        return self._receiver

    def proceed(self, args: Optional[Iterable[Any]] = None) -> Any:
        """Continue ordinary resolution from inside a full-interception override."""
        if self._proceed is None:
            from mop.mop_errors import MopError
            raise MopError(f"Nothing to proceed to for '{self.name}'")
        return self._proceed(list(args) if args is not None else list(self.args))

    def for_closure(self, env: Dict[str, Any]) -> "CallContext":
        child = CallContext(self._receiver, self.name, self.args, self.is_property,
                            self.frames, self.resolution_mode)
        child.delegate = self.delegate
        child.env = env
        child.layer = self.layer
        child._proceed = self._proceed
        return child

    def __repr__(self) -> str:
        return (f"<CallContext {type(self._receiver).__name__}.{self.name} argc={len(self.args)} "
                f"mode={self.resolution_mode} layer={self.layer}>")


# =================================================================
# Trace events
# =================================================================

class TraceKind(enum.Enum):
    CATEGORY_HIT = "category-hit"
    INSTANCE_OVERRIDE_HIT = "instance-override-hit"
    TYPE_TABLE_HIT = "type-table-hit"
    FULL_INTERCEPTION = "full-interception"
    HOOK_INVOKED = "hook-invoked"
    MISSING_MEMBER = "missing-member"
    INTERCEPTOR_INVOKED = "interceptor-invoked"
    MIXIN_CONFLICT = "mixin-conflict"


@dataclass
class TraceEvent:
    """One resolution step, as delivered to trace subscribers."""
    kind: TraceKind
    member_name: Optional[str]
    receiver_type: Optional[type] = None
    layer: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "member": self.member_name or "",
            "receiver_type": getattr(self.receiver_type, "__name__", "") if self.receiver_type else "",
            "layer": self.layer or "",
            "detail": {k: str(v) for k, v in self.detail.items()},
        }
