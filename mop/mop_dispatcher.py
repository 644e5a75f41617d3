"""
The dispatcher: resolves a call descriptor to one implementation and runs it.

Resolution order, highest priority first:

  1. category frames on this thread, most recent first;
  2. the receiver's per-instance override fragment;
  3. the type tables along ``type(receiver).__mro__`` (mixins included),
     unless the chain declares a full-interception override, which then
     takes every call that gets this far;
  4. method-missing / property-missing hooks, searched in the same order;
  5. MissingMemberError.

A miss at any single step falls through to the next one. Overloads found
at a step are ranked by the runtime types of all arguments.
"""

import inspect
import sys
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Literal, Mapping, Optional, Sequence, Tuple, Union

from mop.mop_categories import CategoryStack
from mop.mop_config import DispatchConfig
from mop.mop_datatypes import (
    CallContext, CategoryFrame, HookKind, Implementation, MethodTable, Signature,
    TraceEvent, TraceKind, as_implementation, normalize_param_type,
)
from mop.mop_errors import (
    AmbiguousDispatchError, MissingMemberError, MixinConflictWarning, MopError,
)
from mop.mop_interceptors import Interceptor, InterceptorManager, run_intercepted
from mop.mop_mixins import MixinMerger, MixinRecord
from mop.mop_overrides import InstanceOverrideStore
from mop.mop_printer import Printer
from mop.mop_registry import TypeRegistry


# =================================================================
# Multimethod ranking
# =================================================================

def param_distance(param: Any, actual: type) -> Optional[Tuple[int, int]]:
    """How far ``actual`` is from a declared parameter type; None if not assignable.

    Lower is more specific: exact type, then a nominal base class (by MRO
    position), then a virtual base such as a registered ABC (deeper ABCs
    first), then ``object``.
    """
    if isinstance(param, tuple):
        best = None
        for member in param:
            d = param_distance(member, actual)
            if d is not None and (best is None or d < best):
                best = d
        return best
    if param is object:
        return (3, 0)
    if param is actual:
        return (0, 0)
    mro = actual.__mro__
    if param in mro:
        return (1, mro.index(param))
    try:
        assignable = issubclass(actual, param)
    except TypeError:
        return None
    if assignable:
        return (2, -len(param.__mro__))
    return None


def rank_signature(signature: Signature, arg_types: Sequence[type]) -> Optional[tuple]:
    """Per-argument distance vector, compared left to right; None if not applicable."""
    if not signature.accepts_count(len(arg_types)):
        return None
    vector = []
    for param, actual in zip(signature.types_for(len(arg_types)), arg_types):
        d = param_distance(param, actual)
        if d is None:
            return None
        vector.append(d)
    return tuple(vector)


def _hint_class(hint: Any) -> type:
    """The class a static hint names; ``Optional[X]`` names ``X``."""
    norm = normalize_param_type(hint)
    if isinstance(norm, tuple):
        members = [m for m in norm if m is not type(None)]
        if len(members) != 1:
            raise TypeError(f"Static hint must name a single class, got {hint!r}")
        norm = members[0]
    return norm


def select_overloads(candidates: Mapping[Signature, Any], arg_types: Sequence[type]) -> List[Any]:
    """The most specific applicable candidates; more than one means a tie.

    Exact-arity signatures are tried before variadic ones.
    """
    exact = [(s, c) for s, c in candidates.items() if not s.is_variadic]
    variadic = [(s, c) for s, c in candidates.items() if s.is_variadic]
    for tier in (exact, variadic):
        scored = []
        for sig, cand in tier:
            r = rank_signature(sig, arg_types)
            if r is not None:
                scored.append((r, cand))
        if scored:
            best = min(r for r, _ in scored)
            return [c for r, c in scored if r == best]
    return []


# =================================================================
# Results
# =================================================================

@dataclass
class DispatchOutcome:
    """The structured result of ``try_dispatch``."""
    status: Literal['success', 'error']
    value: Any = None
    error: Optional[MopError] = None

    def format_error(self) -> str:
        if self.status != 'error':
            return ""
        return str(self.error or "Unknown error")


class _Hit:
    """A resolved target: which layer won, and how to run it."""
    __slots__ = ("layer", "owner", "implementation", "invoke")

    def __init__(self, layer: str, owner: Any, implementation: Optional[Implementation],
                 invoke: Callable[[List[Any]], Any]):
        self.layer = layer
        self.owner = owner
        self.implementation = implementation
        self.invoke = invoke


_FULL_INTERCEPTION = {
    "method": HookKind.INVOKE_METHOD,
    "get": HookKind.GET_PROPERTY,
    "set": HookKind.SET_PROPERTY,
}


# =================================================================
# Dispatcher
# =================================================================

class Dispatcher:
    """Resolves and invokes member access through the meta-object layers."""

    def __init__(self, registry: Optional[TypeRegistry] = None,
                 overrides: Optional[InstanceOverrideStore] = None,
                 categories: Optional[CategoryStack] = None,
                 config: Optional[DispatchConfig] = None):
        self.config = config if config is not None else DispatchConfig.from_env()
        self.registry = registry if registry is not None else TypeRegistry()
        self.overrides = overrides if overrides is not None else InstanceOverrideStore(self.config.instance_lock_stripes)
        self.categories = categories if categories is not None else CategoryStack(on_unwind=self._on_category_unwind)
        self.mixins = MixinMerger(self.registry, self._report_mixin_conflict)
        self.interceptors = InterceptorManager(self.registry, self.overrides)
        self.printer = Printer()
        self._listeners: Tuple[Callable[[TraceEvent], None], ...] = ()
        self._listeners_lock = threading.Lock()

    # --- Diagnostics ---

    def _dbg(self, *parts):
        if self.config.debug:
            print("[DBG]", *parts, file=sys.stderr)

    def subscribe(self, listener: Callable[[TraceEvent], None]):
        with self._listeners_lock:
            self._listeners = self._listeners + (listener,)
        return listener

    def unsubscribe(self, listener: Callable[[TraceEvent], None]) -> bool:
        with self._listeners_lock:
            kept = tuple(l for l in self._listeners if l is not listener)
            removed = len(kept) != len(self._listeners)
            self._listeners = kept
        return removed

    def _tracing(self) -> bool:
        return bool(self._listeners) or self.config.trace

    def _emit(self, kind: TraceKind, ctx: Optional[CallContext], layer: Optional[str] = None, **detail):
        if not self._tracing():
            return
        event = TraceEvent(kind, ctx.name if ctx else detail.pop("member_name", None),
                           type(ctx.receiver) if ctx else detail.pop("receiver_type", None),
                           layer, detail)
        if self.config.trace:
            print(self.printer.render_event(event, self.config.trace_template), file=sys.stderr)
        for listener in self._listeners:
            listener(event)

    def _report_mixin_conflict(self, warning: MixinConflictWarning):
        self._dbg("mixin conflict", str(warning))
        self._emit(TraceKind.MIXIN_CONFLICT, None, "mixin",
                   member_name=warning.member_name, receiver_type=warning.target,
                   warning=warning, source=warning.source.__name__)

    def _on_category_unwind(self, leaked: int):
        self._dbg("category scope exit dropped", leaked, "unpopped frame(s)")

    # --- Registration API ---

    def register_native_method(self, owner: type, name: str, param_types: Optional[Iterable[Any]], impl: Any,
                               allow_overwrite: bool = False) -> Implementation:
        return self.registry.register(owner, name, param_types, impl, allow_overwrite=allow_overwrite)

    def register_class(self, cls: type, allow_overwrite: bool = False) -> List[str]:
        return self.registry.register_class(cls, allow_overwrite=allow_overwrite)

    def add_dynamic_method(self, target: Any, name: str, param_types: Optional[Iterable[Any]], impl: Any) -> Implementation:
        """Adds a method to a type's dynamic layer or to one object's override fragment."""
        if isinstance(target, type):
            return self.registry.add_dynamic(target, name, param_types, impl)
        implementation = as_implementation(impl, param_types, name=name)
        self.overrides.update(target, lambda t: t.with_method(name, implementation))
        return implementation

    def remove_dynamic_method(self, target: Any, name: str, param_types: Optional[Iterable[Any]], rest: Any = None) -> bool:
        if isinstance(target, type):
            return self.registry.remove_dynamic(target, name, param_types, rest=rest)
        signature = Signature(param_types or (), rest=rest)
        current = self.overrides.get_override(target)
        if current is None or current.lookup_method(name, signature) is None:
            return False
        self.overrides.update(target, lambda t: t.without_method(name, signature))
        return True

    def add_property(self, target: Any, name: str, getter: Optional[Callable] = None,
                     setter: Optional[Callable] = None):
        if isinstance(target, type):
            self.registry.set_property(target, name, getter, setter, dynamic=True)
        else:
            self.overrides.update(target, lambda t: t.with_property(name, getter, setter))

    def set_hook(self, target: Any, kind: Union[HookKind, str], impl: Optional[Callable]):
        """Installs (or with ``impl=None`` clears) a missing-member or full-interception hook.

        Missing hooks are called as ``hook(receiver, name, args)`` with the
        argument values as a list. Full-interception hooks get a ``CallContext``
        first: ``fn(ctx, name, args)`` for methods, ``fn(ctx, name)`` for
        property reads and ``fn(ctx, name, value)`` for writes. They reach the
        normal chain through ``ctx.proceed()``.
        """
        kind = kind if isinstance(kind, HookKind) else HookKind(kind)
        if isinstance(target, type):
            self.registry.set_hook(target, kind, impl)
        else:
            self.overrides.update(target, lambda t: t.with_hook(kind, impl))

    def set_override(self, target: Any, fragment: Union[MethodTable, Mapping[str, Any]]):
        self.overrides.set_override(target, fragment)

    def install_mixin(self, target: type, source: type) -> MixinRecord:
        return self.mixins.install_mixin(target, source)

    def describe(self, owner: type) -> str:
        return self.printer.pformat_table(self.registry.lookup(owner))

    # --- Categories ---

    def push_category(self, frame: CategoryFrame) -> int:
        return self.categories.push(frame)

    def pop_category(self, depth: Optional[int] = None) -> CategoryFrame:
        return self.categories.pop(depth)

    def use_category(self, frame: CategoryFrame):
        return self.categories.use(frame)

    # --- Interceptors ---

    def install_interceptor(self, target: Any, interceptor: Interceptor):
        self.interceptors.install(target, interceptor)

    def uninstall_interceptor(self, target: Any, interceptor: Optional[Interceptor] = None) -> bool:
        return self.interceptors.uninstall(target, interceptor)

    def interceptor_scope(self, target: Any, interceptor: Interceptor):
        return self.interceptors.scoped(target, interceptor)

    def with_interceptor(self, target: Any, interceptor: Interceptor, fn: Callable, *args, **kwargs):
        return self.interceptors.with_interceptor(target, interceptor, fn, *args, **kwargs)

    # --- Dispatch ---

    def dispatch(self, receiver: Any, name: str, args: Iterable[Any] = (), is_property: bool = False,
                 static_hints: Optional[Union[Sequence[Any], Mapping[int, Any]]] = None,
                 frames: Optional[Iterable[CategoryFrame]] = None) -> Any:
        """Resolves ``receiver.name(*args)`` (or a property read/write) and returns its result.

        ``frames`` replaces this thread's category stack for the call, for work
        that runs away from the thread that pushed the categories.
        """
        active = tuple(frames) if frames is not None else self.categories.frames()
        ctx = CallContext(receiver, name, args, is_property, frames=active)
        if is_property and len(ctx.args) > 1:
            raise TypeError(f"Property access takes at most one argument, got {len(ctx.args)}")
        arg_types = self._arg_types(ctx.args, static_hints)
        instance_table = self.overrides.get_override(receiver)
        chain = self.registry.chain(type(receiver))
        trail: List[str] = []

        hit = self._resolve(ctx, arg_types, trail, instance_table, chain, static_hints)
        ctx.layer = hit.layer
        self._dbg("dispatch", f"{type(receiver).__name__}.{name}", "argc", len(ctx.args), "->", hit.layer)

        interceptors = (instance_table.interceptors if instance_table is not None else ()) + \
            tuple(i for _, table in chain for i in table.interceptors)
        if not interceptors:
            return hit.invoke(ctx.args)
        return run_intercepted(interceptors, ctx, hit.invoke, self._interceptor_entered(ctx))

    async def adispatch(self, receiver: Any, name: str, args: Iterable[Any] = (), is_property: bool = False,
                        static_hints=None, frames: Optional[Iterable[CategoryFrame]] = None) -> Any:
        """Async variant of ``dispatch``: awaitable results are awaited.

        Resolution is synchronous and uses the category frames active when the
        call starts (or ``frames``). Coroutine bodies run after that point, so
        nested dispatches from them should pass ``ctx.frames`` explicitly.
        """
        result = self.dispatch(receiver, name, args, is_property, static_hints, frames)
        if inspect.isawaitable(result):
            return await result
        return result

    def try_dispatch(self, receiver: Any, name: str, args: Iterable[Any] = (), is_property: bool = False,
                     static_hints=None) -> DispatchOutcome:
        try:
            value = self.dispatch(receiver, name, args, is_property, static_hints)
        except MopError as e:
            return DispatchOutcome('error', error=e)
        return DispatchOutcome('success', value)

    def get_property(self, receiver: Any, name: str) -> Any:
        return self.dispatch(receiver, name, (), is_property=True)

    def set_property(self, receiver: Any, name: str, value: Any) -> Any:
        return self.dispatch(receiver, name, (value,), is_property=True)

    def respond_to(self, receiver: Any, name: str, args: Iterable[Any] = (),
                   static_hints=None) -> Optional[Implementation]:
        """The implementation a method call would select, without invoking it.

        Hooks and full-interception overrides are not considered.
        """
        ctx = CallContext(receiver, name, args, frames=self.categories.frames())
        arg_types = self._arg_types(ctx.args, static_hints)
        hit = self._find_explicit(ctx, arg_types, [], self.overrides.get_override(receiver),
                                  self.registry.chain(type(receiver)), emit=False)
        return hit.implementation if hit is not None else None

    def has_property(self, receiver: Any, name: str) -> bool:
        ctx = CallContext(receiver, name, (), is_property=True, frames=self.categories.frames())
        hit = self._find_explicit(ctx, [], [], self.overrides.get_override(receiver),
                                  self.registry.chain(type(receiver)), emit=False)
        return hit is not None

    def bind(self, receiver: Any) -> "MetaView":
        return MetaView(self, receiver)

    # --- Resolution ---

    def _arg_types(self, args: Sequence[Any], static_hints) -> List[type]:
        types = [type(a) for a in args]
        if not static_hints or not self.config.use_static_hints:
            return types
        hints = static_hints.items() if isinstance(static_hints, Mapping) else enumerate(static_hints)
        for i, hint in hints:
            # Runtime types always win; a hint only names the type of a None.
            if hint is not None and i < len(args) and args[i] is None:
                types[i] = _hint_class(hint)
        return types

    def _access(self, ctx: CallContext) -> str:
        if not ctx.is_property:
            return "method"
        return "set" if ctx.args else "get"

    def _resolve(self, ctx, arg_types, trail, instance_table, chain, static_hints) -> _Hit:
        hit = self._find_before_type(ctx, arg_types, trail, instance_table, emit=True)
        if hit is not None:
            return hit
        override = self._full_interception(ctx, chain)
        if override is not None:
            return self._route_full_interception(ctx, override, trail, instance_table, chain, static_hints)
        return self._resolve_type_and_hooks(ctx, arg_types, trail, instance_table, chain)

    def _find_explicit(self, ctx, arg_types, trail, instance_table, chain, emit) -> Optional[_Hit]:
        hit = self._find_before_type(ctx, arg_types, trail, instance_table, emit)
        if hit is not None:
            return hit
        return self._match_chain(ctx, arg_types, trail, chain, emit)

    def _find_before_type(self, ctx, arg_types, trail, instance_table, emit) -> Optional[_Hit]:
        receiver = ctx.receiver
        for depth in range(len(ctx.frames) - 1, -1, -1):
            frame = ctx.frames[depth]
            label = f"category:{frame.name or depth}"
            for constraint, fragment in frame.matching(receiver):
                trail.append(label)
                hit = self._match_table(ctx, fragment, arg_types, trail, label, constraint)
                if hit is not None:
                    if emit:
                        self._emit(TraceKind.CATEGORY_HIT, ctx, label,
                                   constraint=self.printer.type_name(constraint))
                    return hit
        if instance_table is not None:
            trail.append("instance")
            hit = self._match_table(ctx, instance_table, arg_types, trail, "instance", receiver)
            if hit is not None:
                if emit:
                    self._emit(TraceKind.INSTANCE_OVERRIDE_HIT, ctx, "instance")
                return hit
        return None

    def _match_table(self, ctx, table: MethodTable, arg_types, trail, layer, owner) -> Optional[_Hit]:
        access = self._access(ctx)
        if access != "method":
            pair = table.properties.get(ctx.name)
            if pair is None:
                return None
            return self._property_hit(ctx, pair, access, layer, owner)
        candidates = table.candidates(ctx.name)
        if not candidates:
            return None
        return self._method_hit(ctx, candidates, arg_types, trail, layer, owner)

    def _method_hit(self, ctx, candidates, arg_types, trail, layer, owner) -> Optional[_Hit]:
        winners = select_overloads(candidates, arg_types)
        if not winners:
            return None
        if len(winners) > 1:
            impls = [w[1] if isinstance(w, tuple) else w for w in winners]
            raise AmbiguousDispatchError(ctx.name, type(ctx.receiver), arg_types, trail, impls)
        winner = winners[0]
        if isinstance(winner, tuple):
            owner, impl = winner
        else:
            impl = winner
        return _Hit(layer, owner, impl, lambda args: impl.invoke(ctx, args))

    def _property_hit(self, ctx, pair, access, layer, owner) -> Optional[_Hit]:
        getter, setter = pair
        receiver = ctx.receiver
        if access == "get":
            if getter is None:
                return None
            return _Hit(layer, owner, None, lambda args: getter(receiver))
        if setter is None:
            return None
        return _Hit(layer, owner, None, lambda args: setter(receiver, args[0]))

    def _match_chain(self, ctx, arg_types, trail, chain, emit) -> Optional[_Hit]:
        access = self._access(ctx)
        hit = None
        if access == "method":
            # A signature defined on a more derived class shadows the same one further up.
            merged: Dict[Signature, Tuple[type, Implementation]] = {}
            for cls, table in chain:
                trail.append(f"type:{cls.__name__}")
                for sig, impl in table.candidates(ctx.name).items():
                    merged.setdefault(sig, (cls, impl))
            if merged:
                hit = self._method_hit(ctx, merged, arg_types, trail, "type", None)
        else:
            for cls, table in chain:
                trail.append(f"type:{cls.__name__}")
                pair = table.properties.get(ctx.name)
                if pair is None:
                    continue
                hit = self._property_hit(ctx, pair, access, "type", cls)
                if hit is not None:
                    break
        if hit is not None and emit:
            self._emit(TraceKind.TYPE_TABLE_HIT, ctx, "type", owner=getattr(hit.owner, "__name__", hit.owner))
        return hit

    def _full_interception(self, ctx, chain) -> Optional[Tuple[type, Callable]]:
        kind = _FULL_INTERCEPTION[self._access(ctx)]
        for cls, table in chain:
            fn = table.hooks.get(kind)
            if fn is not None:
                return cls, fn
        return None

    def _route_full_interception(self, ctx, override, trail, instance_table, chain, static_hints) -> _Hit:
        owner, fn = override
        access = self._access(ctx)
        kind = _FULL_INTERCEPTION[access]
        trail.append(f"{kind.value}:{owner.__name__}")
        self._emit(TraceKind.FULL_INTERCEPTION, ctx, kind.value, owner=owner.__name__)

        def proceed(new_args):
            sub = CallContext(ctx.receiver, ctx.name, new_args, ctx.is_property, ctx.frames, resolution_mode="proceed")
            sub_types = self._arg_types(sub.args, static_hints)
            hit = self._resolve_type_and_hooks(sub, sub_types, list(trail), instance_table, chain)
            return hit.invoke(sub.args)

        ctx._proceed = proceed
        ctx.resolution_mode = "full-interception"
        name = ctx.name
        if access == "method":
            invoke = lambda args: fn(ctx, name, list(args))
        elif access == "get":
            invoke = lambda args: fn(ctx, name)
        else:
            invoke = lambda args: fn(ctx, name, args[0])
        return _Hit("full-interception", owner, None, invoke)

    def _resolve_type_and_hooks(self, ctx, arg_types, trail, instance_table, chain) -> _Hit:
        hit = self._match_chain(ctx, arg_types, trail, chain, emit=True)
        if hit is not None:
            return hit
        hit = self._find_missing_hook(ctx, trail, instance_table, chain)
        if hit is not None:
            return hit
        self._emit(TraceKind.MISSING_MEMBER, ctx, None, trail=" -> ".join(trail))
        self._dbg("missing member", ctx.name, "on", type(ctx.receiver).__name__, "trail", trail)
        raise MissingMemberError(ctx.name, type(ctx.receiver), arg_types, trail, is_property=ctx.is_property)

    def _find_missing_hook(self, ctx, trail, instance_table, chain) -> Optional[_Hit]:
        kind = HookKind.PROPERTY_MISSING if ctx.is_property else HookKind.METHOD_MISSING
        trail.append(kind.value)
        sources: List[Tuple[str, Any, MethodTable]] = []
        for depth in range(len(ctx.frames) - 1, -1, -1):
            frame = ctx.frames[depth]
            for constraint, fragment in frame.matching(ctx.receiver):
                sources.append((f"category:{frame.name or depth}", constraint, fragment))
        if instance_table is not None:
            sources.append(("instance", ctx.receiver, instance_table))
        for cls, table in chain:
            sources.append((f"type:{cls.__name__}", cls, table))
        for label, owner, table in sources:
            hook = table.hooks.get(kind)
            if hook is None:
                continue
            self._emit(TraceKind.HOOK_INVOKED, ctx, label, hook=kind.value)
            receiver, name = ctx.receiver, ctx.name
            return _Hit(f"hook:{label}", owner, None, lambda args: hook(receiver, name, list(args)))
        return None

    def _interceptor_entered(self, ctx) -> Optional[Callable[[Interceptor], None]]:
        if not self._tracing():
            return None
        return lambda interceptor: self._emit(TraceKind.INTERCEPTOR_INVOKED, ctx, ctx.layer,
                                              interceptor=type(interceptor).__name__)


class MetaView:
    """Attribute-style access that routes through a dispatcher.

    ``view.speak("hi")`` dispatches the method ``speak``; reading an attribute
    that resolves as a property returns the property value.
    """
    __slots__ = ("_dispatcher", "_receiver")

    def __init__(self, dispatcher: Dispatcher, receiver: Any):
        object.__setattr__(self, "_dispatcher", dispatcher)
        object.__setattr__(self, "_receiver", receiver)

    def __getattr__(self, name: str):
        if name.startswith("__"):
            raise AttributeError(name)
        dispatcher = object.__getattribute__(self, "_dispatcher")
        receiver = object.__getattribute__(self, "_receiver")
        if dispatcher.has_property(receiver, name):
            return dispatcher.get_property(receiver, name)

        def call(*args):
            return dispatcher.dispatch(receiver, name, args)
        call.__name__ = name
        return call

    def __setattr__(self, name: str, value: Any):
        dispatcher = object.__getattribute__(self, "_dispatcher")
        dispatcher.set_property(object.__getattribute__(self, "_receiver"), name, value)

    def __repr__(self) -> str:
        return f"<MetaView of {object.__getattribute__(self, '_receiver')!r}>"
