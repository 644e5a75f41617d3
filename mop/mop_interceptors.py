"""
Call interception around resolved implementations.

An interceptor sees every call on the type or object it is installed on.
``before(ctx)`` may rewrite arguments or suppress the call, ``around`` wraps
the invocation, and ``after(ctx, result)`` has the last word on the result.
Exceptions raised by any of these reach the caller untouched.
"""

import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterator, List, Optional, Sequence, Tuple

from mop.mop_datatypes import CallContext, MethodTable
from mop.mop_overrides import InstanceOverrideStore
from mop.mop_registry import TypeRegistry


class Interceptor:
    """Base class for interceptors. Override any of the three hooks.

    ``before`` returns ``None`` (or ``True``) to proceed unchanged, ``False``
    to suppress the call, or a ``(proceed, new_args)`` pair. A suppressed
    call yields ``ctx.result``, which ``before`` may set.
    """

    def before(self, ctx: CallContext):
        return None

    def around(self, ctx: CallContext, proceed: Callable[[], Any]) -> Any:
        return proceed()

    def after(self, ctx: CallContext, result: Any) -> Any:
        return result


class TracingInterceptor(Interceptor):
    """Records (name, args, result) for every call it sees."""

    def __init__(self):
        self.calls: List[Tuple[str, Tuple[Any, ...], Any]] = []
        self._lock = threading.Lock()

    def after(self, ctx, result):
        with self._lock:
            self.calls.append((ctx.name, tuple(ctx.args), result))
        return result


def _read_decision(decision) -> Tuple[bool, Optional[Sequence[Any]]]:
    if decision is None or decision is True:
        return True, None
    if decision is False:
        return False, None
    if isinstance(decision, tuple) and len(decision) == 2:
        proceed, new_args = decision
        if new_args is not None and not isinstance(new_args, (list, tuple)):
            raise TypeError(f"before() must return argument lists as list or tuple, not {type(new_args).__name__}")
        return bool(proceed), new_args
    raise TypeError(f"before() must return None, a bool or (proceed, args); got {decision!r}")


def run_intercepted(interceptors: Sequence[Interceptor], ctx: CallContext,
                    invoke: Callable[[List[Any]], Any],
                    on_enter: Optional[Callable[[Interceptor], None]] = None) -> Any:
    """Runs ``invoke(ctx.args)`` inside the interceptor chain, outermost first."""
    if not interceptors:
        return invoke(ctx.args)
    head, rest = interceptors[0], interceptors[1:]
    if on_enter is not None:
        on_enter(head)
    proceed, new_args = _read_decision(head.before(ctx))
    if new_args is not None:
        ctx.args = list(new_args)
    if proceed:
        result = head.around(ctx, lambda: run_intercepted(rest, ctx, invoke, on_enter))
    else:
        ctx.suppressed = True
        result = ctx.result
    return head.after(ctx, result)


class InterceptorManager:
    """Installs interceptors on types (registry) or on single objects (override store)."""

    def __init__(self, registry: TypeRegistry, overrides: InstanceOverrideStore):
        self.registry = registry
        self.overrides = overrides

    def installed(self, target: Any) -> Tuple[Interceptor, ...]:
        if isinstance(target, type):
            return self.registry.lookup(target).interceptors
        table = self.overrides.get_override(target)
        return table.interceptors if table is not None else ()

    def install(self, target: Any, interceptor: Interceptor):
        if not isinstance(interceptor, Interceptor):
            raise TypeError(f"install expects an Interceptor, not {type(interceptor).__name__}")
        if isinstance(target, type):
            with self.registry.writing(target) as slot:
                # Later installs wrap earlier ones.
                slot.interceptors = (interceptor,) + slot.interceptors
        else:
            self.overrides.update(target, lambda t: t.with_interceptors((interceptor,) + t.interceptors))

    def uninstall(self, target: Any, interceptor: Optional[Interceptor] = None) -> bool:
        """Removes one interceptor, or all of them when ``interceptor`` is None."""
        def without(current: Tuple[Interceptor, ...]) -> Tuple[Interceptor, ...]:
            if interceptor is None:
                return ()
            return tuple(i for i in current if i is not interceptor)

        if isinstance(target, type):
            with self.registry.writing(target) as slot:
                before = slot.interceptors
                slot.interceptors = without(before)
            return len(slot.interceptors) != len(before)
        if self.overrides.get_override(target) is None:
            return False
        removed = []

        def apply(t: MethodTable) -> MethodTable:
            kept = without(t.interceptors)
            removed.append(len(t.interceptors) - len(kept))
            return t.with_interceptors(kept)

        self.overrides.update(target, apply)
        return removed[0] > 0

    @contextmanager
    def scoped(self, target: Any, interceptor: Interceptor) -> Iterator[Interceptor]:
        self.install(target, interceptor)
        try:
            yield interceptor
        finally:
            self.uninstall(target, interceptor)

    def with_interceptor(self, target: Any, interceptor: Interceptor, fn: Callable, *args, **kwargs):
        with self.scoped(target, interceptor):
            return fn(*args, **kwargs)
