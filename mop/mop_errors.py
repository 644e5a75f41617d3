"""
Error taxonomy for the MOP dispatch runtime.

Resolution failures carry enough structure (member name, receiver type,
argument types and the layers consulted) to diagnose a miss without a
debugger; their messages are rendered by the Printer.
"""

from typing import Any, Iterable, Optional, Sequence, Tuple


class MopError(Exception):
    """Base class for all errors raised by the runtime."""
    pass


class DispatchError(MopError):
    """A call descriptor could not be resolved to a single implementation."""

    def __init__(self, member_name: str, receiver_type: Optional[type], arg_types: Iterable[Any] = (),
                 trail: Iterable[str] = (), detail: Optional[str] = None):
        self.member_name = member_name
        self.receiver_type = receiver_type
        self.arg_types: Tuple[Any, ...] = tuple(arg_types)
        self.trail: Tuple[str, ...] = tuple(trail)
        self.detail = detail
        super().__init__(self._render())

    def _render(self) -> str:
        from mop.mop_printer import Printer
        return Printer().format_dispatch_error(self)


class MissingMemberError(DispatchError, AttributeError):
    """The whole resolution chain was exhausted and no hook handled the call."""

    def __init__(self, member_name, receiver_type, arg_types=(), trail=(), detail=None, is_property=False):
        self.is_property = is_property
        super().__init__(member_name, receiver_type, arg_types, trail, detail)
        # AttributeError's own field, so `except AttributeError` handlers see the name.
        self.name = member_name


class AmbiguousDispatchError(DispatchError, TypeError):
    """Two or more overloads are equally specific for the supplied arguments."""

    def __init__(self, member_name, receiver_type, arg_types=(), trail=(), candidates: Sequence[Any] = ()):
        self.candidates = tuple(candidates)
        super().__init__(member_name, receiver_type, arg_types, trail)


class RegistrationConflictError(MopError, ValueError):
    """A native registration collided with an identical signature."""

    def __init__(self, owner: type, member_name: str, signature: Any):
        self.owner = owner
        self.member_name = member_name
        self.signature = signature
        from mop.mop_printer import Printer
        p = Printer()
        super().__init__(
            f"RegistrationConflict: {p.type_name(owner)}.{p.format_signature(member_name, signature)} "
            f"is already registered (pass allow_overwrite=True to replace it)"
        )


class CategoryStackError(MopError, RuntimeError):
    """A category pop did not match the most recent push on this thread."""
    pass


class InterceptorError(MopError):
    """Available for interceptors to raise; the dispatcher never wraps or rewrites it."""
    pass


class MixinConflictWarning(UserWarning):
    """A mixin replaced an existing entry on its target (reported, never raised)."""

    def __init__(self, target: type, source: type, member_name: str, signature: Any = None, kind: str = "method"):
        self.target = target
        self.source = source
        self.member_name = member_name
        self.signature = signature
        self.kind = kind
        from mop.mop_printer import Printer
        p = Printer()
        what = p.format_signature(member_name, signature) if signature is not None else member_name
        super().__init__(f"MixinConflict: {p.type_name(source)} replaces {kind} {what} on {p.type_name(target)}")
