"""
A pretty-printer for MOP runtime structures.
"""
import pystache

from mop.mop_datatypes import Signature, MethodTable, TraceEvent, HookKind


DEFAULT_TRACE_TEMPLATE = "[TRACE] {{kind}} {{member}} on {{receiver_type}}{{#layer}} via {{layer}}{{/layer}}"


class Printer:
    """Formats signatures, tables, errors and trace events into readable text."""

    def __init__(self, indent_width=2):
        self._indent_char = " " * indent_width
        # Trace lines are plain text, not HTML.
        self._renderer = pystache.Renderer(escape=lambda u: u)

    def type_name(self, t) -> str:
        if t is None:
            return "?"
        if isinstance(t, tuple):
            return " | ".join(self.type_name(x) for x in t)
        if t is type(None):
            return "None"
        return getattr(t, "__qualname__", None) or getattr(t, "__name__", None) or repr(t)

    def format_types(self, types) -> str:
        return "(" + ", ".join(self.type_name(t) for t in types) + ")"

    def format_signature_types(self, sig: Signature) -> str:
        parts = [self.type_name(t) for t in sig.param_types]
        if sig.rest is not None:
            parts.append("*" + self.type_name(sig.rest))
        return "(" + ", ".join(parts) + ")"

    def format_signature(self, name: str, sig) -> str:
        if not isinstance(sig, Signature):
            return f"{name}{self.format_types(sig or ())}"
        return f"{name}{self.format_signature_types(sig)}"

    def format_trail(self, trail) -> str:
        return " -> ".join(trail) if trail else "(nothing consulted)"

    def format_dispatch_error(self, err) -> str:
        """Renders a DispatchError as a one-line summary plus detail lines."""
        from mop.mop_errors import AmbiguousDispatchError
        label = type(err).__name__.replace("Error", "")
        member = err.member_name
        if getattr(err, "is_property", False):
            what = f"property '{member}'"
        else:
            what = f"{member}{self.format_types(err.arg_types)}"
        lines = [f"{label}: {what} on {self.type_name(err.receiver_type)}"]
        if isinstance(err, AmbiguousDispatchError) and err.candidates:
            lines.append("Tied candidates:")
            for impl in err.candidates:
                lines.append(f"{self._indent_char}{self.format_signature(member, impl.signature)}")
        if err.detail:
            lines.append(err.detail)
        lines.append(f"Consulted: {self.format_trail(err.trail)}")
        return "\n".join(lines)

    def pformat_table(self, table: MethodTable, title=None) -> str:
        """Lists a table's members, one per line, sorted by name."""
        head = title or f"{self.type_name(table.owner)} (v{table.version})"
        out = [head]
        ind = self._indent_char
        for name in sorted(table.methods):
            for sig, impl in table.methods[name].items():
                out.append(f"{ind}{self.format_signature(name, sig)} [{impl.kind}]")
        for name in sorted(table.properties):
            getter, setter = table.properties[name]
            access = ("r" if getter else "-") + ("w" if setter else "-")
            out.append(f"{ind}.{name} [{access}]")
        for kind in HookKind:
            if kind in table.hooks:
                out.append(f"{ind}hook {kind.value}")
        if table.interceptors:
            out.append(f"{ind}interceptors: {', '.join(type(i).__name__ for i in table.interceptors)}")
        return "\n".join(out)

    def render_event(self, event: TraceEvent, template: str = DEFAULT_TRACE_TEMPLATE) -> str:
        return self._renderer.render(template, event.as_dict())
