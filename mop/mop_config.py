"""
Runtime configuration for the dispatcher.

Settings come from keyword arguments, a mapping, a YAML document, or the
environment (``MOP_DEBUG``, ``MOP_TRACE`` and ``MOP_CONFIG`` naming a YAML file).
"""
from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional
import collections.abc

import yaml

from mop.mop_printer import DEFAULT_TRACE_TEMPLATE


_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class DispatchConfig:
    """Knobs for a Dispatcher instance."""
    # Print [DBG] lines for every resolution step to stderr.
    debug: bool = False
    # Print every trace event, rendered with trace_template, to stderr.
    trace: bool = False
    trace_template: str = DEFAULT_TRACE_TEMPLATE
    # Lock stripes for the instance override store.
    instance_lock_stripes: int = 64
    # Use caller-supplied static hints for None arguments.
    use_static_hints: bool = True

    def __post_init__(self):
        if self.instance_lock_stripes < 1:
            raise ValueError("instance_lock_stripes must be at least 1")

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "DispatchConfig":
        if data is None:
            return cls()
        if not isinstance(data, collections.abc.Mapping):
            raise TypeError(f"Dispatch config must be a mapping, not {type(data).__name__}")
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown dispatch config keys: {', '.join(unknown)}")
        return cls(**dict(data))

    @classmethod
    def from_yaml(cls, source: str | Path) -> "DispatchConfig":
        """Load from a YAML file path or a YAML document string."""
        if isinstance(source, Path) or (isinstance(source, str) and "\n" not in source and source.endswith((".yaml", ".yml"))):
            text = Path(source).read_text(encoding="utf-8")
        else:
            text = source
        data = yaml.safe_load(text)
        # The settings may live at the top level or under a 'dispatch' key.
        if isinstance(data, collections.abc.Mapping) and "dispatch" in data:
            data = data["dispatch"]
        return cls.from_mapping(data)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "DispatchConfig":
        env = os.environ if environ is None else environ
        path = env.get("MOP_CONFIG")
        base = cls.from_yaml(Path(path)) if path else cls()
        changes = {}
        if "MOP_DEBUG" in env:
            changes["debug"] = env["MOP_DEBUG"].strip().lower() in _TRUTHY
        if "MOP_TRACE" in env:
            changes["trace"] = env["MOP_TRACE"].strip().lower() in _TRUTHY
        return replace(base, **changes) if changes else base

    def with_overrides(self, **changes) -> "DispatchConfig":
        return replace(self, **changes)
