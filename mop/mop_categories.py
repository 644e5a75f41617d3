"""
Thread-confined category stack.

A category frame is visible to every dispatch made on the pushing thread
between its push and the matching pop, however deep the call nesting. Other
threads never see it. Use ``use(frame)`` so the pop happens on every exit path.
"""

import threading
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional, Tuple

from mop.mop_datatypes import CategoryFrame
from mop.mop_errors import CategoryStackError


class CategoryStack:
    def __init__(self, on_unwind: Optional[Callable[[int], None]] = None):
        self._local = threading.local()
        # Called with the number of frames dropped when a scope exits above leaked pushes.
        self._on_unwind = on_unwind

    def _stack(self) -> List[CategoryFrame]:
        stack = getattr(self._local, "frames", None)
        if stack is None:
            stack = self._local.frames = []
        return stack

    def push(self, frame: CategoryFrame) -> int:
        """Pushes a frame and returns the new depth, which ``pop`` can verify."""
        if not isinstance(frame, CategoryFrame):
            raise TypeError(f"push expects a CategoryFrame, not {type(frame).__name__}")
        stack = self._stack()
        stack.append(frame)
        return len(stack)

    def pop(self, depth: Optional[int] = None) -> CategoryFrame:
        stack = self._stack()
        if not stack:
            raise CategoryStackError("pop without a matching push on this thread")
        if depth is not None and depth != len(stack):
            raise CategoryStackError(f"out-of-order pop: expected depth {depth}, stack is at {len(stack)}")
        return stack.pop()

    @contextmanager
    def use(self, frame: CategoryFrame) -> Iterator[CategoryFrame]:
        depth = self.push(frame)
        try:
            yield frame
        finally:
            self._unwind_to(depth)

    def _unwind_to(self, depth: int):
        stack = self._stack()
        leaked = len(stack) - depth
        if leaked > 0:
            # Frames pushed inside the scope and never popped go with it.
            del stack[depth:]
            if self._on_unwind is not None:
                self._on_unwind(leaked)
        if len(stack) == depth:
            stack.pop()

    def frames(self) -> Tuple[CategoryFrame, ...]:
        """Snapshot of this thread's frames, oldest first."""
        return tuple(self._stack())

    def depth(self) -> int:
        return len(self._stack())
