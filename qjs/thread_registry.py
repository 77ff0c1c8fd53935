"""
Thread Registry Module

Hands out the per-thread closure-class token every Context carries.

Thread Registry Design:
- Each thread gets one ClosureClass token, created the first time a Context
  is constructed on it and never undone
- Tokens live in thread-local storage; a process-wide list records them for
  diagnostics
- Registry lock protects modifications to that list
"""

import logging
import threading
from typing import List

from qjs.closures import ClosureClass
from qjs.engine.classes import new_class_id

logger = logging.getLogger(__name__)


class ThreadRegistry:
    """Per-thread closure-class tokens."""

    def __init__(self):
        self._local = threading.local()
        self._lock = threading.Lock()
        self._tokens: List[ClosureClass] = []

    def closure_class(self) -> ClosureClass:
        """Return this thread's token, creating it on first use."""
        token = getattr(self._local, 'closure_class', None)
        if token is None:
            token = ClosureClass(new_class_id(), threading.get_ident())
            self._local.closure_class = token
            with self._lock:
                self._tokens.append(token)
            logger.debug("thread %d registered with closure class id %d",
                         token.thread_id, token.class_id)
        return token

    def is_registered(self) -> bool:
        return getattr(self._local, 'closure_class', None) is not None

    def registered_count(self) -> int:
        with self._lock:
            return len(self._tokens)

    def tokens(self) -> List[ClosureClass]:
        with self._lock:
            return list(self._tokens)


# Process-wide registry used by Context
registry = ThreadRegistry()
