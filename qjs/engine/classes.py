"""
Native Class Support

Class ids, class definitions and the host-side objects the binding hands to
the engine heap.

Arena Design:
- Every object of a registered class is backed by one NativeAnchor
- The engine heap owns the anchor; the host only keeps a weak reference
- The anchor's arena index selects an ArenaEntry holding the class id and
  the opaque payload
- When the engine collects the object, the anchor dies and the class
  finalizer receives the payload exactly once
"""

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from qjs.engine.constants import ClassId

if TYPE_CHECKING:
    from qjs.engine.context import EngineContext
    from qjs.engine.runtime import EngineRuntime

logger = logging.getLogger(__name__)

# finalizer(runtime, payload)
ClassFinalizer = Callable[["EngineRuntime", Any], None]
# mark_func(runtime, handle)
MarkFunc = Callable[["EngineRuntime", int], None]
# gc_mark(runtime, payload, mark_func)
ClassGCMark = Callable[["EngineRuntime", Any, MarkFunc], None]
# func(context, this_handle, arg_handles, magic, data_handles) -> encoded result
NativeFunction = Callable[["EngineContext", int, List[int], int, List[int]], int]


_class_id_lock = threading.Lock()
_next_class_id = int(ClassId.INIT_COUNT)


def new_class_id() -> int:
    """Allocate a process-wide unique class id."""
    global _next_class_id
    with _class_id_lock:
        class_id = _next_class_id
        _next_class_id += 1
    return class_id


@dataclass
class ClassDef:
    """Definition of a host-registered native class."""
    class_name: str
    finalizer: Optional[ClassFinalizer] = None
    gc_mark: Optional[ClassGCMark] = None


@dataclass
class ArenaEntry:
    """Host-side record of one live class object."""
    class_id: int
    opaque: Any = None


class NativeAnchor:
    """Callable placeholder whose lifetime is owned by the engine heap.

    It is never called from script: the heap object exposing it keeps it
    behind a private symbol.
    """

    __slots__ = ("index", "__weakref__")

    def __init__(self, index: int):
        self.index = index

    def __call__(self, *args):
        return None


class NativeEntry:
    """Entry point the engine calls for one native function."""

    __slots__ = ("context", "func", "__weakref__")

    def __init__(self, context: "EngineContext", func: NativeFunction):
        self.context = context
        self.func = func

    def __call__(self, magic: int, argc: int, this_handle: int, *handles: int) -> int:
        # Nothing may propagate back into the engine as a Python error.
        try:
            result = self.func(self.context, this_handle, list(handles[:argc]),
                               int(magic), list(handles[argc:]))
            return int(result)
        except Exception:
            logger.exception("native function raised; script sees a generic error")
            return 0


class AtomTable:
    """Interned property names with per-atom reference counts."""

    def __init__(self):
        self._by_name: Dict[str, int] = {}
        self._names: Dict[int, str] = {}
        self._counts: Dict[int, int] = {}
        self._next_atom = 1

    def __len__(self) -> int:
        return len(self._names)

    def new(self, name: str) -> int:
        atom = self._by_name.get(name)
        if atom is None:
            atom = self._next_atom
            self._next_atom += 1
            self._by_name[name] = atom
            self._names[atom] = name
            self._counts[atom] = 0
        self._counts[atom] += 1
        return atom

    def dup(self, atom: int) -> int:
        if atom in self._counts:
            self._counts[atom] += 1
        return atom

    def free(self, atom: int) -> None:
        count = self._counts.get(atom)
        if count is None:
            return
        if count <= 1:
            name = self._names.pop(atom)
            del self._by_name[name]
            del self._counts[atom]
        else:
            self._counts[atom] = count - 1

    def name(self, atom: int) -> str:
        try:
            return self._names[atom]
        except KeyError:
            raise KeyError(f"unknown atom {atom}") from None
