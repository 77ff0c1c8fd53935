"""
QuickJS Engine Binding Package

Integer-handle primitives over one QuickJS heap, in the shape of the engine's
C API. The interop layer in `qjs` is written entirely against this package.

Package Structure:
    qjs/engine/
    ├── __init__.py     # Package exports (this file)
    ├── constants.py    # EXCEPTION handle, EvalFlags, ClassId
    ├── classes.py      # Class ids, arena entries, native entry points, atoms
    ├── prelude.py      # Script installing the handle table and primitives
    ├── runtime.py      # EngineRuntime: heap, arena, GC, limits
    └── context.py      # EngineContext: pending exception, value primitives
"""

from qjs.engine.classes import ArenaEntry, AtomTable, ClassDef, new_class_id
from qjs.engine.constants import EXCEPTION, ClassId, EvalFlags
from qjs.engine.context import EngineContext
from qjs.engine.runtime import EngineRuntime

__all__ = [
    'EXCEPTION',
    'ArenaEntry',
    'AtomTable',
    'ClassDef',
    'ClassId',
    'EngineContext',
    'EngineRuntime',
    'EvalFlags',
    'new_class_id',
]
