"""
qjs-interop: Python host interop for the QuickJS engine

Ownership-safe engine values, Result-based error propagation and host
closures whose lifetime follows the engine's garbage collector.

Package Structure:
    qjs/
    ├── __init__.py         # Package exports (this file)
    ├── engine/             # Integer-handle primitives over one QuickJS heap
    ├── errors.py           # InteropError hierarchy
    ├── config.py           # RuntimeConfig (mapping / TOML)
    ├── value.py            # Value: one owned engine reference
    ├── result.py           # JSException, Ok, Err, Result
    ├── runtime.py          # Runtime (owning) and RuntimeRef (non-owning)
    ├── context.py          # Reference-counted Context
    ├── closures.py         # Closure trampoline and closure class token
    └── thread_registry.py  # Per-thread closure class tokens

Typical use:
    with Runtime() as rt:
        ctx = Context(rt)
        ctx.eval("var x = 40 + 2")
        x = ctx.get_global_object().get_property("x")
        assert ctx.to_int32(x).unwrap() == 42
        ctx.free()
"""

from qjs.closures import BoxedClosure, ClosureClass
from qjs.config import RuntimeConfig
from qjs.context import Context
from qjs.engine.constants import EXCEPTION, ClassId, EvalFlags
from qjs.errors import (
    ConfigError, EngineError, InteropError, OutOfMemoryError, ResultError,
    ScriptError,
)
from qjs.result import Err, JSException, Ok, Result
from qjs.runtime import Runtime, RuntimeRef
from qjs.thread_registry import ThreadRegistry, registry
from qjs.value import Value

__version__ = "0.1.0"

__all__ = [
    'EXCEPTION',
    'BoxedClosure',
    'ClassId',
    'ClosureClass',
    'ConfigError',
    'Context',
    'EngineError',
    'Err',
    'EvalFlags',
    'InteropError',
    'JSException',
    'Ok',
    'OutOfMemoryError',
    'Result',
    'ResultError',
    'Runtime',
    'RuntimeConfig',
    'RuntimeRef',
    'ScriptError',
    'ThreadRegistry',
    'Value',
    'registry',
]
