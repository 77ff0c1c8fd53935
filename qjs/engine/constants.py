"""
Engine Constants

Handle, class id and evaluation flag values shared by the binding and the
interop layer. Numeric values follow the QuickJS C API so code written
against it reads the same here.
"""

from enum import IntEnum, IntFlag


# Handle returned by a failed primitive. Never counted, never freed.
EXCEPTION = 0

# Name of the transient global used to hand native callables to the heap.
NATIVE_GLOBAL = "__qjs_interop_native__"

# Rendering of the reserved out-of-memory error, known without asking the heap.
OUT_OF_MEMORY_MESSAGE = "InternalError: out of memory"


class EvalFlags(IntFlag):
    """Evaluation mode bits accepted by Context.eval()."""
    TYPE_GLOBAL = 0
    TYPE_MODULE = 1 << 0
    TYPE_DIRECT = 2 << 0
    TYPE_INDIRECT = 3 << 0
    TYPE_MASK = 3 << 0
    STRICT = 1 << 3
    STRIP = 1 << 4
    COMPILE_ONLY = 1 << 5
    BACKTRACE_BARRIER = 1 << 6


class ClassId(IntEnum):
    """Built-in class ids with a prototype reachable from every context."""
    OBJECT = 1
    ARRAY = 2
    ERROR = 3
    NUMBER = 4
    STRING = 5
    BOOLEAN = 6
    SYMBOL = 7
    DATE = 10
    C_FUNCTION = 12
    BYTECODE_FUNCTION = 13
    REGEXP = 18
    # First id handed out to host-registered classes
    INIT_COUNT = 64
