"""
Context Module

Reference-counted execution context.

Context Design:
- Copies share one engine context; teardown happens when the last holder
  frees it (copy/free/with/Python collection)
- Every engine function created in a context holds one extra count until
  the engine finalizes the function
- Each Context carries its thread's closure-class token; the runtime
  registers the token's class the first time that thread creates a Context
  in it
- Fallible conversions return Result; value constructors return Value
  (possibly the EXCEPTION value, with the error available from
  get_exception())
"""

import logging
import math
from typing import Any, Callable, Optional, Union

from qjs.closures import Closure, ClosureClass
from qjs.engine.constants import EXCEPTION, EvalFlags
from qjs.engine.context import EngineContext
from qjs.errors import EngineError, ScriptError
from qjs.result import Err, JSException, Ok, Result
from qjs.runtime import Runtime, RuntimeRef
from qjs.thread_registry import registry
from qjs.value import Value

logger = logging.getLogger(__name__)

INT32_MIN, INT32_MAX = -(1 << 31), (1 << 31) - 1
UINT32_MAX = (1 << 32) - 1
INT64_MIN, INT64_MAX = -(1 << 63), (1 << 63) - 1


def _check_range(kind: str, value: int, low: int, high: int) -> int:
    value = int(value)
    if value < low or value > high:
        raise OverflowError(f"{value} does not fit in {kind}")
    return value


def _saturate_int64(number) -> int:
    if isinstance(number, float):
        if math.isnan(number):
            return 0
        if number >= 2.0 ** 63:
            return INT64_MAX
        if number <= -(2.0 ** 63):
            return INT64_MIN
        return int(number)
    return max(INT64_MIN, min(INT64_MAX, int(number)))


class Context:
    """Execution context bound to one runtime."""

    def __init__(self, runtime: Union[Runtime, RuntimeRef]):
        ref = runtime.ref if isinstance(runtime, Runtime) else runtime
        if not ref.alive:
            raise EngineError("cannot create a context in a freed runtime")
        token = registry.closure_class()
        token.ensure_registered(ref.engine)
        self._ctx = EngineContext(ref.engine)
        self._token = token
        self._freed = False
        logger.debug("context created on thread %d", token.thread_id)

    @classmethod
    def _adopt(cls, engine_ctx: EngineContext, token: ClosureClass) -> 'Context':
        """Wrap an engine context whose count the caller already holds."""
        ctx = cls.__new__(cls)
        ctx._ctx = engine_ctx
        ctx._token = token
        ctx._freed = False
        return ctx

    # ------------------------------------------------------------------
    # Lifetime
    # ------------------------------------------------------------------

    @property
    def engine_context(self) -> EngineContext:
        return self._ctx

    @property
    def closure_class(self) -> ClosureClass:
        return self._token

    @property
    def alive(self) -> bool:
        return not self._freed and self._ctx.alive and self._ctx.runtime.alive

    @property
    def refcount(self) -> int:
        return self._ctx.refcount

    def _require_live(self) -> EngineContext:
        if self._freed:
            raise EngineError("context has already been freed")
        return self._ctx

    def copy(self) -> 'Context':
        return Context._adopt(self._require_live().dup(), self._token)

    __copy__ = copy

    def free(self) -> None:
        if self._freed:
            return
        self._freed = True
        self._ctx.free()

    def __del__(self):
        if not getattr(self, '_freed', True):
            self.free()

    def __enter__(self) -> 'Context':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.free()

    def __repr__(self) -> str:
        return f"<Context refcount={self._ctx.refcount}{' freed' if self._freed else ''}>"

    def _wrap(self, handle: int) -> Value:
        return Value(handle, self._ctx)

    # ------------------------------------------------------------------
    # Runtime and opaque payloads
    # ------------------------------------------------------------------

    def get_runtime(self) -> RuntimeRef:
        return RuntimeRef(self._ctx.runtime)

    def set_opaque(self, payload: Any) -> None:
        self._require_live().opaque = payload

    def get_opaque(self) -> Any:
        return self._ctx.opaque

    def set_class_proto(self, class_id: int, proto: Value) -> None:
        ctx = self._require_live()
        ctx.set_class_proto(class_id, ctx.runtime.dup_value(proto.handle))

    def get_class_proto(self, class_id: int) -> Value:
        return self._wrap(self._require_live().get_class_proto(class_id))

    def set_object_opaque(self, value: Value, payload: Any) -> bool:
        return self._require_live().set_object_opaque(value.handle, payload)

    def get_object_opaque(self, value: Value, class_id: int) -> Any:
        return self._require_live().get_object_opaque(value.handle, class_id)

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    def new_c_function(self, fn: Closure, name: str, length: int = 0,
                       tag: int = 0) -> Value:
        """Expose `fn(ctx, this, args, tag)` to script as a function."""
        self._require_live()
        return self._token.new_function(self, fn, name, length, tag)

    def new_bool(self, value: bool) -> Value:
        return self._wrap(self._require_live().new_bool(value))

    def new_int32(self, value: int) -> Value:
        value = _check_range("int32", value, INT32_MIN, INT32_MAX)
        return self._wrap(self._require_live().new_number(value))

    def new_int64(self, value: int) -> Value:
        value = _check_range("int64", value, INT64_MIN, INT64_MAX)
        return self._wrap(self._require_live().new_number(value))

    def new_uint32(self, value: int) -> Value:
        value = _check_range("uint32", value, 0, UINT32_MAX)
        return self._wrap(self._require_live().new_number(value))

    def new_float64(self, value: float) -> Value:
        return self._wrap(self._require_live().new_number(float(value)))

    def new_string(self, value: str) -> Value:
        return self._wrap(self._require_live().new_string(value))

    def new_atom_string(self, value: str) -> Value:
        """String value for the interned atom of `value`."""
        ctx = self._require_live()
        atoms = ctx.runtime.atoms
        atom = atoms.new(value)
        try:
            return self._wrap(ctx.new_string(atoms.name(atom)))
        finally:
            atoms.free(atom)

    def new_null(self) -> Value:
        return self._wrap(self._require_live().new_null())

    def new_undefined(self) -> Value:
        return self._wrap(self._require_live().new_undefined())

    def new_error(self, message: str = "") -> Value:
        return self._wrap(self._require_live().new_error(message))

    def new_object(self) -> Value:
        return self._wrap(self._require_live().new_object())

    def new_object_proto(self, proto: Value) -> Value:
        return self._wrap(self._require_live().new_object_proto(proto.handle))

    def new_array(self) -> Value:
        return self._wrap(self._require_live().new_array())

    def new_object_class(self, class_id: int) -> Value:
        return self._wrap(self._require_live().new_object_class(class_id))

    # ------------------------------------------------------------------
    # Conversions
    # ------------------------------------------------------------------

    def _convert(self, coerce: Callable, value: Value,
                 post: Optional[Callable] = None) -> Result:
        self._require_live()
        if value.is_exception:
            return Err(self.get_exception())
        result = coerce(value.handle)
        if result is None:
            return Err(self.get_exception())
        return Ok(post(result) if post is not None else result)

    def to_bool(self, value: Value) -> Result[bool]:
        return self._convert(self._ctx.to_bool, value)

    def to_int32(self, value: Value) -> Result[int]:
        return self._convert(self._ctx.to_int32, value, int)

    def to_uint32(self, value: Value) -> Result[int]:
        return self._convert(self._ctx.to_uint32, value, int)

    def to_int64(self, value: Value) -> Result[int]:
        """Saturating conversion; NaN becomes 0."""
        return self._convert(self._ctx.to_number, value, _saturate_int64)

    def to_index(self, value: Value) -> Result[int]:
        return self._convert(self._ctx.to_index, value)

    def to_float64(self, value: Value) -> Result[float]:
        return self._convert(self._ctx.to_number, value, float)

    def to_bigint64(self, value: Value) -> Result[int]:
        """Wraps modulo 2**64; non-BigInt-coercible values are an Err."""
        return self._convert(self._ctx.to_bigint64, value)

    def to_int64_ext(self, value: Value) -> Result[int]:
        return self._convert(self._ctx.to_int64_ext, value, _saturate_int64)

    def to_string(self, value: Value) -> Value:
        return self._wrap(self._require_live().to_string(value.handle))

    def to_property_key(self, value: Value) -> Value:
        return self._wrap(self._require_live().to_property_key(value.handle))

    def to_std_string(self, value: Value) -> str:
        """Python str of `value`. Raises ScriptError if the coercion throws."""
        ctx = self._require_live()
        text = None if value.is_exception else ctx.to_cstring(value.handle)
        if text is None:
            exception = self.get_exception()
            raise ScriptError(f"string conversion failed: {exception}", exception)
        return text

    # ------------------------------------------------------------------
    # Evaluation and exceptions
    # ------------------------------------------------------------------

    def eval(self, input: str, filename: str = "<input>",
             eval_flags: int = EvalFlags.TYPE_GLOBAL) -> Value:
        """Evaluate script source.

        Only global evaluation is available (optionally STRICT). Module and
        compile-only evaluation raise ValueError.
        """
        return self._wrap(self._require_live().eval(input, filename, eval_flags))

    def get_global_object(self) -> Value:
        return self._wrap(self._require_live().global_object())

    def get_exception(self) -> JSException:
        """Take the pending exception (null when nothing is pending)."""
        return JSException(self._wrap(self._require_live().get_exception()))

    def has_exception(self) -> bool:
        return self._ctx.has_exception()

    def throw(self, value: Value) -> Value:
        """Make `value` pending and return the EXCEPTION value.

        Returning the result from a closure rethrows it into script. The
        caller keeps its own reference to `value`.
        """
        ctx = self._require_live()
        ctx.throw(ctx.runtime.dup_value(value.handle))
        return self._wrap(EXCEPTION)
