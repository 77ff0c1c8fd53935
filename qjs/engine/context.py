"""
Engine Context Module

C-style execution-context primitives over integer handles.

Context Design:
- Reference counted: dup() adds a holder, free() drops one, teardown runs
  at zero and releases the class prototypes and the pending exception
- Each context owns its pending-exception slot; a failing primitive moves
  the thrown value there immediately
- Value-returning primitives return a fresh handle or EXCEPTION
- Flag primitives return 1 / 0, or -1 with the exception left pending
- Coercions return the converted Python value, or None with the exception
  left pending
- Property setters borrow the value handle; callers keep their reference
- Running out of memory inside a primitive takes the ordinary failure path,
  with the runtime's reserved out-of-memory error as the pending exception
"""

import logging
from typing import TYPE_CHECKING, Any, Dict, Optional, Sequence

from qjs.engine.classes import NativeEntry, NativeFunction
from qjs.engine.constants import EXCEPTION, OUT_OF_MEMORY_MESSAGE, ClassId, EvalFlags
from qjs.errors import EngineError, OutOfMemoryError

if TYPE_CHECKING:
    from qjs.engine.runtime import EngineRuntime

logger = logging.getLogger(__name__)

_INT32_MIN, _INT32_MAX = -(1 << 31), (1 << 31) - 1


def _js_number(value):
    # The extension only carries int32-sized ints; wider ones travel as doubles.
    if isinstance(value, int) and not isinstance(value, bool):
        if not _INT32_MIN <= value <= _INT32_MAX:
            return float(value)
    return value


class EngineContext:
    """One execution context of an EngineRuntime."""

    def __init__(self, runtime: 'EngineRuntime'):
        self.runtime = runtime
        self.refcount = 1
        self.opaque: Any = None
        self._pending = EXCEPTION
        self._class_protos: Dict[int, int] = {}
        runtime.context_count += 1
        logger.debug("engine context created (%d live)", runtime.context_count)

    # ------------------------------------------------------------------
    # Lifetime
    # ------------------------------------------------------------------

    @property
    def alive(self) -> bool:
        return self.refcount > 0

    def dup(self) -> 'EngineContext':
        if self.refcount <= 0:
            raise EngineError("cannot duplicate a context that was torn down")
        self.refcount += 1
        return self

    def free(self) -> None:
        if self.refcount <= 0:
            return
        self.refcount -= 1
        if self.refcount == 0:
            self._teardown()

    def _teardown(self) -> None:
        protos, self._class_protos = self._class_protos, {}
        for handle in protos.values():
            self.runtime.free_value(handle)
        self.runtime.free_value(self._pending)
        self._pending = EXCEPTION
        self.opaque = None
        self.runtime.context_count -= 1
        logger.debug("engine context torn down (%d live)", self.runtime.context_count)

    def _require_alive(self) -> None:
        if self.refcount <= 0:
            raise EngineError("context has been torn down")

    # ------------------------------------------------------------------
    # Pending exception
    # ------------------------------------------------------------------

    def _collect_pending(self) -> None:
        try:
            handle = self.runtime.primitive("takePending")
        except OutOfMemoryError:
            handle = self.runtime.out_of_memory_handle
        if handle != EXCEPTION:
            self._set_pending(handle)

    def _record_exhaustion(self) -> None:
        self._set_pending(self.runtime.out_of_memory_handle)

    def _set_pending(self, handle: int) -> None:
        # A newer failure replaces an unread older one.
        old, self._pending = self._pending, handle
        self.runtime.free_value(old)

    def has_exception(self) -> bool:
        return self._pending != EXCEPTION

    def take_pending(self) -> int:
        """Transfer the pending exception handle out, or EXCEPTION if none."""
        handle, self._pending = self._pending, EXCEPTION
        return handle

    def get_exception(self) -> int:
        handle = self.take_pending()
        if handle == EXCEPTION:
            return self.new_null()
        return handle

    def throw(self, handle: int) -> int:
        """Make `handle` the pending exception. Takes ownership."""
        self._require_alive()
        self._set_pending(handle)
        return EXCEPTION

    # ------------------------------------------------------------------
    # Result shapes
    # ------------------------------------------------------------------

    def _value(self, name: str, *args) -> int:
        self._require_alive()
        try:
            handle = self.runtime.primitive(name, *args)
        except OutOfMemoryError:
            self._record_exhaustion()
            return EXCEPTION
        if handle == EXCEPTION:
            self._collect_pending()
        return handle

    def _flag(self, name: str, *args) -> int:
        self._require_alive()
        try:
            result = self.runtime.primitive(name, *args)
        except OutOfMemoryError:
            self._record_exhaustion()
            return -1
        if isinstance(result, bool):
            return int(result)
        self._collect_pending()
        return -1

    def _coerce(self, name: str, handle: int):
        self._require_alive()
        try:
            result = self.runtime.primitive(name, handle)
        except OutOfMemoryError:
            self._record_exhaustion()
            return None
        if result is None:
            self._collect_pending()
        return result

    # ------------------------------------------------------------------
    # Value creation
    # ------------------------------------------------------------------

    def new_null(self) -> int:
        return self._value("newNull")

    def new_undefined(self) -> int:
        return self._value("newUndefined")

    def new_bool(self, value: bool) -> int:
        return self._value("newBool", bool(value))

    def new_number(self, value) -> int:
        return self._value("newNumber", _js_number(value))

    def new_string(self, value: str) -> int:
        return self._value("newString", value)

    def new_error(self, message: str = "") -> int:
        return self._value("newError", message)

    def new_object(self) -> int:
        return self._value("newObject")

    def new_object_proto(self, proto: int) -> int:
        return self._value("newObjectProto", proto)

    def new_array(self) -> int:
        proto = self._class_protos.get(ClassId.ARRAY, EXCEPTION)
        return self._value("newArray", proto)

    def global_object(self) -> int:
        return self._value("globalObject")

    def new_object_class(self, class_id: int) -> int:
        """Create an object of `class_id` using this context's class prototype."""
        if class_id < ClassId.INIT_COUNT:
            proto = self.get_class_proto(class_id)
            try:
                return self.new_object_proto(proto)
            finally:
                self.runtime.free_value(proto)
        if not self.runtime.has_class(class_id):
            raise EngineError(f"class id {class_id} is not registered in this runtime")
        self._require_alive()
        proto = self.get_class_proto(class_id)
        try:
            anchor = self.runtime.new_arena_entry(class_id)
            self.runtime.install_native(anchor)
            index = anchor.index
            del anchor
            return self._value("newClassObject", proto, index)
        finally:
            self.runtime.free_value(proto)

    def new_function(self, func: NativeFunction, name: str, length: int,
                     magic: int = 0, data: Sequence[int] = ()) -> int:
        """Create a native function. The function owns duplicates of `data`."""
        self._require_alive()
        entry = NativeEntry(self.dup(), func)
        self.runtime.track_native(entry)
        self.runtime.install_native(entry)
        del entry
        return self._value("newFunction", name, length, _js_number(magic), *data)

    # ------------------------------------------------------------------
    # Class prototypes and opaque payloads
    # ------------------------------------------------------------------

    def set_class_proto(self, class_id: int, handle: int) -> None:
        """Install `handle` as the prototype for `class_id`. Takes ownership."""
        self._require_alive()
        old = self._class_protos.pop(class_id, EXCEPTION)
        self._class_protos[class_id] = handle
        self.runtime.free_value(old)

    def get_class_proto(self, class_id: int) -> int:
        handle = self._class_protos.get(class_id)
        if handle is not None:
            return self.runtime.dup_value(handle)
        return self._value("classProto", int(class_id))

    def set_object_opaque(self, handle: int, payload: Any) -> bool:
        entry = self.runtime.arena.get(self.runtime.primitive("arenaIndex", handle))
        if entry is None:
            return False
        entry.opaque = payload
        return True

    def get_object_opaque(self, handle: int, class_id: int) -> Any:
        entry = self.runtime.arena.get(self.runtime.primitive("arenaIndex", handle))
        if entry is None or entry.class_id != class_id:
            return None
        return entry.opaque

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    def get_property(self, handle: int, name: str) -> int:
        return self._value("getProperty", handle, name)

    def get_index(self, handle: int, index: int) -> int:
        return self._value("getIndex", handle, _js_number(index))

    def set_property(self, handle: int, name: str, value: int) -> int:
        return self._flag("setProperty", handle, name, value)

    def set_index(self, handle: int, index: int, value: int) -> int:
        return self._flag("setIndex", handle, _js_number(index), value)

    def has_property(self, handle: int, name: str) -> int:
        return self._flag("hasProperty", handle, name)

    def delete_property(self, handle: int, name: str) -> int:
        return self._flag("deleteProperty", handle, name)

    def is_extensible(self, handle: int) -> int:
        return self._flag("isExtensible", handle)

    def prevent_extensions(self, handle: int) -> int:
        return self._flag("preventExtensions", handle)

    def set_prototype(self, handle: int, proto: int) -> int:
        return self._flag("setPrototype", handle, proto)

    def get_prototype(self, handle: int) -> int:
        return self._value("getPrototype", handle)

    # ------------------------------------------------------------------
    # Calls and evaluation
    # ------------------------------------------------------------------

    def call(self, func: int, this: int, args: Sequence[int]) -> int:
        handle = self._value("call", func, this, *args)
        self.runtime.maybe_collect()
        return handle

    def invoke(self, handle: int, name: str, args: Sequence[int]) -> int:
        result = self._value("invoke", handle, name, *args)
        self.runtime.maybe_collect()
        return result

    def eval(self, source: str, filename: str = "<input>",
             flags: int = EvalFlags.TYPE_GLOBAL) -> int:
        eval_type = flags & EvalFlags.TYPE_MASK
        if eval_type == EvalFlags.TYPE_MODULE:
            raise ValueError("module evaluation is not supported")
        if eval_type == EvalFlags.TYPE_DIRECT:
            raise ValueError("direct evaluation is only available from script")
        if flags & EvalFlags.COMPILE_ONLY:
            raise ValueError("compile-only evaluation is not supported")
        strict = bool(flags & EvalFlags.STRICT)
        handle = self._value("evaluate", source, filename, strict)
        self.runtime.maybe_collect()
        return handle

    # ------------------------------------------------------------------
    # Coercions and type checks
    # ------------------------------------------------------------------

    def to_bool(self, handle: int) -> bool:
        return bool(self.runtime.primitive("toBool", handle))

    def to_int32(self, handle: int) -> Optional[int]:
        return self._coerce("toInt32", handle)

    def to_uint32(self, handle: int) -> Optional[int]:
        return self._coerce("toUint32", handle)

    def to_number(self, handle: int) -> Optional[float]:
        return self._coerce("toNumber", handle)

    def to_index(self, handle: int) -> Optional[int]:
        result = self._coerce("toIndex", handle)
        return None if result is None else int(result)

    def to_bigint64(self, handle: int) -> Optional[int]:
        result = self._coerce("toBigInt64", handle)
        return None if result is None else int(result)

    def to_int64_ext(self, handle: int):
        """BigInt digits as a Python int, or the plain number for other values."""
        result = self._coerce("toInt64Ext", handle)
        if isinstance(result, str):
            return int(result)
        return result

    def to_cstring(self, handle: int) -> Optional[str]:
        if handle == self.runtime.out_of_memory_handle:
            return OUT_OF_MEMORY_MESSAGE
        return self._coerce("toCString", handle)

    def to_string(self, handle: int) -> int:
        return self._value("toStringValue", handle)

    def to_property_key(self, handle: int) -> int:
        return self._value("toPropertyKey", handle)

    def type_of(self, handle: int) -> str:
        return self.runtime.primitive("typeOf", handle)

    def is_array(self, handle: int) -> bool:
        return bool(self.runtime.primitive("isArray", handle))

    def is_error(self, handle: int) -> bool:
        return bool(self.runtime.primitive("isError", handle))
