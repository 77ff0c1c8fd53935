"""
Value Module

Ownership-safe handle to one engine value.

Ownership Design:
- A Value owns exactly one reference-count unit on its handle
- copy() duplicates the unit; the copy shares the handle
- free(), leaving a `with` block, or Python collecting the Value releases
  the unit once; free() is idempotent
- The EXCEPTION handle is never counted: copying or freeing it is a no-op
- Boolean mutators never leave a pending exception behind
"""

from typing import TYPE_CHECKING, Optional, Sequence, Union

from qjs.engine.constants import EXCEPTION
from qjs.errors import EngineError

if TYPE_CHECKING:
    from qjs.engine.context import EngineContext

UINT32_MAX = 0xFFFFFFFF

PropertyKey = Union[str, int]


class Value:
    """One owned reference to an engine value."""

    def __init__(self, handle: int, context: 'EngineContext'):
        self._handle = handle
        self._ctx = context
        self._freed = False

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------

    @property
    def handle(self) -> int:
        return self._handle

    @property
    def context(self) -> 'EngineContext':
        return self._ctx

    @property
    def freed(self) -> bool:
        return self._freed

    @property
    def refcount(self) -> int:
        """Engine reference count of the handle (live Values sharing it)."""
        return self._ctx.runtime.refcount(self._handle)

    def _require_live(self) -> None:
        if self._freed:
            raise EngineError("value has already been freed")

    def copy(self) -> 'Value':
        self._require_live()
        return Value(self._ctx.runtime.dup_value(self._handle), self._ctx)

    __copy__ = copy

    def free(self) -> None:
        if self._freed:
            return
        # Released now, or queued by the runtime when the heap is exhausted.
        self._ctx.runtime.free_value(self._handle)
        self._freed = True

    def __del__(self):
        if not getattr(self, '_freed', True):
            self.free()

    def __enter__(self) -> 'Value':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.free()

    def __repr__(self) -> str:
        state = " freed" if self._freed else ""
        return f"<Value handle={self._handle}{state}>"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _wrap(self, handle: int) -> 'Value':
        return Value(handle, self._ctx)

    def _discard_exception(self) -> None:
        self._ctx.runtime.free_value(self._ctx.take_pending())

    def _settle(self, flag: int) -> bool:
        """Collapse a flag primitive's result, dropping any exception it raised."""
        if flag < 0:
            self._discard_exception()
            return False
        return bool(flag)

    def _with_atom(self, name: str, operation, *args) -> int:
        # Property names are interned for the duration of the call.
        atoms = self._ctx.runtime.atoms
        atom = atoms.new(name)
        try:
            return operation(self._handle, atoms.name(atom), *args)
        finally:
            atoms.free(atom)

    @staticmethod
    def _check_index(index: int) -> None:
        if index < 0 or index > UINT32_MAX:
            raise OverflowError(f"array index {index} is outside the uint32 range")

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    def get_property(self, key: PropertyKey) -> Optional['Value']:
        """Read a property, or None when it is absent.

        Integer keys are bounded by the object's `length`; an object without
        a usable `length` has no indexed properties here.
        """
        self._require_live()
        if isinstance(key, int) and not isinstance(key, bool):
            return self._get_index(key)
        if not self.has_property(key):
            return None
        return self._wrap(self._with_atom(key, self._ctx.get_property))

    def _get_index(self, index: int) -> Optional['Value']:
        self._check_index(index)
        if not self.has_property("length"):
            return None
        length_handle = self._ctx.get_property(self._handle, "length")
        if length_handle == EXCEPTION:
            self._discard_exception()
            return None
        try:
            length = self._ctx.to_uint32(length_handle)
        finally:
            self._ctx.runtime.free_value(length_handle)
        if length is None:
            self._discard_exception()
            return None
        if index >= length:
            return None
        return self._wrap(self._ctx.get_index(self._handle, index))

    def set_property(self, key: PropertyKey, value: 'Value') -> bool:
        """Write a property. False if the object is not extensible or the write fails."""
        self._require_live()
        value._require_live()
        if not self.is_extensible():
            return False
        if isinstance(key, int) and not isinstance(key, bool):
            self._check_index(key)
            flag = self._ctx.set_index(self._handle, key, value.handle)
        else:
            flag = self._with_atom(key, self._ctx.set_property, value.handle)
        return self._settle(flag)

    def has_property(self, name: str) -> bool:
        self._require_live()
        return self._settle(self._with_atom(name, self._ctx.has_property))

    def delete_property(self, name: str) -> bool:
        """True when the property no longer exists on the object."""
        self._require_live()
        return self._settle(self._with_atom(name, self._ctx.delete_property))

    def is_extensible(self) -> bool:
        self._require_live()
        return self._settle(self._ctx.is_extensible(self._handle))

    def prevent_extensions(self) -> bool:
        self._require_live()
        return self._settle(self._ctx.prevent_extensions(self._handle))

    def set_prototype(self, proto: 'Value') -> bool:
        self._require_live()
        proto._require_live()
        return self._settle(self._ctx.set_prototype(self._handle, proto.handle))

    def get_prototype(self) -> 'Value':
        self._require_live()
        return self._wrap(self._ctx.get_prototype(self._handle))

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def call(self, this: Optional['Value'] = None,
             args: Sequence['Value'] = ()) -> 'Value':
        """Call this value as a function.

        Returns the EXCEPTION value on failure; the thrown value is then
        available from the context's get_exception().
        """
        self._require_live()
        for arg in args:
            arg._require_live()
        arg_handles = [arg.handle for arg in args]
        if this is not None:
            return self._wrap(self._ctx.call(self._handle, this.handle, arg_handles))
        undefined = self._ctx.new_undefined()
        try:
            return self._wrap(self._ctx.call(self._handle, undefined, arg_handles))
        finally:
            self._ctx.runtime.free_value(undefined)

    def invoke(self, name: str, args: Sequence['Value'] = ()) -> 'Value':
        """Look up method `name` on this value and call it with this value as receiver."""
        self._require_live()
        for arg in args:
            arg._require_live()
        arg_handles = [arg.handle for arg in args]
        return self._wrap(self._with_atom(name, self._ctx.invoke, arg_handles))

    # ------------------------------------------------------------------
    # Type predicates
    # ------------------------------------------------------------------

    @property
    def is_exception(self) -> bool:
        return self._handle == EXCEPTION

    def type_of(self) -> str:
        """The `typeof` name, with 'null' for null and 'exception' for EXCEPTION."""
        if self._handle == EXCEPTION:
            return "exception"
        self._require_live()
        return self._ctx.type_of(self._handle)

    def is_undefined(self) -> bool:
        return self.type_of() == "undefined"

    def is_null(self) -> bool:
        return self.type_of() == "null"

    def is_object(self) -> bool:
        return self.type_of() in ("object", "function")

    def is_function(self) -> bool:
        return self.type_of() == "function"

    def is_array(self) -> bool:
        if self._handle == EXCEPTION:
            return False
        self._require_live()
        return self._ctx.is_array(self._handle)

    def is_error(self) -> bool:
        if self._handle == EXCEPTION:
            return False
        self._require_live()
        return self._ctx.is_error(self._handle)
