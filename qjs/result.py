"""
Exception and Result types.

Fallible conversions return a Result instead of leaving the error pending
on the context:
- Ok(value): success with a value
- Err(exception): failure carrying the thrown script value

Methods:
- .is_ok() -> bool
- .is_err() -> bool
- .unwrap() -> T (raises ScriptError if Err)
- .unwrap_or(default) -> T
- .unwrap_err() -> JSException (raises ResultError if Ok)
"""

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from qjs.errors import ResultError, ScriptError
from qjs.value import Value

T = TypeVar('T')


class JSException:
    """A thrown script value taken out of its context.

    Attribute access is forwarded to the wrapped Value, so an exception can
    be inspected with get_property(), type_of() and friends directly.
    """

    def __init__(self, value: Value):
        self._value = value

    @property
    def value(self) -> Value:
        return self._value

    def __getattr__(self, name):
        if name == '_value':
            raise AttributeError(name)
        return getattr(self._value, name)

    def __str__(self) -> str:
        ctx = self._value.context
        text = ctx.to_cstring(self._value.handle)
        if text is None:
            # Symbols and objects with a throwing toString land here; the
            # secondary error is dropped.
            ctx.runtime.free_value(ctx.take_pending())
            return f"<unprintable {self._value.type_of()}>"
        return text

    def __repr__(self) -> str:
        return f"JSException({self._value!r})"


@dataclass
class Ok(Generic[T]):
    """Successful Result."""
    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value

    def unwrap_err(self) -> JSException:
        raise ResultError(f"called unwrap_err() on Ok({self.value!r})")


@dataclass
class Err:
    """Failed Result holding the thrown script value."""
    exception: JSException

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self):
        raise ScriptError(f"called unwrap() on Err: {self.exception}", self.exception)

    def unwrap_or(self, default):
        return default

    def unwrap_err(self) -> JSException:
        return self.exception


Result = Union[Ok[T], Err]
