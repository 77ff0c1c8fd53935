"""
Closure Trampoline

Lets Python callables be registered as engine functions whose lifetime is
owned by the engine's garbage collector.

Trampoline Design:
- The callable is boxed; the box is the opaque payload of one anchor object
  of the thread's native closure class
- The engine function keeps the anchor in its data list, so the anchor lives
  exactly as long as the function
- Every call gets a duplicated Context and owned Values for the receiver and
  each argument
- When the engine collects the anchor, the class finalizer disposes the box
  exactly once; the mark callback has nothing to report
- A Python exception escaping the callable is logged and thrown into script
  as an Error naming it
"""

import logging
from typing import TYPE_CHECKING, Any, Callable, List, Optional, Sequence

from qjs.engine.runtime import EngineRuntime
from qjs.errors import EngineError
from qjs.runtime import RuntimeRef
from qjs.value import Value

if TYPE_CHECKING:
    from qjs.context import Context
    from qjs.engine.context import EngineContext

logger = logging.getLogger(__name__)

CLOSURE_CLASS_NAME = "Std_Closure_Class"

# fn(context, this, args, tag) -> Value or None
Closure = Callable[['Context', Value, List[Value], int], Optional[Value]]


class BoxedClosure:
    """Heap-independent owner of one host callable."""

    __slots__ = ("fn",)

    def __init__(self, fn: Closure):
        self.fn: Optional[Closure] = fn

    @property
    def disposed(self) -> bool:
        return self.fn is None

    def dispose(self) -> None:
        self.fn = None

    def __call__(self, ctx: 'Context', this: Value, args: List[Value], tag: int):
        if self.fn is None:
            raise EngineError("closure has already been released")
        return self.fn(ctx, this, args, tag)


def _finalize_closure(ref: RuntimeRef, payload: Any) -> None:
    if isinstance(payload, BoxedClosure):
        payload.dispose()
        logger.debug("closure released")


def _mark_closure(ref: RuntimeRef, payload: Any, mark_func) -> None:
    pass


class ClosureClass:
    """Per-thread capability token for creating closure functions.

    The class id is allocated once per thread; each runtime registers the
    class the first time a Context of that thread is created in it.
    """

    def __init__(self, class_id: int, thread_id: int):
        self.class_id = class_id
        self.thread_id = thread_id

    def __repr__(self) -> str:
        return f"<ClosureClass id={self.class_id} thread={self.thread_id}>"

    def ensure_registered(self, engine: EngineRuntime) -> None:
        if engine.has_class(self.class_id):
            return
        RuntimeRef(engine).register_class(
            CLOSURE_CLASS_NAME, _finalize_closure, _mark_closure, class_id=self.class_id)

    def new_function(self, context: 'Context', fn: Closure, name: str,
                     length: int = 0, tag: int = 0) -> Value:
        if not callable(fn):
            raise TypeError(f"closure must be callable, got {type(fn).__name__}")
        engine_ctx = context.engine_context
        self.ensure_registered(engine_ctx.runtime)

        box = BoxedClosure(fn)
        anchor = context.new_object_class(self.class_id)
        try:
            if anchor.is_exception:
                return anchor
            context.set_object_opaque(anchor, box)
            trampoline = _Trampoline(type(context), self)
            handle = engine_ctx.new_function(trampoline, name, length, tag, [anchor.handle])
            return Value(handle, engine_ctx)
        finally:
            # The function holds the anchor through its data list.
            anchor.free()


class _Trampoline:
    """Native entry shared by every closure function of one token."""

    __slots__ = ("context_type", "token")

    def __init__(self, context_type, token: ClosureClass):
        self.context_type = context_type
        self.token = token

    def __call__(self, engine_ctx: 'EngineContext', this_handle: int,
                 arg_handles: Sequence[int], magic: int,
                 data_handles: Sequence[int]) -> int:
        runtime = engine_ctx.runtime
        ctx = self.context_type._adopt(engine_ctx.dup(), self.token)
        try:
            this = Value(runtime.dup_value(this_handle), engine_ctx)
            args = [Value(runtime.dup_value(handle), engine_ctx) for handle in arg_handles]
            box = engine_ctx.get_object_opaque(data_handles[0], self.token.class_id)
            try:
                if box is None:
                    raise EngineError("closure anchor has no payload")
                result = box(ctx, this, args, magic)
                if result is not None and not isinstance(result, Value):
                    raise TypeError(
                        f"closure returned {type(result).__name__}, expected Value or None")
            except Exception as e:
                logger.exception("host closure raised")
                error = ctx.new_error(f"{type(e).__name__}: {e}")
                ctx.throw(error)
                error.free()
                return -engine_ctx.take_pending()

            if result is None:
                return engine_ctx.new_undefined()
            if result.is_exception:
                return -engine_ctx.take_pending()
            return runtime.dup_value(result.handle)
        finally:
            ctx.free()
