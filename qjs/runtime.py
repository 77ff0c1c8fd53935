"""
Runtime Module

Runtime owns one engine heap; RuntimeRef is a non-owning handle used for
configuration, collection and native class registration. Any number of
RuntimeRefs may alias one runtime.

Lifetime:
- Runtime.free() (or context-manager exit, or Python collecting the Runtime)
  destroys the heap exactly once
- Destruction finalizes every remaining engine object, so every registered
  closure is released
- Contexts and Values must not outlive their runtime; using them afterwards
  raises EngineError
"""

import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Union

from qjs.engine.classes import ClassDef, MarkFunc, new_class_id
from qjs.engine.runtime import EngineRuntime
from qjs.value import Value

if TYPE_CHECKING:
    from qjs.config import RuntimeConfig

logger = logging.getLogger(__name__)

# finalizer(runtime_ref, payload)
Finalizer = Callable[['RuntimeRef', Any], None]
# gc_mark(runtime_ref, payload, mark_func)
GCMark = Callable[['RuntimeRef', Any, MarkFunc], None]


class RuntimeRef:
    """Non-owning handle to an engine runtime."""

    def __init__(self, engine: EngineRuntime):
        self._engine = engine

    @property
    def engine(self) -> EngineRuntime:
        return self._engine

    @property
    def alive(self) -> bool:
        return self._engine.alive

    def __eq__(self, other) -> bool:
        return isinstance(other, RuntimeRef) and other._engine is self._engine

    def __hash__(self) -> int:
        return id(self._engine)

    def __repr__(self) -> str:
        state = "alive" if self.alive else "freed"
        return f"<RuntimeRef {self._engine.info or hex(id(self._engine))} {state}>"

    # Opaque payload
    def set_opaque(self, payload: Any) -> None:
        self._engine.opaque = payload

    def get_opaque(self) -> Any:
        return self._engine.opaque

    # Configuration
    def set_runtime_info(self, info: str) -> None:
        self._engine.info = info

    def set_memory_limit(self, limit: int) -> None:
        self._engine.set_memory_limit(limit)

    def set_gc_threshold(self, threshold: int) -> None:
        self._engine.set_gc_threshold(threshold)

    def set_max_stack_size(self, size: int) -> None:
        self._engine.set_max_stack_size(size)

    # Collection
    def run_gc(self) -> None:
        self._engine.run_gc()

    def is_live_object(self, value: Value) -> bool:
        return self._engine.is_live_object(value.handle)

    def mark_value(self, value: Value, mark_func: MarkFunc) -> None:
        """Report `value` as reachable. Only valid inside a gc_mark callback."""
        self._engine.mark_value(value.handle, mark_func)

    @property
    def gc_count(self) -> int:
        return self._engine.gc_count

    # Native classes
    def register_class(self, class_name: str,
                       finalizer: Optional[Finalizer] = None,
                       gc_mark: Optional[GCMark] = None,
                       class_id: Optional[int] = None) -> int:
        """Register a native class in this runtime and return its class id."""
        if class_id is None:
            class_id = new_class_id()

        engine_finalizer = None
        if finalizer is not None:
            def engine_finalizer(engine, payload):
                finalizer(RuntimeRef(engine), payload)

        engine_gc_mark = None
        if gc_mark is not None:
            def engine_gc_mark(engine, payload, mark_func):
                gc_mark(RuntimeRef(engine), payload, mark_func)

        self._engine.register_class(
            class_id, ClassDef(class_name, engine_finalizer, engine_gc_mark))
        return class_id

    # Diagnostics
    def memory_usage(self) -> Dict[str, int]:
        return self._engine.memory_usage()

    def dump_memory_usage(self) -> str:
        return self._engine.dump_memory_usage()

    def value_refcount(self, value: Union[Value, int]) -> int:
        handle = value.handle if isinstance(value, Value) else value
        return self._engine.refcount(handle)

    def live_handle_count(self) -> int:
        return self._engine.live_handle_count()

    @property
    def context_count(self) -> int:
        return self._engine.context_count


class Runtime:
    """Exclusively owned engine heap.

    Forwards every RuntimeRef operation, so `runtime.run_gc()` and
    `runtime.ref.run_gc()` are the same call.
    """

    def __init__(self, config: Optional['RuntimeConfig'] = None):
        self._engine = EngineRuntime()
        self._ref = RuntimeRef(self._engine)
        if config is not None:
            config.apply(self._ref)
        logger.debug("runtime created%s", f" ({config.info})" if config and config.info else "")

    @property
    def ref(self) -> RuntimeRef:
        return self._ref

    def __getattr__(self, name):
        if name.startswith('_'):
            raise AttributeError(name)
        return getattr(self._ref, name)

    def free(self) -> None:
        engine = getattr(self, '_engine', None)
        if engine is None or not engine.alive:
            return
        engine.free()
        logger.debug("runtime freed")

    def __del__(self):
        self.free()

    def __enter__(self) -> 'Runtime':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.free()
