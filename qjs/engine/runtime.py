"""
Engine Runtime Module

One QuickJS heap reached through the `quickjs` extension. This is the only
module that talks to the extension directly; everything above it works with
integer handles.

Heap Design:
- One quickjs.Context per runtime (the extension pairs a JSRuntime with a
  single realm, so every EngineContext of a runtime shares it)
- The prelude returns a lookup function; primitives are fetched by name
  and cached
- Handle 0 (EXCEPTION) and the prelude's out-of-memory handle are reserved
  and never counted
- Native callables reach the heap through add_callable(); the engine's
  finalizer drops the Python reference when it collects the object, which
  is how class finalizers and native function releases are driven
- Engine calls are refused while a class finalizer runs; value releases
  requested meanwhile are deferred to the next engine call
- A primitive that fails because the heap is exhausted raises
  OutOfMemoryError; a release that fails that way is deferred as well

Functions implemented:
- primitive: Run a named prelude primitive
- dup_value / free_value / refcount: Handle reference counting
- register_class / new_arena_entry / install_native: Native classes
- run_gc / mark_value / maybe_collect: Collection and tracing
- memory_usage / dump_memory_usage: Heap statistics
- free: Tear the heap down, running every remaining finalizer
"""

import logging
import weakref
from typing import Any, Callable, Dict, List, Optional

import quickjs

from qjs.engine.classes import (
    ArenaEntry, AtomTable, ClassDef, MarkFunc, NativeAnchor, NativeEntry,
)
from qjs.engine.constants import EXCEPTION, NATIVE_GLOBAL
from qjs.engine.prelude import PRELUDE
from qjs.errors import EngineError, OutOfMemoryError

logger = logging.getLogger(__name__)


class EngineRuntime:
    """Owner of one engine heap and its native-class arena."""

    def __init__(self):
        self._js: Optional[quickjs.Context] = quickjs.Context()
        self._lookup = self._js.eval(PRELUDE)
        self._helpers: Dict[str, Any] = {}
        self.out_of_memory_handle: int = self._lookup("outOfMemoryHandle")()
        # Releases must not need a lookup later, when memory may be short.
        self._helper("free")
        self._deferred: List[int] = []
        self._finalizing = 0
        self._tracing = False
        self._marked: List[int] = []

        self.classes: Dict[int, ClassDef] = {}
        self.arena: Dict[int, ArenaEntry] = {}
        self._next_index = 1

        self.atoms = AtomTable()
        self.opaque: Any = None
        self.info: Optional[str] = None
        self.memory_limit: Optional[int] = None
        self.max_stack_size: Optional[int] = None
        self.gc_threshold: Optional[int] = None
        self.gc_count = 0
        self.context_count = 0
        self._gc_baseline = self._malloc_size()

        logger.debug("engine runtime created")

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def alive(self) -> bool:
        return self._js is not None

    @property
    def finalizing(self) -> bool:
        return self._finalizing > 0

    def _require_usable(self, what: str) -> quickjs.Context:
        if self._js is None:
            raise EngineError(f"cannot {what}: runtime has been freed")
        if self._finalizing:
            raise EngineError(f"cannot {what} while a class finalizer is running")
        return self._js

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def _helper(self, name: str):
        helper = self._helpers.get(name)
        if helper is None:
            helper = self._lookup(name)
            self._helpers[name] = helper
        return helper

    def _flush_deferred(self) -> None:
        if not self._deferred:
            return
        pending, self._deferred = self._deferred, []
        release = self._helper("free")
        for position, handle in enumerate(pending):
            try:
                release(handle)
            except quickjs.JSException:
                # Still short of memory; keep the rest for the next call.
                self._deferred = pending[position:] + self._deferred
                return

    @staticmethod
    def _exhausted(error: quickjs.JSException) -> bool:
        # Once the engine is already reporting exhaustion it throws null.
        message = str(error)
        return "out of memory" in message or message == "null"

    def primitive(self, name: str, *args):
        """Run the prelude primitive `name` and return its raw result."""
        self._require_usable(f"run '{name}'")
        self._flush_deferred()
        try:
            return self._helper(name)(*args)
        except quickjs.JSException as e:
            if self._exhausted(e):
                raise OutOfMemoryError(f"engine primitive '{name}' ran out of memory") from e
            raise EngineError(f"engine primitive '{name}' failed: {e}") from e

    # ------------------------------------------------------------------
    # Handle reference counting
    # ------------------------------------------------------------------

    def dup_value(self, handle: int) -> int:
        if handle == EXCEPTION or handle == self.out_of_memory_handle:
            return handle
        return self.primitive("dup", handle)

    def free_value(self, handle: int) -> None:
        """Release one count on `handle`, now or before the next engine call."""
        if handle == EXCEPTION or handle == self.out_of_memory_handle or self._js is None:
            return
        if self._finalizing:
            self._deferred.append(handle)
            return
        try:
            self.primitive("free", handle)
        except OutOfMemoryError:
            self._deferred.append(handle)

    @property
    def deferred_count(self) -> int:
        """Releases waiting for the next engine call."""
        return len(self._deferred)

    def refcount(self, handle: int) -> int:
        if handle == EXCEPTION:
            return 0
        return self.primitive("refcount", handle)

    def live_handle_count(self) -> int:
        return self.primitive("handleCount")

    def is_live_object(self, handle: int) -> bool:
        if handle == EXCEPTION or self._js is None:
            return False
        return bool(self.primitive("isLive", handle))

    # ------------------------------------------------------------------
    # Native classes
    # ------------------------------------------------------------------

    def has_class(self, class_id: int) -> bool:
        return class_id in self.classes

    def register_class(self, class_id: int, class_def: ClassDef) -> None:
        if class_id in self.classes:
            raise EngineError(f"class id {class_id} is already registered")
        self.classes[class_id] = class_def
        logger.debug("registered class %r as id %d", class_def.class_name, class_id)

    def new_arena_entry(self, class_id: int) -> NativeAnchor:
        """Reserve an arena slot and return the anchor that keeps it alive."""
        index = self._next_index
        self._next_index += 1
        self.arena[index] = ArenaEntry(class_id)
        anchor = NativeAnchor(index)
        finalizer = weakref.finalize(anchor, self._finalize_class_object, index)
        finalizer.atexit = False
        return anchor

    def track_native(self, entry: NativeEntry) -> None:
        """Release the entry's context once the engine drops the function."""
        finalizer = weakref.finalize(entry, self._release_native_context, entry.context)
        finalizer.atexit = False

    def install_native(self, native: Callable) -> None:
        """Hand `native` to the heap; the next adopting primitive takes it."""
        js = self._require_usable("install a native callable")
        js.add_callable(NATIVE_GLOBAL, native)

    def _run_finalizer(self, what: str, fn: Callable, *args) -> None:
        self._finalizing += 1
        try:
            fn(*args)
        except Exception:
            logger.exception("%s raised during finalization", what)
        finally:
            self._finalizing -= 1

    def _finalize_class_object(self, index: int) -> None:
        entry = self.arena.pop(index, None)
        if entry is None:
            return
        class_def = self.classes.get(entry.class_id)
        payload, entry.opaque = entry.opaque, None
        self._finalizing += 1
        try:
            if class_def is not None and class_def.finalizer is not None:
                class_def.finalizer(self, payload)
            # Dropping the payload may run arbitrary __del__ code.
            del payload
        except Exception:
            logger.exception("finalizer of class id %d raised", entry.class_id)
        finally:
            self._finalizing -= 1

    def _release_native_context(self, context) -> None:
        self._run_finalizer("native function context release", context.free)

    # ------------------------------------------------------------------
    # Garbage collection
    # ------------------------------------------------------------------

    def _record_mark(self, runtime: "EngineRuntime", handle: int) -> None:
        self._marked.append(handle)

    def mark_value(self, handle: int, mark_func: MarkFunc) -> None:
        if not self._tracing:
            raise EngineError("mark_value is only valid inside a class gc_mark callback")
        if self.is_live_object(handle):
            mark_func(self, handle)

    def _trace(self) -> None:
        self._marked = []
        for entry in list(self.arena.values()):
            class_def = self.classes.get(entry.class_id)
            if class_def is None or class_def.gc_mark is None:
                continue
            self._tracing = True
            try:
                class_def.gc_mark(self, entry.opaque, self._record_mark)
            finally:
                self._tracing = False

    @property
    def marked_handles(self) -> List[int]:
        """Handles reported during the last trace pass."""
        return list(self._marked)

    def run_gc(self) -> None:
        js = self._require_usable("run the garbage collector")
        self._trace()
        self._flush_deferred()
        js.gc()
        self._flush_deferred()
        self.gc_count += 1
        self._gc_baseline = self._malloc_size()

    def maybe_collect(self) -> None:
        """Run a collection once the heap grew by the configured threshold."""
        if self.gc_threshold is None or self._js is None or self._finalizing:
            return
        if self._malloc_size() - self._gc_baseline >= self.gc_threshold:
            self.run_gc()

    # ------------------------------------------------------------------
    # Limits and statistics
    # ------------------------------------------------------------------

    def set_memory_limit(self, limit: int) -> None:
        self._require_usable("set the memory limit").set_memory_limit(limit)
        self.memory_limit = limit

    def set_max_stack_size(self, size: int) -> None:
        self._require_usable("set the stack size").set_max_stack_size(size)
        self.max_stack_size = size

    def set_gc_threshold(self, threshold: int) -> None:
        self.gc_threshold = threshold
        self._gc_baseline = self._malloc_size()

    def _malloc_size(self) -> int:
        if self._js is None:
            return 0
        return int(self._js.memory().get("malloc_size", 0))

    def memory_usage(self) -> Dict[str, int]:
        usage = dict(self._require_usable("compute memory usage").memory())
        usage["handle_count"] = self.live_handle_count()
        usage["class_object_count"] = len(self.arena)
        usage["atom_count_host"] = len(self.atoms)
        return usage

    def dump_memory_usage(self) -> str:
        usage = self.memory_usage()
        lines = [f"QuickJS memory usage -- {self.info or 'runtime'}"]
        width = max(len(key) for key in usage)
        for key in sorted(usage):
            lines.append(f"  {key:<{width}}  {usage[key]}")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def free(self) -> None:
        """Destroy the heap. Every remaining engine object is finalized."""
        if self._js is None:
            return
        js = self._js
        self._js = None
        self._lookup = None
        self._helpers.clear()
        self._deferred.clear()
        # Dropping the last reference to the extension context frees the
        # JSRuntime, which runs the finalizer of every remaining object.
        del js
        logger.debug("engine runtime freed (%d class objects left)", len(self.arena))
