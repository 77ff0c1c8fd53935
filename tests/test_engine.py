"""
Tests for the engine binding layer.

Covers the handle table, pending exceptions, native classes and the
finalization guard directly against EngineRuntime/EngineContext.
"""

import os
import sys

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from qjs.engine import (
    EXCEPTION, AtomTable, ClassDef, ClassId, EngineContext, EngineRuntime,
    EvalFlags, new_class_id,
)
from qjs.errors import EngineError, OutOfMemoryError


@pytest.fixture
def engine():
    rt = EngineRuntime()
    yield rt
    rt.free()


@pytest.fixture
def ectx(engine):
    ctx = EngineContext(engine)
    yield ctx
    ctx.free()


class TestHandleTable:
    """Reference counting of handles."""

    def test_new_value_has_count_one(self, engine, ectx):
        """Fresh handles start with one count."""
        handle = ectx.new_object()
        assert handle != EXCEPTION
        assert engine.refcount(handle) == 1
        engine.free_value(handle)

    def test_dup_and_free(self, engine, ectx):
        """dup adds a count and free removes one."""
        handle = ectx.new_string("abc")
        engine.dup_value(handle)
        assert engine.refcount(handle) == 2
        engine.free_value(handle)
        assert engine.refcount(handle) == 1
        engine.free_value(handle)
        assert engine.refcount(handle) == 0

    def test_exception_handle_is_never_counted(self, engine):
        """The EXCEPTION handle ignores dup and free."""
        assert engine.dup_value(EXCEPTION) == EXCEPTION
        engine.free_value(EXCEPTION)
        assert engine.refcount(EXCEPTION) == 0

    def test_live_handle_count_tracks_frees(self, engine, ectx):
        """The live handle count follows allocation and release."""
        baseline = engine.live_handle_count()
        handles = [ectx.new_number(i) for i in range(5)]
        assert engine.live_handle_count() == baseline + 5
        for handle in handles:
            engine.free_value(handle)
        assert engine.live_handle_count() == baseline

    def test_is_live_object(self, engine, ectx):
        """Only objects count as live objects."""
        obj = ectx.new_object()
        num = ectx.new_number(1)
        assert engine.is_live_object(obj)
        assert not engine.is_live_object(num)
        engine.free_value(obj)
        engine.free_value(num)
        assert not engine.is_live_object(obj)

    def test_wide_integers_survive(self, engine, ectx):
        """Integers wider than int32 keep their value."""
        handle = ectx.new_number(1 << 40)
        assert ectx.to_number(handle) == float(1 << 40)
        engine.free_value(handle)


class TestPendingException:
    """Failures move the thrown value into the context slot."""

    def test_eval_failure_sets_pending(self, engine, ectx):
        """A failing eval leaves its error pending."""
        assert ectx.eval("throw 7") == EXCEPTION
        assert ectx.has_exception()
        handle = ectx.get_exception()
        assert ectx.to_int32(handle) == 7
        assert not ectx.has_exception()
        engine.free_value(handle)

    def test_get_exception_without_pending_is_null(self, engine, ectx):
        """get_exception with nothing pending returns null."""
        handle = ectx.get_exception()
        assert ectx.type_of(handle) == "null"
        engine.free_value(handle)

    def test_newer_failure_replaces_older(self, engine, ectx):
        """A newer failure replaces an unread older one."""
        ectx.eval("throw 1")
        ectx.eval("throw 2")
        handle = ectx.get_exception()
        assert ectx.to_int32(handle) == 2
        engine.free_value(handle)

    def test_flag_primitive_reports_minus_one(self, engine, ectx):
        """Flag primitives report -1 on failure."""
        frozen = ectx.eval("Object.freeze({a: 1})")
        value = ectx.new_number(2)
        assert ectx.set_property(frozen, "a", value) == -1
        assert ectx.has_exception()
        engine.free_value(ectx.get_exception())
        engine.free_value(frozen)
        engine.free_value(value)

    def test_coercion_returns_none_on_failure(self, engine, ectx):
        """Coercions return None on failure."""
        sym = ectx.eval("Symbol('s')")
        assert ectx.to_number(sym) is None
        assert ectx.has_exception()
        engine.free_value(ectx.get_exception())
        engine.free_value(sym)


class TestMemoryExhaustion:
    """Failures caused by an exhausted heap."""

    @staticmethod
    def _exhaust(monkeypatch, engine, *names):
        real = engine.primitive

        def primitive(name, *args):
            if name in names:
                raise OutOfMemoryError(f"engine primitive '{name}' ran out of memory")
            return real(name, *args)

        monkeypatch.setattr(engine, "primitive", primitive)

    def test_reserved_handle_is_never_counted(self, engine):
        """The out-of-memory handle ignores dup and free."""
        handle = engine.out_of_memory_handle
        assert engine.dup_value(handle) == handle
        engine.free_value(handle)
        engine.free_value(handle)
        assert engine.refcount(handle) == 1

    def test_reserved_handle_renders_without_the_heap(self, engine, ectx):
        """The out-of-memory error converts to text without allocating."""
        assert ectx.to_cstring(engine.out_of_memory_handle) == "InternalError: out of memory"

    def test_failed_release_is_retried(self, engine, ectx, monkeypatch):
        """A release that runs out of memory is queued, then flushed."""
        handle = ectx.new_object()
        self._exhaust(monkeypatch, engine, "free")
        engine.free_value(handle)
        assert engine.deferred_count == 1
        monkeypatch.undo()
        assert engine.refcount(handle) == 0
        assert engine.deferred_count == 0

    def test_value_primitive_fails_with_reserved_error(self, engine, ectx, monkeypatch):
        """An exhausted evaluation returns EXCEPTION with the reserved error pending."""
        self._exhaust(monkeypatch, engine, "evaluate")
        assert ectx.eval("1 + 1") == EXCEPTION
        monkeypatch.undo()
        assert ectx.take_pending() == engine.out_of_memory_handle

    def test_flag_and_coercion_fail_with_reserved_error(self, engine, ectx, monkeypatch):
        """Flag and coercion primitives report -1 and None when exhausted."""
        obj = ectx.new_object()
        self._exhaust(monkeypatch, engine, "hasProperty", "toInt32")
        assert ectx.has_property(obj, "x") == -1
        assert ectx.to_int32(obj) is None
        monkeypatch.undo()
        assert ectx.take_pending() == engine.out_of_memory_handle
        engine.free_value(obj)

    def test_lost_pending_falls_back_to_reserved_error(self, engine, ectx, monkeypatch):
        """When the thrown value cannot be collected the reserved error stands in."""
        self._exhaust(monkeypatch, engine, "takePending")
        assert ectx.eval("throw new Error('boom')") == EXCEPTION
        monkeypatch.undo()
        assert ectx.take_pending() == engine.out_of_memory_handle


class TestEvaluation:
    """Evaluation flags and file names."""

    def test_module_flag_rejected(self, ectx):
        """The module eval flag raises ValueError."""
        with pytest.raises(ValueError):
            ectx.eval("1", flags=EvalFlags.TYPE_MODULE)

    def test_compile_only_rejected(self, ectx):
        """The compile-only eval flag raises ValueError."""
        with pytest.raises(ValueError):
            ectx.eval("1", flags=EvalFlags.COMPILE_ONLY)

    def test_strict_flag(self, engine, ectx):
        """The strict eval flag applies strict mode."""
        handle = ectx.eval("undeclared_strict_name = 1", flags=EvalFlags.STRICT)
        assert handle == EXCEPTION
        error = ectx.get_exception()
        assert ectx.to_cstring(error).startswith("ReferenceError")
        engine.free_value(error)

    def test_syntax_error_carries_filename(self, engine, ectx):
        """Syntax errors record the file name."""
        assert ectx.eval("let = ;", "broken.js") == EXCEPTION
        error = ectx.get_exception()
        name = ectx.get_property(error, "fileName")
        assert ectx.to_cstring(name) == "broken.js"
        engine.free_value(name)
        engine.free_value(error)


class TestNativeClasses:
    """Arena-backed class objects and their finalizers."""

    def test_class_ids_are_unique(self):
        """new_class_id never repeats."""
        assert new_class_id() != new_class_id()
        assert new_class_id() >= ClassId.INIT_COUNT

    def test_duplicate_registration_rejected(self, engine):
        """Registering a class id twice raises EngineError."""
        class_id = new_class_id()
        engine.register_class(class_id, ClassDef("Thing"))
        with pytest.raises(EngineError):
            engine.register_class(class_id, ClassDef("Thing"))

    def test_unregistered_class_rejected(self, ectx):
        """Class objects need a registered class."""
        with pytest.raises(EngineError):
            ectx.new_object_class(new_class_id())

    def test_opaque_round_trip(self, engine, ectx):
        """Opaque payloads round-trip through class objects."""
        class_id = new_class_id()
        engine.register_class(class_id, ClassDef("Thing"))
        obj = ectx.new_object_class(class_id)
        payload = object()
        assert ectx.set_object_opaque(obj, payload)
        assert ectx.get_object_opaque(obj, class_id) is payload
        assert ectx.get_object_opaque(obj, class_id + 1) is None
        engine.free_value(obj)

    def test_plain_object_has_no_opaque(self, engine, ectx):
        """Plain objects have no opaque payload."""
        obj = ectx.new_object()
        assert not ectx.set_object_opaque(obj, "x")
        assert ectx.get_object_opaque(obj, ClassId.OBJECT) is None
        engine.free_value(obj)

    def test_finalizer_runs_once_after_collection(self, engine, ectx):
        """The class finalizer runs once after collection."""
        seen = []
        class_id = new_class_id()
        engine.register_class(class_id, ClassDef(
            "Thing", finalizer=lambda rt, payload: seen.append(payload)))
        obj = ectx.new_object_class(class_id)
        ectx.set_object_opaque(obj, "payload")
        engine.free_value(obj)
        engine.run_gc()
        engine.run_gc()
        assert seen == ["payload"]
        assert not engine.arena

    def test_engine_calls_refused_while_finalizing(self, engine, ectx):
        """Engine calls raise EngineError inside a finalizer."""
        errors = []

        def finalizer(rt, payload):
            try:
                rt.live_handle_count()
            except EngineError as e:
                errors.append(e)

        class_id = new_class_id()
        engine.register_class(class_id, ClassDef("Guarded", finalizer=finalizer))
        engine.free_value(ectx.new_object_class(class_id))
        engine.run_gc()
        assert len(errors) == 1

    def test_free_runs_remaining_finalizers(self):
        """Freeing the runtime finalizes every remaining class object."""
        engine = EngineRuntime()
        ectx = EngineContext(engine)
        seen = []
        class_id = new_class_id()
        engine.register_class(class_id, ClassDef(
            "Thing", finalizer=lambda rt, payload: seen.append(payload)))
        obj = ectx.new_object_class(class_id)
        ectx.set_object_opaque(obj, 1)
        global_handle = ectx.global_object()
        ectx.set_property(global_handle, "keep", obj)
        ectx.free()
        engine.free()
        assert seen == [1]


class TestMarking:
    """Trace pass over class objects."""

    def test_mark_outside_trace_rejected(self, engine, ectx):
        """Marking outside a trace raises EngineError."""
        handle = ectx.new_object()
        with pytest.raises(EngineError):
            engine.mark_value(handle, lambda rt, h: None)
        engine.free_value(handle)

    def test_gc_mark_reports_objects_only(self, engine, ectx):
        """Only live objects are reported by mark_value."""
        class_id = new_class_id()

        def gc_mark(rt, payload, mark_func):
            for handle in payload:
                rt.mark_value(handle, mark_func)

        engine.register_class(class_id, ClassDef("Holder", gc_mark=gc_mark))
        holder = ectx.new_object_class(class_id)
        inner = ectx.new_object()
        number = ectx.new_number(3)
        ectx.set_object_opaque(holder, [inner, number])
        engine.run_gc()
        assert engine.marked_handles == [inner]
        for handle in (holder, inner, number):
            engine.free_value(handle)


class TestAtomTable:
    """Interned property names."""

    def test_same_name_same_atom(self):
        """Interning a name twice gives the same atom."""
        atoms = AtomTable()
        first = atoms.new("x")
        second = atoms.new("x")
        assert first == second
        assert atoms.name(first) == "x"

    def test_atom_released_at_zero(self):
        """An atom is dropped when its count reaches zero."""
        atoms = AtomTable()
        atom = atoms.new("x")
        atoms.dup(atom)
        atoms.free(atom)
        assert len(atoms) == 1
        atoms.free(atom)
        assert len(atoms) == 0
        with pytest.raises(KeyError):
            atoms.name(atom)


class TestRuntimeTeardown:
    """Use after free."""

    def test_primitive_after_free_raises(self):
        """Primitives on a freed runtime raise EngineError."""
        engine = EngineRuntime()
        engine.free()
        assert not engine.alive
        with pytest.raises(EngineError):
            engine.live_handle_count()

    def test_free_value_after_free_is_noop(self):
        """Releasing a handle after runtime free does nothing."""
        engine = EngineRuntime()
        ectx = EngineContext(engine)
        handle = ectx.new_object()
        engine.free()
        engine.free_value(handle)
        engine.free()
