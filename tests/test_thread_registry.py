"""
Tests for the per-thread closure class registry.

Each thread receives one closure-class token the first time it creates a
Context; every runtime registers the class of each thread that uses it.
"""

import os
import sys
import threading

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from qjs import Context, Runtime, ThreadRegistry, registry
from qjs.closures import CLOSURE_CLASS_NAME


def run_in_thread(target):
    """Run target() on a fresh thread and return its result."""
    box = {}

    def runner():
        box["result"] = target()

    thread = threading.Thread(target=runner)
    thread.start()
    thread.join()
    return box["result"]


class TestThreadRegistry:
    """Token creation and identity."""

    def test_token_created_once_per_thread(self):
        """A thread gets the same token every time."""
        reg = ThreadRegistry()
        assert not reg.is_registered()
        first = reg.closure_class()
        second = reg.closure_class()
        assert first is second
        assert reg.is_registered()
        assert reg.registered_count() == 1

    def test_tokens_differ_between_threads(self):
        """Different threads get different tokens."""
        reg = ThreadRegistry()
        here = reg.closure_class()
        there = run_in_thread(reg.closure_class)
        assert there is not here
        assert there.class_id != here.class_id
        assert there.thread_id != here.thread_id
        assert reg.registered_count() == 2
        assert set(reg.tokens()) == {here, there}

    def test_token_records_thread(self):
        """The token records its thread id."""
        reg = ThreadRegistry()
        assert reg.closure_class().thread_id == threading.get_ident()


class TestRuntimeRegistration:
    """Class registration per runtime."""

    def test_every_runtime_registers_the_class(self):
        """Every runtime registers the thread's closure class."""
        token = registry.closure_class()
        with Runtime() as first, Runtime() as second:
            Context(first).free()
            Context(second).free()
            for rt in (first, second):
                class_def = rt.ref.engine.classes[token.class_id]
                assert class_def.class_name == CLOSURE_CLASS_NAME

    def test_thread_context_uses_own_token(self):
        """A Context made on another thread uses that thread's token."""
        main_token = registry.closure_class()

        def work():
            with Runtime() as rt:
                ctx = Context(rt)
                glob = ctx.get_global_object()
                func = ctx.new_c_function(lambda c, t, a, g: c.new_int32(7), "seven")
                glob.set_property("seven", func)
                func.free()
                value = ctx.to_int32(ctx.eval("seven()")).unwrap()
                token = ctx.closure_class
                glob.free()
                ctx.free()
                return token, value

        token, value = run_in_thread(work)
        assert value == 7
        assert token is not main_token
        assert token in registry.tokens()
