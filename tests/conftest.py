"""
Pytest configuration and fixtures for qjs interop tests.

Provides reusable fixtures for:
- A fresh runtime and context per test
- Evaluating script and reading results back
- Closures that count their calls and their release
"""

import os
import sys

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from qjs import Context, Runtime


class CountingClosure:
    """Host closure that records calls and counts its own release."""

    released = 0

    def __init__(self, result=None):
        self.calls = []
        self.result = result

    def __call__(self, ctx, this, args, tag):
        self.calls.append((len(args), tag))
        if self.result is None:
            return None
        return self.result(ctx, this, args, tag)

    def __del__(self):
        type(self).released += 1


@pytest.fixture
def runtime():
    """A runtime freed after the test."""
    rt = Runtime()
    yield rt
    rt.free()


@pytest.fixture
def context(runtime):
    """A context in the per-test runtime."""
    ctx = Context(runtime)
    yield ctx
    ctx.free()


@pytest.fixture
def evaluate(context):
    """
    Fixture that returns a function evaluating script to a Value.

    Usage:
        value = evaluate("1 + 1")
        assert context.to_int32(value).unwrap() == 2
    """
    def _evaluate(source: str, filename: str = "<test>"):
        value = context.eval(source, filename)
        assert not value.is_exception, str(context.get_exception())
        return value
    return _evaluate


@pytest.fixture
def global_object(context):
    """The context's global object."""
    value = context.get_global_object()
    yield value
    value.free()


@pytest.fixture
def counting_closure():
    """
    Fixture that returns a CountingClosure factory with a fresh release count.

    Usage:
        closure = counting_closure()
        ...
        assert CountingClosure.released == 1
    """
    CountingClosure.released = 0

    def _make(result=None) -> CountingClosure:
        return CountingClosure(result)
    return _make
