"""
Interop Errors

Exceptions raised on the host side. Script-level failures travel through
Value/Result instead; these only surface when the host misuses the layer,
when the engine itself fails, or when a Result is unwrapped the wrong way.
"""


class InteropError(Exception):
    """Base exception for qjs interop errors"""
    pass


class EngineError(InteropError):
    """Engine primitive failed or was used after its runtime/context died"""
    pass


class OutOfMemoryError(EngineError):
    """Engine heap exhausted while running a primitive"""
    pass


class ScriptError(InteropError):
    """Script exception surfaced to the host (unwrapping an Err)"""

    def __init__(self, message: str, exception=None):
        super().__init__(message)
        self.exception = exception


class ResultError(InteropError):
    """Result unwrapped on the wrong variant"""
    pass


class ConfigError(InteropError):
    """Invalid runtime configuration"""
    pass
