"""
Runtime Configuration

Loads runtime limits from a mapping or from the `[runtime]` table of a TOML
file and applies them to a RuntimeRef.

Example:
    [runtime]
    info = "worker-pool"
    memory_limit = 67108864
    gc_threshold = 262144
    max_stack_size = 1048576
"""

from dataclasses import dataclass, fields
from typing import TYPE_CHECKING, Any, Mapping, Optional

from qjs.errors import ConfigError

# TOML parsing - use stdlib tomllib in 3.11+, fallback to tomli
try:
    import tomllib
except ImportError:
    try:
        import tomli as tomllib
    except ImportError:
        tomllib = None

if TYPE_CHECKING:
    from qjs.runtime import RuntimeRef


@dataclass
class RuntimeConfig:
    """Optional limits applied to a runtime at creation"""
    info: Optional[str] = None
    memory_limit: Optional[int] = None
    gc_threshold: Optional[int] = None
    max_stack_size: Optional[int] = None

    def __post_init__(self):
        if self.info is not None and not isinstance(self.info, str):
            raise ConfigError(f"runtime.info must be a string, got {self.info!r}")
        for name in ('memory_limit', 'gc_threshold', 'max_stack_size'):
            value = getattr(self, name)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"runtime.{name} must be an integer, got {value!r}")
            if value < 0:
                raise ConfigError(f"runtime.{name} must be non-negative, got {value}")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> 'RuntimeConfig':
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"unknown runtime option(s): {', '.join(unknown)}")
        return cls(**dict(data))

    @classmethod
    def from_toml(cls, path: str) -> 'RuntimeConfig':
        """Read the [runtime] table of a TOML file. A missing table means defaults."""
        if tomllib is None:
            raise ConfigError(
                "TOML parsing not available.\n"
                "Install with: pip install tomli"
            )

        try:
            with open(path, 'rb') as f:
                data = tomllib.load(f)
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e}") from e
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Failed to parse {path}: {e}") from e

        table = data.get('runtime', {})
        if not isinstance(table, dict):
            raise ConfigError(f"{path}: [runtime] must be a table")
        return cls.from_mapping(table)

    def apply(self, ref: 'RuntimeRef') -> None:
        if self.info is not None:
            ref.set_runtime_info(self.info)
        if self.memory_limit is not None:
            ref.set_memory_limit(self.memory_limit)
        if self.gc_threshold is not None:
            ref.set_gc_threshold(self.gc_threshold)
        if self.max_stack_size is not None:
            ref.set_max_stack_size(self.max_stack_size)
