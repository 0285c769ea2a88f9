"""Phone lookup: number normalization and the resolution engine."""

from ringstreak.lookup.engine import ResolutionEngine
from ringstreak.lookup.normalize import normalize, variants

__all__ = ["ResolutionEngine", "normalize", "variants"]
