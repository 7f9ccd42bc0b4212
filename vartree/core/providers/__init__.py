"""Statistics provider registry and factory.

Provides:
- BUILTIN_PROVIDERS: names of the known providers
- get_provider(): Create a provider instance from a provider name

Each build receives its provider explicitly; there is no process-wide
provider instance.
"""

import importlib

from .base import StatsProvider


# =============================================================================
# Provider Registry
# =============================================================================

# Each entry: (module, class_name, default_kwargs)
# Lazy-imported so optional backends are only loaded when used.
_BUILTIN_REGISTRY: dict[str, dict] = {
    "sqlite": {
        "module": ".sqlite",
        "class": "SQLiteStatsProvider",
    },
    "memory": {
        "module": ".memory",
        "class": "InMemoryStatsProvider",
    },
}

BUILTIN_PROVIDERS = tuple(sorted(_BUILTIN_REGISTRY))


def get_provider(provider_name: str, **kwargs) -> StatsProvider:
    """Create a provider instance by name.

    Args:
        provider_name: Provider name ("sqlite" or "memory")
        **kwargs: Passed to the provider constructor
            (e.g. ``database=...`` for sqlite, ``tables=...`` for memory)

    Returns:
        StatsProvider instance

    Raises:
        ValueError: If provider is unknown
    """
    if provider_name not in _BUILTIN_REGISTRY:
        raise ValueError(
            f"Unknown statistics provider: {provider_name!r}. "
            f"Available: {', '.join(BUILTIN_PROVIDERS)}"
        )

    entry = _BUILTIN_REGISTRY[provider_name]
    module = importlib.import_module(entry["module"], package=__package__)
    cls = getattr(module, entry["class"])

    merged = dict(entry.get("kwargs", {}))
    merged.update(kwargs)
    return cls(**merged)


__all__ = ["StatsProvider", "BUILTIN_PROVIDERS", "get_provider"]
