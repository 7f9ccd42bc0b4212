"""Core models, errors, statistics providers and query limiting."""
