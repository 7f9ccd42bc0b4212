"""Error taxonomy for tree builds.

Pruning is not an error: a node with no matching rows is reported through
``BranchOutcome.pruned()`` and silently dropped by its parent.

Fatal errors (abort the whole build):
- ValidationFailure: a node reached a state the provider contract rules out
- ConfigurationError: the build was set up in a way that cannot proceed
- BuildCancelled: an external abort was requested

Branch-scoped errors (converted into a failed leaf):
- TransientQueryFailure: a statistics query kept failing after retries
"""

from __future__ import annotations

from typing import Any, Sequence


class VartreeError(Exception):
    """Base class for all vartree errors."""


class ValidationFailure(VartreeError):
    """A node reached a state the statistics provider contract rules out."""

    def __init__(
        self,
        message: str,
        *,
        depth: int | None = None,
        filter_columns: Sequence[str] = (),
        filter_bindings: Sequence[Any] = (),
    ):
        super().__init__(message)
        self.depth = depth
        self.filter_columns = tuple(filter_columns)
        self.filter_bindings = tuple(filter_bindings)

    def __str__(self) -> str:
        base = super().__str__()
        if not self.filter_columns:
            return base
        where = ", ".join(
            f"{col}={val!r}" for col, val in zip(self.filter_columns, self.filter_bindings)
        )
        return f"{base} (depth={self.depth}, where {where})"


class ConfigurationError(VartreeError):
    """The build request or training parameters cannot produce a tree."""


class TransientQueryFailure(VartreeError):
    """A statistics query for one branch failed after all retries."""

    def __init__(
        self,
        operation: str,
        cause: BaseException | None = None,
        *,
        attempts: int = 0,
        filter_columns: Sequence[str] = (),
        filter_bindings: Sequence[Any] = (),
    ):
        self.operation = operation
        self.cause = cause
        self.attempts = attempts
        self.filter_columns = tuple(filter_columns)
        self.filter_bindings = tuple(filter_bindings)
        reason = _describe_cause(cause)
        super().__init__(f"{operation} failed after {attempts} attempt(s): {reason}")


class BuildCancelled(VartreeError):
    """The build was aborted through its cancel token."""


class TreeBuildError(VartreeError):
    """The root node produced no tree."""


def _describe_cause(cause: BaseException | None) -> str:
    if cause is None:
        return "unknown error"
    message = str(cause)
    if not message:
        return type(cause).__name__
    return f"{type(cause).__name__}: {message}"
