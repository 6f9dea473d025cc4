"""Error taxonomy and result types returned by advancement operations."""

import functools
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any

log = logging.getLogger(__name__)


class AdvancementError(Exception):
    kind = "error"

    def __init__(self, message):
        self.message = message
        super().__init__(message)


class NotAuthenticated(AdvancementError):
    kind = "not_authenticated"


class PermissionDenied(AdvancementError):
    kind = "permission_denied"


class NotFound(AdvancementError):
    kind = "not_found"


class ValidationFailed(AdvancementError):
    kind = "validation_failed"


class NoVersionConfigured(ValidationFailed):
    pass


class ConflictIgnored(AdvancementError):
    """Transition attempted from a terminal or ineligible state; a no-op."""

    kind = "conflict_ignored"

    def __init__(self, message, data=None):
        super().__init__(message)
        self.data = data


@dataclass
class ActionResult:
    success: bool
    data: Any = None
    error: str | None = None
    kind: str | None = None
    ignored: bool = False

    @classmethod
    def ok(cls, data=None):
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, kind, error, data=None):
        return cls(success=False, data=data, error=error, kind=kind)

    @classmethod
    def skipped(cls, error, data=None):
        return cls(success=True, data=data, error=error,
                   kind=ConflictIgnored.kind, ignored=True)


@dataclass
class BulkSummary:
    success_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    errors: list = field(default_factory=list)

    def record(self, label, exc):
        """Count one item's outcome from the exception it raised."""
        if isinstance(exc, ConflictIgnored):
            self.skipped_count += 1
        else:
            self.failed_count += 1
            self.errors.append(f"{label}: {exc.message}")

    def result(self):
        if self.failed_count:
            return ActionResult(success=False, data=self,
                                error=f"{self.failed_count} item(s) failed",
                                kind="partial_batch_failure")
        return ActionResult.ok(self)


def action(fallback_message):
    """Turn an operation's raised errors into an ActionResult.

    The wrapped function returns its payload; a ``BulkSummary`` payload is
    converted with ``BulkSummary.result()``. Storage failures other than
    constraint violations propagate.
    """
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            try:
                data = fn(*args, **kwargs)
            except ConflictIgnored as e:
                return ActionResult.skipped(e.message, e.data)
            except AdvancementError as e:
                return ActionResult.fail(e.kind, e.message)
            except sqlite3.IntegrityError as e:
                log.warning("%s: %s", fallback_message, e)
                return ActionResult.fail(ValidationFailed.kind, fallback_message)
            if isinstance(data, BulkSummary):
                return data.result()
            return ActionResult.ok(data)
        return wrapper
    return decorator
