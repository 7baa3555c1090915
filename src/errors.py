"""
Error taxonomy for the addon controllers.

Reconcilers raise these; the controller runtime is the only place that
decides whether a failed key is retried, backed off or dropped.
"""

import logging
from typing import Iterable, List, Optional

logger = logging.getLogger(__name__)


class GarlandError(Exception):
    """Base class for all controller errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(GarlandError):
    """A manifest, cluster, credential or association could not be found."""


class ParseError(GarlandError):
    """Malformed data on a watched resource (version, range, annotation)."""


class ValidationError(GarlandError):
    """Well-formed data that violates a constraint (e.g. duplicate addons)."""


class RenderError(GarlandError):
    """A manifest source could not be rendered into objects."""


class CacheSyncError(GarlandError):
    """Informer caches did not report a completed initial sync."""


class RangeParseError(ParseError, NotFoundError):
    """A version range could not be parsed; no manifest can match it."""


class AnnotationParseError(ParseError):
    """The addon-list annotation is not valid JSON."""


class AnnotationValidationError(ValidationError):
    """The addon-list annotation is not a duplicate-free list of names."""


class NoSeedError(NotFoundError):
    """A shoot is not (yet) associated with a seed cluster."""


class SecretNotFoundError(NotFoundError):
    """A credential secret does not exist."""


class NoKubeConfigError(NotFoundError):
    """A credential secret carries no kubeconfig entry."""


class MalformedKubeConfigError(ParseError):
    """A credential secret's kubeconfig could not be decoded or parsed."""


class AggregateError(GarlandError):
    """
    Combination of independent failures.

    Every constituent error is kept in ``errors``; none are suppressed.
    """

    def __init__(self, errors: Iterable[BaseException]):
        self.errors: List[BaseException] = list(errors)
        details = "; ".join(str(e) for e in self.errors)
        super().__init__(f"{len(self.errors)} error(s) occurred: {details}")

    @classmethod
    def from_errors(
        cls, errors: Iterable[BaseException]
    ) -> Optional["AggregateError"]:
        """Return an AggregateError for a non-empty error list, else None."""
        errors = list(errors)
        if not errors:
            return None
        return cls(errors)


def handle_error(err: BaseException) -> None:
    """Report an error that will not be retried. Never raises."""
    logger.error(f"Unhandled error: {err}", exc_info=err)
