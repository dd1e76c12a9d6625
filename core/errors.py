# core/errors.py

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import List, Optional

logger = logging.getLogger(__name__)


class PhotoIndexError(Exception):
    """Base class for indexing and grouping errors"""

    def __init__(self, message: str, photo_id: Optional[str] = None):
        super().__init__(message)
        self.photo_id = photo_id


class DecodeError(PhotoIndexError):
    """Image bytes could not be decoded into pixels"""


class ExtractionError(PhotoIndexError):
    """Hash or feature computation failed for one photo"""


class NotConfiguredError(PhotoIndexError):
    """Index used before a similarity extraction backend was attached"""


class MemoryPressureError(PhotoIndexError):
    """Soft signal raised when memory stays above the critical threshold"""


class CacheIOError(PhotoIndexError):
    """Persistent cache storage failed"""


class OperationCancelled(PhotoIndexError):
    """A long-running batch operation was cancelled"""


@dataclass
class PhotoFailure:
    photo_id: str
    error_type: str
    message: str


@dataclass
class FailureReport:
    """
    Collects per-photo failures of one batch so they are reported once
    instead of flooding the log with one line per photo.
    """
    batch_name: str = "batch"
    failures: List[PhotoFailure] = field(default_factory=list)

    def add(self, photo_id: str, error: BaseException):
        self.failures.append(
            PhotoFailure(photo_id, type(error).__name__, str(error))
        )

    def extend(self, other: 'FailureReport'):
        self.failures.extend(other.failures)

    def __len__(self):
        return len(self.failures)

    @property
    def failed_ids(self) -> List[str]:
        return [f.photo_id for f in self.failures]

    def counts_by_type(self) -> dict:
        return dict(Counter(f.error_type for f in self.failures))

    def get_report(self) -> dict:
        return {
            'batch': self.batch_name,
            'total_failed': len(self.failures),
            'by_type': self.counts_by_type(),
            'failures': [
                {'photo_id': f.photo_id, 'error': f.error_type, 'message': f.message}
                for f in self.failures
            ],
        }

    def log_summary(self, log: logging.Logger = logger):
        if not self.failures:
            return
        reasons = ", ".join(
            f"{name}: {count}" for name, count in sorted(self.counts_by_type().items())
        )
        log.warning(
            "%s: %d photo(s) failed (%s)", self.batch_name, len(self.failures), reasons
        )
        for failure in self.failures:
            log.debug("  %s -> %s: %s", failure.photo_id, failure.error_type, failure.message)
