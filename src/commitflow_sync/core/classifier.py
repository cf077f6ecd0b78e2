"""
Failure classification for dispatched operations.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional

from .errors import (
    NetworkError,
    ServerError,
    UnknownOperationError,
    UnresolvedReferenceError,
)
from .operations import DeadLetterReason

DEFAULT_RETRY_LIMIT = 4
DEFAULT_UNRECOVERABLE_STATUSES = (400, 404)
DEFAULT_UNRECOVERABLE_PATTERNS = (r"project not found", r"task not found")


class Verdict(str, Enum):
    RECOVERABLE = "recoverable"
    UNRECOVERABLE = "unrecoverable"


class Disposition(str, Enum):
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


@dataclass
class ErrorClassification:
    """Classification result with the rules that produced it"""

    verdict: Verdict
    reasoning: List[str] = field(default_factory=list)

    @property
    def recoverable(self) -> bool:
        return self.verdict is Verdict.RECOVERABLE


@dataclass
class Decision:
    """What the scheduler should do with a failed operation"""

    disposition: Disposition
    classification: ErrorClassification
    reason: Optional[DeadLetterReason] = None


class ErrorClassifier:
    """Rule-based classifier for dispatch failures.

    Client errors (400/404 by default) and messages saying the referenced
    entity is gone can never succeed on retry. Network failures, timeouts,
    5xx responses and anything unrecognized are treated as transient.
    """

    def __init__(
        self,
        retry_limit: int = DEFAULT_RETRY_LIMIT,
        unrecoverable_statuses: Iterable[int] = DEFAULT_UNRECOVERABLE_STATUSES,
        unrecoverable_patterns: Iterable[str] = DEFAULT_UNRECOVERABLE_PATTERNS,
    ) -> None:
        self.retry_limit = retry_limit
        self.unrecoverable_statuses = frozenset(unrecoverable_statuses)
        self.unrecoverable_patterns = [
            re.compile(pattern, re.IGNORECASE) for pattern in unrecoverable_patterns
        ]

    def classify(self, error: BaseException) -> ErrorClassification:
        """Classify a dispatch failure as recoverable or not"""
        reasoning = []

        if isinstance(error, (UnresolvedReferenceError, UnknownOperationError)):
            reasoning.append(f"{type(error).__name__} cannot succeed on retry")
            return ErrorClassification(Verdict.UNRECOVERABLE, reasoning)

        status = getattr(error, "status", None)
        if isinstance(error, ServerError) or isinstance(status, int):
            if status in self.unrecoverable_statuses:
                reasoning.append(f"HTTP {status} is a permanent client error")
                return ErrorClassification(Verdict.UNRECOVERABLE, reasoning)
            reasoning.append(f"HTTP {status} may be transient")

        message = str(getattr(error, "message", None) or error)
        for pattern in self.unrecoverable_patterns:
            if pattern.search(message):
                reasoning.append(f"Message matched '{pattern.pattern}'")
                return ErrorClassification(Verdict.UNRECOVERABLE, reasoning)

        if isinstance(error, NetworkError):
            reasoning.append("Network failure")
        elif not reasoning:
            reasoning.append(f"Unrecognized {type(error).__name__}, assuming transient")

        return ErrorClassification(Verdict.RECOVERABLE, reasoning)

    def is_exhausted(self, retry_count: int) -> bool:
        return retry_count >= self.retry_limit

    def decide(self, error: BaseException, retry_count: int) -> Decision:
        """Combine classification with the retry bound"""
        classification = self.classify(error)

        if not classification.recoverable:
            return Decision(
                Disposition.DEAD_LETTER,
                classification,
                DeadLetterReason.UNRECOVERABLE,
            )

        if self.is_exhausted(retry_count):
            classification.reasoning.append(
                f"Retry limit reached ({retry_count}/{self.retry_limit})"
            )
            return Decision(
                Disposition.DEAD_LETTER, classification, DeadLetterReason.EXHAUSTED
            )

        return Decision(Disposition.RETRY, classification)
