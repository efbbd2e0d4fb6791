"""Retry policy objects: bounded attempts, exponential backoff, circuit breaker."""

from dataclasses import dataclass, field

from loguru import logger

from taskdag.core.config import Settings
from taskdag.core.exceptions import CircuitOpenError


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff between attempts.

    Example:
        >>> policy = BackoffPolicy(base_seconds=1.0, cap_seconds=30.0)
        >>> [policy.delay(n) for n in range(1, 7)]
        [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]
    """

    base_seconds: float = 1.0
    multiplier: float = 2.0
    cap_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.base_seconds < 0:
            raise ValueError("base_seconds must be >= 0")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        if attempt < 1:
            return 0.0
        return min(self.cap_seconds, self.base_seconds * self.multiplier ** (attempt - 1))


@dataclass
class CircuitBreaker:
    """Abort after too many failures across phases without a clean pass."""

    threshold: int = 5
    failures: int = 0

    @property
    def is_open(self) -> bool:
        return self.failures >= self.threshold

    def record_success(self) -> None:
        self.failures = 0

    def record_failure(self, phase: str | None = None) -> None:
        """
        Count a failure.

        Raises:
            CircuitOpenError: When the threshold is reached.
        """
        self.failures += 1
        logger.debug(f"Consecutive failures: {self.failures}/{self.threshold}")
        if self.is_open:
            raise CircuitOpenError(
                f"Circuit breaker open after {self.failures} consecutive failures",
                phase=phase,
                details={"consecutiveFailures": self.failures},
            )


@dataclass
class RetryPolicy:
    """Attempt limits per phase and per session, plus the backoff schedule."""

    max_attempts_per_phase: int = 3
    max_total_attempts: int = 10
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts_per_phase=settings.max_attempts_per_phase,
            max_total_attempts=settings.max_total_attempts,
            backoff=BackoffPolicy(
                base_seconds=settings.backoff_base_seconds,
                cap_seconds=settings.backoff_cap_seconds,
            ),
        )

    def allows(self, phase_attempts: int, total_attempts: int) -> bool:
        """Whether another attempt may start after the given counts."""
        return (
            phase_attempts < self.max_attempts_per_phase
            and total_attempts < self.max_total_attempts
        )
