from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """How often a job is attempted and how long to wait between attempts.

    Delay after the n-th failed attempt is `backoff_delay_ms * 2**(n - 1)`,
    capped at `max_backoff_delay_ms`.
    """

    max_attempts: int = 3
    backoff_delay_ms: int = 5000
    max_backoff_delay_ms: int = 5 * 60 * 1000

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.backoff_delay_ms < 0 or self.max_backoff_delay_ms < 0:
            raise ValueError("backoff delays must be non-negative")

    def delay_ms(self, attempt: int) -> int:
        if attempt < 1:
            return 0
        return min(self.backoff_delay_ms * 2 ** (attempt - 1), self.max_backoff_delay_ms)

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts
