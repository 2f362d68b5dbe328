from dataclasses import dataclass, field
from typing import Awaitable, Callable, Tuple, Type

from storyseal import config
from storyseal.core.errors import TransientNetworkError


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff applied uniformly by the registration engine."""
    max_attempts: int = config.REGISTRATION_MAX_ATTEMPTS
    base_delay: float = config.RETRY_BASE_DELAY_SECONDS
    max_delay: float = config.RETRY_MAX_DELAY_SECONDS
    multiplier: float = 2.0
    retryable: Tuple[Type[BaseException], ...] = field(default=(TransientNetworkError,))

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    def is_retryable(self, error: BaseException) -> bool:
        return isinstance(error, self.retryable)

    def delay_before(self, attempt: int) -> float:
        """Delay before ``attempt`` (1-based); the first attempt never waits."""
        if attempt <= 1:
            return 0.0
        return min(self.base_delay * self.multiplier ** (attempt - 2), self.max_delay)

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        return attempt < self.max_attempts and self.is_retryable(error)


Sleep = Callable[[float], Awaitable[None]]
