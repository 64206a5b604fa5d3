"""重试与退避策略。

等待与停止条件使用 tenacity 的策略对象（wait_exponential、stop_after_attempt、
stop_before_delay、retry_if_exception）；由于 Caller 需要在两次尝试之间产出
RetryScheduled 事件并响应取消，重试循环本身由 Caller 驱动，tenacity 只负责决策。

重试状态显式建模为 RetryState，在各次尝试之间传递：
尝试次数、下一次等待时间、累计耗时与最近一次失败都可以单独检查和测试。
"""

import random
from dataclasses import dataclass, field, fields, replace
from typing import Any, Callable, List, Optional

from tenacity import RetryCallState, retry_if_exception, stop_after_attempt, stop_before_delay, wait_exponential
from tenacity.retry import retry_base
from tenacity.stop import stop_base
from tenacity.wait import wait_base

from assistant_core.domain.exceptions import CallError, RateLimitError, ValidationError


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, CallError) and exc.retryable


class RatioJitterWait(wait_base):
    """在内层等待策略的结果上施加 ±ratio 的比例抖动。"""

    def __init__(self, inner: wait_base, ratio: float, rng: Callable[[], float] = random.random):
        self.inner = inner
        self.ratio = ratio
        self.rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = self.inner(retry_state)
        spread = delay * self.ratio * (2 * self.rng() - 1)
        return max(delay + spread, 0.0)


@dataclass(frozen=True)
class BackoffPolicy:
    """指数退避参数。

    - base_delay: 第一次重试前的等待秒数。
    - multiplier: 每次重试等待时间的放大倍数。
    - jitter: 抖动比例，实际等待在 delay * (1 ± jitter) 之间。
    - max_delay: 单次等待上限（Retry-After 提示除外）。
    - max_attempts: 最大尝试次数（含第一次）。
    - max_elapsed: 从第一次尝试开始的总时间预算（秒）。
    """

    base_delay: float = 0.5
    multiplier: float = 2.0
    jitter: float = 0.2
    max_delay: float = 30.0
    max_attempts: int = 4
    max_elapsed: float = 60.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValidationError(code="INVALID_RETRY_POLICY", message="max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0 or self.max_elapsed < 0:
            raise ValidationError(code="INVALID_RETRY_POLICY", message="delays must not be negative")
        if self.multiplier < 1:
            raise ValidationError(code="INVALID_RETRY_POLICY", message="multiplier must be >= 1")
        if not 0 <= self.jitter <= 1:
            raise ValidationError(code="INVALID_RETRY_POLICY", message="jitter must be within [0, 1]")

    def merged(self, **overrides: Any) -> "BackoffPolicy":
        """按调用覆盖部分参数，值为 None 的参数忽略。"""

        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValidationError(
                code="INVALID_RETRY_POLICY",
                message=f"unknown retry options: {', '.join(sorted(unknown))}",
            )
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def wait_strategy(self, rng: Callable[[], float] = random.random) -> wait_base:
        exponential = wait_exponential(multiplier=self.base_delay, exp_base=self.multiplier, max=self.max_delay)
        return RatioJitterWait(exponential, self.jitter, rng)

    def stop_strategy(self) -> stop_base:
        # 下一次等待结束时若已超出总预算，则不再重试
        return stop_after_attempt(self.max_attempts) | stop_before_delay(self.max_elapsed)

    @staticmethod
    def retry_strategy() -> retry_base:
        return retry_if_exception(_is_retryable)

    def delay_for(self, retry_number: int, rng: Callable[[], float] = random.random) -> float:
        """第 retry_number 次重试（从 1 计）前的等待时间。"""

        call_state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})
        call_state.attempt_number = max(retry_number, 1)
        return self.wait_strategy(rng)(call_state)


@dataclass(frozen=True)
class AttemptRecord:
    attempt: int
    error: CallError
    elapsed: float
    delay: float


@dataclass
class RetryState:
    """一次 Caller 调用期间的重试状态，调用结束后丢弃。"""

    policy: BackoffPolicy = field(default_factory=BackoffPolicy)
    attempt: int = 0
    next_delay: float = 0.0
    elapsed: float = 0.0
    last_error: Optional[CallError] = None
    history: List[AttemptRecord] = field(default_factory=list)

    @property
    def retries(self) -> int:
        """已经发生的重试次数（第一次尝试不算）。"""

        return max(self.attempt - 1, 0)

    def advance(self) -> int:
        """开始新的一次尝试，返回尝试序号（从 1 计）。"""

        self.attempt += 1
        return self.attempt

    def record_failure(
        self,
        error: CallError,
        elapsed: float,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.last_error = error
        self.elapsed = elapsed
        delay = self.policy.wait_strategy(rng)(self._call_state())
        if isinstance(error, RateLimitError) and error.retry_after:
            # 服务端给出的 Retry-After 作为下限
            delay = max(delay, error.retry_after)
        self.next_delay = delay
        self.history.append(AttemptRecord(attempt=self.attempt, error=error, elapsed=elapsed, delay=delay))

    def can_retry(self) -> bool:
        if self.last_error is None:
            return False
        call_state = self._call_state()
        if not self.policy.retry_strategy()(call_state):
            return False
        return not self.policy.stop_strategy()(call_state)

    def _call_state(self) -> RetryCallState:
        """把当前状态投影为 tenacity 策略读取的 RetryCallState。"""

        call_state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})
        call_state.attempt_number = max(self.attempt, 1)
        if self.last_error is not None:
            error = self.last_error
            call_state.set_exception((type(error), error, error.__traceback__))
        call_state.start_time = 0.0
        call_state.outcome_timestamp = self.elapsed
        call_state.upcoming_sleep = self.next_delay
        return call_state
