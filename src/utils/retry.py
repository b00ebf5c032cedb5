"""
存储冲突重试

move / delete_subtree 都可以从当前状态重新推导，遇到死锁 / 锁等待超时时
整个工作单元回滚后重做；超过次数后抛出 TransientStorageError。
"""
import logging
import time
from dataclasses import dataclass
from sqlalchemy.exc import OperationalError
from errors import TransientStorageError

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """
    重试配置

    Attributes:
        max_attempts: 总尝试次数（含第一次）
        base_delay: 第一次重试前的等待秒数，之后按 2 倍递增
        max_delay: 单次等待上限
        retryable_exceptions: 触发重试的异常类型
    """

    max_attempts: int = 3
    base_delay: float = 0.05
    max_delay: float = 1.0
    retryable_exceptions: tuple = (OperationalError,)

    def delay_for(self, attempt):
        """第 attempt 次重试（从 0 开始）前的等待秒数"""
        return min(self.base_delay * (2 ** attempt), self.max_delay)


def run_with_retry(operation, func, policy=None, on_retry=None, sleep_func=None):
    """
    执行 func，遇到可重试的存储冲突时重做

    Args:
        operation: 操作名称（日志和错误信息用）
        func: 无参可调用对象，一次完整的工作单元
        policy: RetryPolicy，不传则用默认值
        on_retry: 每次失败后、重试前调用（通常是回滚会话）
        sleep_func: 可注入的 sleep，测试用

    Returns:
        func 的返回值

    Raises:
        TransientStorageError: 重试次数耗尽
    """
    policy = policy or RetryPolicy()
    do_sleep = sleep_func or time.sleep
    last_error = None

    for attempt in range(policy.max_attempts):
        try:
            return func()
        except policy.retryable_exceptions as exc:
            last_error = exc
            if on_retry is not None:
                on_retry()
            if attempt < policy.max_attempts - 1:
                delay = policy.delay_for(attempt)
                logger.warning(
                    "%s 第 %d/%d 次尝试遇到存储冲突 (%s)，%.2fs 后重试",
                    operation, attempt + 1, policy.max_attempts, exc, delay
                )
                do_sleep(delay)

    raise TransientStorageError(operation, policy.max_attempts, last_error)
