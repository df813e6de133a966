"""
队列层 – 串行上游请求队列
所有上游请求经由单个 worker 依次执行（并发数固定为 1），
遇到 429 限流时整个队列暂停 retry-after 秒后重试同一任务；
最后一次尝试仍被限流时同样先暂停，再让该任务失败。
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from gecko_service.config import settings
from gecko_service.errors import RateLimited, RetriesExhausted, UpstreamUnavailable

logger = logging.getLogger(__name__)


def _is_rate_limited(exc: Exception) -> bool:
    return isinstance(exc, RateLimited)


class RetryPolicy:
    """
    重试策略：最大尝试次数 + 可重试判定 + 等待时长

    默认只有 RateLimited 可重试，等待时长取 retry-after，缺省为 default_retry_after。
    """

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        default_retry_after: Optional[float] = None,
        retryable: Callable[[Exception], bool] = _is_rate_limited,
        delay: Optional[Callable[[Exception], float]] = None,
    ):
        self.max_attempts = max_attempts if max_attempts is not None else settings.QUEUE_MAX_ATTEMPTS
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.default_retry_after = (
            default_retry_after
            if default_retry_after is not None
            else settings.RATE_LIMIT_DEFAULT_RETRY_AFTER
        )
        self._retryable = retryable
        self._delay = delay or self._retry_after_delay

    def _retry_after_delay(self, exc: Exception) -> float:
        retry_after = getattr(exc, "retry_after", None)
        return retry_after if retry_after is not None else self.default_retry_after

    def delay_for(self, exc: Exception) -> float:
        """可重试错误对应的暂停秒数（与是否还有剩余次数无关）"""
        return self._delay(exc)

    def next_delay(self, attempt: int, exc: Exception) -> Optional[float]:
        """
        第 attempt 次尝试失败后的决策

        Returns:
            等待秒数（随后重试）；None 表示不可重试，立即失败
        Raises:
            RetriesExhausted: 可重试但已达到最大尝试次数
        """
        if not self._retryable(exc):
            return None
        if attempt >= self.max_attempts:
            raise RetriesExhausted(exc, attempt) from exc
        return self._delay(exc)


@dataclass
class QueuedTask:
    url: str
    future: asyncio.Future
    attempts: int = 0


@dataclass
class QueueStats:
    enqueued: int = 0
    succeeded: int = 0
    failed: int = 0
    attempts: int = 0
    rate_limited: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class RequestQueue:
    """单 worker 的 FIFO 请求队列"""

    def __init__(
        self,
        fetch: Callable[[str], Awaitable[Any]],
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._fetch = fetch
        self._policy = policy or RetryPolicy()
        self._sleep = sleep
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self.stats = QueueStats()
        self.state: str = "idle"

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        """启动 worker（必须在事件循环内调用，重复调用无副作用）"""
        if self.running:
            return
        if self._queue is None:
            self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run(), name="gecko-request-queue")

    async def submit(self, url: str) -> Any:
        """入队一个请求并等待其完成"""
        self.start()
        future = asyncio.get_running_loop().create_future()
        self.stats.enqueued += 1
        await self._queue.put(QueuedTask(url=url, future=future))
        return await future

    async def _run(self) -> None:
        while True:
            task = await self._queue.get()
            try:
                result = await self._execute(task)
            except asyncio.CancelledError:
                if not task.future.done():
                    task.future.set_exception(UpstreamUnavailable("Request queue closed"))
                raise
            except Exception as exc:
                self.stats.failed += 1
                if not task.future.done():
                    task.future.set_exception(exc)
            else:
                self.stats.succeeded += 1
                if not task.future.done():
                    task.future.set_result(result)
            finally:
                self.state = "idle"
                self._queue.task_done()

    async def _execute(self, task: QueuedTask) -> Any:
        max_attempts = self._policy.max_attempts
        while True:
            task.attempts += 1
            self.stats.attempts += 1
            self.state = "attempting"
            logger.info(f"请求 CoinGecko（第 {task.attempts}/{max_attempts} 次）: {task.url}")
            try:
                return await self._fetch(task.url)
            except Exception as exc:
                if isinstance(exc, RateLimited):
                    self.stats.rate_limited += 1
                try:
                    delay = self._policy.next_delay(task.attempts, exc)
                except RetriesExhausted:
                    # 最后一次仍被限流：照常暂停队列，再向调用方报告失败
                    wait = self._policy.delay_for(exc)
                    logger.error(
                        f"CoinGecko 请求已尝试 {task.attempts} 次仍失败（{exc}），"
                        f"队列暂停 {wait:.1f}s 后放弃: {task.url}"
                    )
                    self.state = "retry_wait"
                    await self._sleep(wait)
                    raise
                if delay is None:
                    logger.warning(f"CoinGecko 请求失败（不重试）: {task.url} - {exc}")
                    raise
                logger.warning(
                    f"CoinGecko 请求失败（{exc}），队列暂停 {delay:.1f}s 后重试: {task.url}"
                )
                self.state = "retry_wait"
                await self._sleep(delay)

    async def close(self) -> None:
        """停止 worker，未执行的任务以 UpstreamUnavailable 失败"""
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        if self._queue is not None:
            while not self._queue.empty():
                task = self._queue.get_nowait()
                if not task.future.done():
                    task.future.set_exception(UpstreamUnavailable("Request queue closed"))
                self._queue.task_done()
        self.state = "idle"
