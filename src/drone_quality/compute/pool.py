"""有界资源池：租借/归还、先进先出等待与空闲回收。"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from typing import Callable, Deque, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class ResourcePool(Generic[T]):
    """线程安全的有界资源池。

    - 同一资源同一时间只借给一个调用者；
    - 资源耗尽时调用者按到达顺序排队；
    - 空闲超过 ``idle_timeout`` 秒的资源由回收线程销毁；
    - 执行出错的资源通过 ``invalidate`` 丢弃，不再复用。
    """

    def __init__(
        self,
        factory: Callable[[], T],
        destroy: Callable[[T], None],
        max_size: int,
        idle_timeout: float,
        reaper_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size 必须大于 0")
        self._factory = factory
        self._destroy = destroy
        self._max_size = max_size
        self._idle_timeout = idle_timeout
        self._clock = clock
        self._cond = threading.Condition()
        self._idle: List[Tuple[T, float]] = []
        self._leased: Dict[int, T] = {}
        self._waiters: Deque[object] = deque()
        self._total = 0
        self._closed = False
        self._stop_reaper = threading.Event()
        self._reaper: Optional[threading.Thread] = None
        if reaper_interval:
            self._reaper = threading.Thread(
                target=self._reap_loop,
                args=(reaper_interval,),
                name="resource-pool-reaper",
                daemon=True,
            )
            self._reaper.start()

    @property
    def size(self) -> int:
        with self._cond:
            return self._total

    @property
    def idle_count(self) -> int:
        with self._cond:
            return len(self._idle)

    @property
    def leased_count(self) -> int:
        with self._cond:
            return len(self._leased)

    @property
    def waiting_count(self) -> int:
        with self._cond:
            return len(self._waiters)

    def acquire(self, timeout: Optional[float] = None) -> T:
        """借出一个资源，超时抛出 TimeoutError，池关闭后抛出 RuntimeError。"""

        deadline = None if timeout is None else time.monotonic() + timeout
        ticket = object()
        resource: Optional[T] = None
        create = False

        with self._cond:
            self._ensure_open()
            self._waiters.append(ticket)
            try:
                while True:
                    self._ensure_open()
                    if self._waiters[0] is ticket:
                        if self._idle:
                            resource, _ = self._idle.pop()
                            break
                        if self._total < self._max_size:
                            self._total += 1
                            create = True
                            break
                    remaining = None if deadline is None else deadline - time.monotonic()
                    if remaining is not None and remaining <= 0:
                        raise TimeoutError("等待资源超时")
                    self._cond.wait(remaining)
            finally:
                self._waiters.remove(ticket)
                self._cond.notify_all()

            if resource is not None:
                self._leased[id(resource)] = resource
                return resource

        assert create
        try:
            resource = self._factory()
        except BaseException:
            with self._cond:
                self._total -= 1
                self._cond.notify_all()
            raise
        with self._cond:
            self._leased[id(resource)] = resource
        LOGGER.debug("资源池创建新资源，当前总数 %d", self._total)
        return resource

    def release(self, resource: T) -> None:
        """归还资源；池已关闭时直接销毁。"""

        with self._cond:
            if self._leased.pop(id(resource), None) is None:
                raise ValueError("归还的资源不属于该资源池")
            if not self._closed:
                self._idle.append((resource, self._clock()))
                self._cond.notify_all()
                return
            self._total -= 1
        self._safe_destroy(resource)

    def invalidate(self, resource: T) -> None:
        """丢弃一个已借出的资源并释放其名额。"""

        with self._cond:
            if self._leased.pop(id(resource), None) is None:
                return
            self._total -= 1
            self._cond.notify_all()
        self._safe_destroy(resource)

    @contextmanager
    def lease(self, timeout: Optional[float] = None) -> Iterator[T]:
        """借出资源的上下文管理器，块内抛出异常时资源被丢弃。"""

        resource = self.acquire(timeout)
        try:
            yield resource
        except BaseException:
            self.invalidate(resource)
            raise
        else:
            self.release(resource)

    def reap_idle(self) -> int:
        """销毁空闲超时的资源，返回销毁数量。"""

        now = self._clock()
        with self._cond:
            keep: List[Tuple[T, float]] = []
            expired: List[T] = []
            for resource, released_at in self._idle:
                if now - released_at >= self._idle_timeout:
                    expired.append(resource)
                else:
                    keep.append((resource, released_at))
            self._idle = keep
            self._total -= len(expired)
            if expired:
                self._cond.notify_all()
        for resource in expired:
            self._safe_destroy(resource)
        if expired:
            LOGGER.debug("回收 %d 个空闲资源", len(expired))
        return len(expired)

    def close(self) -> None:
        """关闭资源池：销毁空闲资源，唤醒全部等待者。"""

        self._stop_reaper.set()
        with self._cond:
            if self._closed:
                return
            self._closed = True
            idle = [resource for resource, _ in self._idle]
            self._idle = []
            self._total -= len(idle)
            self._cond.notify_all()
        for resource in idle:
            self._safe_destroy(resource)
        if self._reaper is not None and self._reaper is not threading.current_thread():
            self._reaper.join(timeout=1.0)

    def _reap_loop(self, interval: float) -> None:
        while not self._stop_reaper.wait(interval):
            self.reap_idle()

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("资源池已关闭")

    def _safe_destroy(self, resource: T) -> None:
        try:
            self._destroy(resource)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("销毁资源失败: %s", exc)
