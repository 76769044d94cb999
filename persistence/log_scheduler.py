"""持久化调度模块：去抖合并快照，带重试、取消和立即发送策略地写入日志端点"""

import enum
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from typing import Callable, Optional

import requests

from models.data_models import DriverLogRecord

logger = logging.getLogger(__name__)


class RequestState(enum.Enum):
    IDLE = "idle"
    SENDING = "sending"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    EXHAUSTED = "exhausted"
    SKIPPED = "skipped"


class CancelToken:
    """显式取消令牌；wait() 在被取消时提前返回 True"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout_s: float) -> bool:
        return self._event.wait(timeout_s)


class SaveRequest:
    """一次发送请求：IDLE → SENDING(attempt) → DELIVERED | CANCELLED | EXHAUSTED"""

    def __init__(self, record: DriverLogRecord):
        self.record = record
        self.token = CancelToken()
        self.state = RequestState.IDLE
        self.attempt = 0

    def cancel(self):
        self.token.cancel()

    @property
    def finished(self) -> bool:
        return self.state not in (RequestState.IDLE, RequestState.SENDING)


class HttpLogSink:
    """通过 HTTP POST 将单条日志写入外部端点"""

    def __init__(
        self,
        url: str,
        timeout_s: float = 5.0,
        session: Optional[requests.Session] = None,
        online_check: Optional[Callable[[], bool]] = None,
    ):
        self.url = url
        self.timeout_s = timeout_s
        self._session = session or requests.Session()
        self._online_check = online_check

    def is_online(self) -> bool:
        return self._online_check() if self._online_check is not None else True

    def post(self, payload: dict) -> bool:
        """发送一条记录，返回端点是否接受（2xx）"""
        res = self._session.post(self.url, json=payload, timeout=self.timeout_s)
        if not res.ok:
            logger.debug("日志端点返回 %d: %s", res.status_code, res.text)
        return res.ok

    def close(self):
        self._session.close()


def http_online_check(url: str, timeout_s: float = 2.0, session: Optional[requests.Session] = None):
    """
    构造联网探测函数：对 url 发 HEAD 请求，能收到任何响应即视为在线。

    Returns:
        无参可调用对象，返回 bool，可作为 HttpLogSink 的 online_check
    """
    session = session or requests.Session()

    def check() -> bool:
        try:
            session.head(url, timeout=timeout_s)
        except requests.RequestException as e:
            logger.debug("联网探测失败: %s", e)
            return False
        return True

    return check


def deliver(sink, request: SaveRequest, attempts: int = 3, backoff_ms: float = 300.0) -> RequestState:
    """
    按重试策略发送一个请求。

    离线时直接跳过；每次失败后等待退避时间（逐次翻倍）；请求被取消时
    立即放弃，不再重试。

    Returns:
        请求的终态
    """
    if not sink.is_online():
        request.state = RequestState.SKIPPED
        logger.debug("网络离线，跳过发送")
        return request.state

    wait_ms = backoff_ms
    for attempt in range(1, attempts + 1):
        if request.token.cancelled:
            request.state = RequestState.CANCELLED
            return request.state

        request.state = RequestState.SENDING
        request.attempt = attempt
        ok = False
        try:
            ok = sink.post(request.record.to_payload())
        except requests.RequestException as e:
            logger.debug("日志发送失败 (第 %d 次): %s", attempt, e)

        # 发送期间被新请求取代，结果作废
        if request.token.cancelled:
            request.state = RequestState.CANCELLED
            return request.state
        if ok:
            request.state = RequestState.DELIVERED
            return request.state

        if attempt < attempts:
            if request.token.wait(wait_ms / 1000.0):
                request.state = RequestState.CANCELLED
                return request.state
            wait_ms *= 2

    request.state = RequestState.EXHAUSTED
    logger.warning("日志发送失败，已重试 %d 次，丢弃该记录", attempts)
    return request.state


class PersistenceScheduler:
    """
    至多保留一条待发送快照。

    非立即保存通过定时器去抖（新调用重置定时器而非排队）；立即保存取消
    定时器和正在发送的请求后马上发送。发送在单个工作线程中串行执行，
    因此任何时刻至多一个请求在途。
    """

    def __init__(
        self,
        sink,
        save_interval_ms: float = 5_000.0,
        attempts: int = 3,
        backoff_ms: float = 300.0,
    ):
        self.sink = sink
        self.save_interval_ms = save_interval_ms
        self.attempts = attempts
        self.backoff_ms = backoff_ms
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="log-sender")
        self._timer: Optional[threading.Timer] = None
        # 每次取消或重置定时器时递增；已触发但过期的回调据此放弃
        self._timer_generation = 0
        self._pending: Optional[DriverLogRecord] = None
        self._active: Optional[SaveRequest] = None
        self._closed = False

    @property
    def pending(self) -> Optional[DriverLogRecord]:
        return self._pending

    @property
    def active_request(self) -> Optional[SaveRequest]:
        return self._active

    def schedule_save(self, record: DriverLogRecord, immediate: bool = False, **extra) -> Optional[Future]:
        """
        用最新快照覆盖待发送记录。

        Args:
            record: 当前状态快照
            immediate: True 时立即发送，否则重置去抖定时器
            **extra: 覆盖 record 中的字段

        Returns:
            立即发送时返回对应的 Future，否则 None
        """
        if extra:
            record = replace(record, **extra)

        with self._lock:
            if self._closed:
                return None
            self._pending = record
            self._cancel_timer()
            if immediate:
                return self._dispatch(record)
            self._timer = threading.Timer(
                self.save_interval_ms / 1000.0, self._on_timer, args=(self._timer_generation,)
            )
            self._timer.daemon = True
            self._timer.start()
        return None

    def _on_timer(self, generation: int):
        with self._lock:
            if generation != self._timer_generation:
                return
            self._timer = None
            if self._closed or self._pending is None:
                return
            self._dispatch(self._pending)

    def _cancel_timer(self):
        self._timer_generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _dispatch(self, record: DriverLogRecord) -> Future:
        """取消在途请求并提交新请求；调用方持有 _lock"""
        if self._active is not None and not self._active.finished:
            self._active.cancel()
        request = SaveRequest(record)
        self._active = request
        return self._executor.submit(self._run, request)

    def _run(self, request: SaveRequest) -> SaveRequest:
        deliver(self.sink, request, self.attempts, self.backoff_ms)
        if request.state == RequestState.DELIVERED:
            with self._lock:
                if self._pending is request.record:
                    self._pending = None
        return request

    def close(self):
        """取消定时器和在途请求，尽力发送一次仍未发送的记录"""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._cancel_timer()
            if self._active is not None:
                self._active.cancel()
            pending = self._pending

        self._executor.shutdown(wait=True)

        if pending is not None:
            request = SaveRequest(pending)
            try:
                deliver(self.sink, request, attempts=1, backoff_ms=self.backoff_ms)
            except Exception as e:  # 退出时尽力而为
                logger.debug("退出时发送日志失败: %s", e)
            if request.state == RequestState.DELIVERED:
                self._pending = None
