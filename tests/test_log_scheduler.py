"""持久化调度模块单元测试"""

import logging
import threading
import time
from unittest.mock import MagicMock

import pytest
import requests

from models.data_models import DriverLogRecord
from persistence.log_scheduler import (
    CancelToken,
    HttpLogSink,
    PersistenceScheduler,
    RequestState,
    SaveRequest,
    deliver,
    http_online_check,
)


class FakeSink:
    """记录每次发送的假端点；results 依次作为各次发送的结果"""

    def __init__(self, results=None, online=True):
        self.results = list(results or [])
        self.online = online
        self.payloads = []
        self._lock = threading.Lock()

    def is_online(self):
        return self.online

    def post(self, payload):
        with self._lock:
            self.payloads.append(payload)
            result = self.results.pop(0) if self.results else True
        if isinstance(result, Exception):
            raise result
        return result


class BlockingSink(FakeSink):
    """第一次发送阻塞，直到 release 被置位"""

    def __init__(self):
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def post(self, payload):
        first = not self.payloads
        result = super().post(payload)
        if first:
            self.started.set()
            self.release.wait(2.0)
        return result


def _record(score=0.5, driver_id="driver-1"):
    return DriverLogRecord(driverId=driver_id, drowsiness=score, timestamp="2024-01-01T00:00:00.000Z")


def _wait_for(condition, timeout=2.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return False


class TestCancelToken:

    def test_cancel(self):
        token = CancelToken()
        assert not token.cancelled
        token.cancel()
        assert token.cancelled
        assert token.wait(0.0)


class TestDeliver:
    """测试 deliver() 重试策略"""

    def test_success(self):
        sink = FakeSink()
        request = SaveRequest(_record())
        assert deliver(sink, request) == RequestState.DELIVERED
        assert request.attempt == 1
        assert sink.payloads[0]["driverId"] == "driver-1"
        assert request.finished

    def test_retry_then_success(self):
        sink = FakeSink(results=[False, True])
        request = SaveRequest(_record())
        assert deliver(sink, request, attempts=3, backoff_ms=1) == RequestState.DELIVERED
        assert request.attempt == 2

    def test_exception_counts_as_failure(self):
        sink = FakeSink(results=[requests.ConnectionError("down"), True])
        request = SaveRequest(_record())
        assert deliver(sink, request, attempts=3, backoff_ms=1) == RequestState.DELIVERED
        assert len(sink.payloads) == 2

    def test_exhausted(self, caplog):
        sink = FakeSink(results=[False, False, False])
        request = SaveRequest(_record())
        with caplog.at_level(logging.WARNING):
            assert deliver(sink, request, attempts=3, backoff_ms=1) == RequestState.EXHAUSTED
        assert len(sink.payloads) == 3
        assert "已重试 3 次" in caplog.text

    def test_offline_skipped(self):
        sink = FakeSink(online=False)
        request = SaveRequest(_record())
        assert deliver(sink, request) == RequestState.SKIPPED
        assert sink.payloads == []

    def test_cancelled_before_send(self):
        sink = FakeSink()
        request = SaveRequest(_record())
        request.cancel()
        assert deliver(sink, request) == RequestState.CANCELLED
        assert sink.payloads == []

    def test_cancelled_during_send_discards_result(self):
        request = SaveRequest(_record())
        sink = FakeSink()
        sink.post = MagicMock(side_effect=lambda payload: request.cancel() or True)
        assert deliver(sink, request) == RequestState.CANCELLED

    def test_cancelled_during_backoff_no_retry(self):
        request = SaveRequest(_record())
        sink = FakeSink(results=[False, True])
        timer = threading.Timer(0.05, request.cancel)
        timer.start()
        assert deliver(sink, request, attempts=3, backoff_ms=2000) == RequestState.CANCELLED
        assert len(sink.payloads) == 1


class TestHttpLogSink:
    """测试 HttpLogSink"""

    def test_post_json(self):
        session = MagicMock()
        session.post.return_value = MagicMock(ok=True, status_code=201)
        sink = HttpLogSink("http://example.test/logs", timeout_s=2.0, session=session)
        assert sink.post({"driverId": "d"})
        session.post.assert_called_once_with("http://example.test/logs", json={"driverId": "d"}, timeout=2.0)

    def test_post_rejected(self):
        session = MagicMock()
        session.post.return_value = MagicMock(ok=False, status_code=500, text="error")
        assert not HttpLogSink("http://example.test/logs", session=session).post({})

    def test_online_check(self):
        sink = HttpLogSink("http://example.test", session=MagicMock(), online_check=lambda: False)
        assert not sink.is_online()
        assert HttpLogSink("http://example.test", session=MagicMock()).is_online()


class TestHttpOnlineCheck:
    """测试 http_online_check()"""

    def test_reachable(self):
        session = MagicMock()
        check = http_online_check("http://probe.test", timeout_s=1.0, session=session)
        assert check()
        session.head.assert_called_once_with("http://probe.test", timeout=1.0)

    def test_any_status_counts_as_online(self):
        session = MagicMock()
        session.head.return_value = MagicMock(ok=False, status_code=404)
        assert http_online_check("http://probe.test", session=session)()

    def test_unreachable(self):
        session = MagicMock()
        session.head.side_effect = requests.ConnectionError("down")
        assert not http_online_check("http://probe.test", session=session)()

    def test_offline_sink_skips_post(self):
        session = MagicMock()
        session.head.side_effect = requests.Timeout("slow")
        sink = HttpLogSink(
            "http://example.test/logs",
            session=session,
            online_check=http_online_check("http://probe.test", session=session),
        )
        request = SaveRequest(_record())
        assert deliver(sink, request) == RequestState.SKIPPED
        session.post.assert_not_called()


class TestPersistenceScheduler:
    """测试去抖、立即发送、取消和退出时发送"""

    def test_immediate_save(self):
        sink = FakeSink()
        scheduler = PersistenceScheduler(sink, save_interval_ms=60_000)
        try:
            future = scheduler.schedule_save(_record(), immediate=True)
            request = future.result(timeout=2.0)
            assert request.state == RequestState.DELIVERED
            assert scheduler.pending is None
        finally:
            scheduler.close()

    def test_debounce_keeps_latest(self):
        sink = FakeSink()
        scheduler = PersistenceScheduler(sink, save_interval_ms=50)
        try:
            assert scheduler.schedule_save(_record(0.1)) is None
            scheduler.schedule_save(_record(0.2))
            assert _wait_for(lambda: sink.payloads)
            time.sleep(0.15)
            assert [p["drowsiness"] for p in sink.payloads] == [0.2]
            assert _wait_for(lambda: scheduler.pending is None)
        finally:
            scheduler.close()

    def test_timer_not_fired_early(self):
        sink = FakeSink()
        scheduler = PersistenceScheduler(sink, save_interval_ms=60_000)
        scheduler.schedule_save(_record())
        time.sleep(0.05)
        assert sink.payloads == []
        scheduler.close()

    def test_stale_timer_callback_after_reset_ignored(self):
        sink = FakeSink()
        scheduler = PersistenceScheduler(sink, save_interval_ms=60_000)
        try:
            scheduler.schedule_save(_record(0.1))
            stale = scheduler._timer_generation
            scheduler.schedule_save(_record(0.2))
            # 模拟已触发、正在等锁的旧定时器回调
            scheduler._on_timer(stale)
            time.sleep(0.05)
            assert sink.payloads == []
            assert scheduler.active_request is None
        finally:
            scheduler.close()

    def test_stale_timer_callback_after_immediate_ignored(self):
        sink = FakeSink()
        scheduler = PersistenceScheduler(sink, save_interval_ms=60_000)
        try:
            scheduler.schedule_save(_record(0.1))
            stale = scheduler._timer_generation
            request = scheduler.schedule_save(_record(0.2), immediate=True).result(timeout=2.0)
            scheduler._on_timer(stale)
            time.sleep(0.05)
            assert scheduler.active_request is request
            assert request.state == RequestState.DELIVERED
            assert [p["drowsiness"] for p in sink.payloads] == [0.2]
        finally:
            scheduler.close()

    def test_second_immediate_cancels_first(self):
        sink = BlockingSink()
        scheduler = PersistenceScheduler(sink, save_interval_ms=60_000, backoff_ms=1)
        try:
            first = scheduler.schedule_save(_record(0.1), immediate=True)
            assert sink.started.wait(2.0)
            second = scheduler.schedule_save(_record(0.2), immediate=True)
            sink.release.set()

            assert first.result(timeout=2.0).state == RequestState.CANCELLED
            assert second.result(timeout=2.0).state == RequestState.DELIVERED
            assert scheduler.pending is None
        finally:
            sink.release.set()
            scheduler.close()

    def test_extra_fields_override(self):
        sink = FakeSink()
        scheduler = PersistenceScheduler(sink)
        try:
            future = scheduler.schedule_save(_record(0.1), immediate=True, drowsiness=0.9, emotion="sad")
            future.result(timeout=2.0)
            assert sink.payloads[0]["drowsiness"] == 0.9
            assert sink.payloads[0]["emotion"] == "sad"
        finally:
            scheduler.close()

    def test_failed_save_stays_pending(self):
        sink = FakeSink(results=[False])
        scheduler = PersistenceScheduler(sink, attempts=1, save_interval_ms=60_000)
        record = _record()
        try:
            request = scheduler.schedule_save(record, immediate=True).result(timeout=2.0)
            assert request.state == RequestState.EXHAUSTED
            assert scheduler.pending is record
        finally:
            scheduler.close()

    def test_close_flushes_pending(self):
        sink = FakeSink()
        scheduler = PersistenceScheduler(sink, save_interval_ms=60_000)
        scheduler.schedule_save(_record(0.7))
        scheduler.close()
        assert [p["drowsiness"] for p in sink.payloads] == [0.7]
        assert scheduler.pending is None

    def test_close_without_pending(self):
        sink = FakeSink()
        scheduler = PersistenceScheduler(sink)
        scheduler.close()
        assert sink.payloads == []

    def test_no_saves_after_close(self):
        sink = FakeSink()
        scheduler = PersistenceScheduler(sink)
        scheduler.close()
        assert scheduler.schedule_save(_record(), immediate=True) is None
        assert sink.payloads == []

    def test_close_survives_sink_error(self):
        sink = FakeSink()
        sink.is_online = MagicMock(side_effect=RuntimeError("broken"))
        scheduler = PersistenceScheduler(sink, save_interval_ms=60_000)
        scheduler.schedule_save(_record())
        scheduler.close()
        assert scheduler.pending is not None
