"""Flask Web 服务 - 驾驶员困倦监测系统"""

import datetime
import logging
import math
import os
import threading
import time

import numpy as np
from flask import Flask, jsonify, request

from detectors.audio_analyzer import spectrum_db
from detectors.landmark_parser import build_frame
from main import MonitoringSystem
from models.data_models import AlertEvent, AudioFrame
from models.monitor_config import load_config

app = Flask(__name__)


def _timestamp_ms(value):
    """请求中的时间戳转为毫秒浮点数；缺省返回 None"""
    if value is None:
        return None
    try:
        if isinstance(value, bool):
            raise TypeError(type(value).__name__)
        ts = float(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"时间戳格式不合法: {value!r}") from e
    if not math.isfinite(ts):
        raise ValueError(f"时间戳格式不合法: {value!r}")
    return ts


def _json_object():
    """读取 JSON 请求体；不是对象时返回 None"""
    data = request.get_json(force=True, silent=True)
    return data if isinstance(data, dict) else None


def _bad_request(message):
    return jsonify({"success": False, "message": message}), 400


class WebMonitoringSystem:
    """Web 版监测系统，接收外部关键点/音频数据，提供实时快照和告警日志 API。"""

    MAX_LOG_ENTRIES = 200
    AUDIO_POLL_INTERVAL_S = 0.05

    def __init__(self, config=None):
        self.system = MonitoringSystem(config or load_config(os.environ.get("DROWSY_CONFIG")))
        self.system.add_alert_listener(self._on_alert)
        self._lock = threading.Lock()
        self._logs = []
        self._log_lock = threading.Lock()
        self._audio_thread = None
        self._audio_running = False

    def _on_alert(self, event: AlertEvent):
        self._add_log("danger", event.message, cause=event.cause)

    def _add_log(self, level, message, cause=None):
        """添加一条系统日志。level: info / warning / danger"""
        entry = {
            "time": datetime.datetime.now().strftime("%H:%M:%S"),
            "level": level,
            "message": message,
        }
        if cause is not None:
            entry["cause"] = cause
        with self._log_lock:
            self._logs.append(entry)
            if len(self._logs) > self.MAX_LOG_ENTRIES:
                self._logs = self._logs[-self.MAX_LOG_ENTRIES:]

    def get_logs(self, since=0):
        """获取日志，since 为起始索引。"""
        with self._log_lock:
            return self._logs[since:], len(self._logs)

    def get_data(self):
        with self._lock:
            return self.system.snapshot.to_dict()

    def process_frame(self, landmarks, expressions=None, now_ms=None):
        frame = build_frame(landmarks, expressions)
        now_ms = _timestamp_ms(now_ms)
        with self._lock:
            prev_status = self.system.snapshot.status
            snapshot = self.system.process_frame(frame, now_ms)
        if snapshot is not None and snapshot.status != prev_status:
            level = "warning" if snapshot.status == "DROWSY" else "info"
            self._add_log(level, f"状态变为 {snapshot.status} (分数={snapshot.drowsy_score:.2f})")
        return snapshot

    def process_audio(self, samples, frequency_db=None, sample_rate=None, now_ms=None):
        """
        frequency_db 缺省时由时域采样计算频谱

        Raises:
            ValueError: 采样、频谱、采样率或时间戳格式不合法
        """
        cfg = self.system.config
        now_ms = _timestamp_ms(now_ms)
        try:
            data = np.asarray(samples, dtype=np.float64)
            spectrum = None if frequency_db is None else np.asarray(frequency_db, dtype=np.float64)
            rate = cfg.sample_rate if sample_rate is None else float(sample_rate)
        except (TypeError, ValueError) as e:
            raise ValueError(f"音频数据格式错误: {e}") from e
        if data.ndim != 1 or data.size == 0:
            raise ValueError("samples 应为非空一维数组")
        if spectrum is not None and (spectrum.ndim != 1 or spectrum.size == 0):
            raise ValueError("frequency_db 应为非空一维数组")
        if not (math.isfinite(rate) and rate > 0):
            raise ValueError(f"采样率不合法: {sample_rate!r}")

        if spectrum is None:
            fft_size = cfg.fft_size
            spectrum = spectrum_db(data, fft_size)
        else:
            fft_size = spectrum.size * 2
        frame = AudioFrame(
            time_domain=data,
            frequency_db=spectrum,
            sample_rate=rate,
            fft_size=fft_size,
        )
        with self._lock:
            return self.system.process_audio(frame, now_ms)

    def start_calibration(self):
        with self._lock:
            self.system.start_calibration()
        self._add_log("info", "开始校准，请保持自然睁眼")

    def stop_calibration(self):
        with self._lock:
            result = self.system.stop_calibration()
        self._add_log(
            "info",
            f"校准完成: 闭眼阈值={result.ear_closed_threshold:.3f}, 睁眼阈值={result.ear_open_threshold:.3f}",
        )
        return result

    def set_mode(self, mode):
        with self._lock:
            self.system.set_mode(mode)
        self._add_log("info", f"切换到 {mode} 模式")

    def start_microphone(self):
        """启动麦克风和后台音频轮询线程。"""
        with self._lock:
            ok = self.system.start_microphone()
        if not ok:
            self._add_log("warning", "麦克风不可用，声音分量将被忽略")
            return False
        if not self._audio_running:
            self._audio_running = True
            self._audio_thread = threading.Thread(target=self._audio_loop, daemon=True)
            self._audio_thread.start()
        self._add_log("info", "麦克风已开启")
        return True

    def stop_microphone(self):
        self._audio_running = False
        if self._audio_thread is not None:
            self._audio_thread.join(timeout=1.0)
            self._audio_thread = None
        with self._lock:
            self.system.stop_microphone()
        self._add_log("info", "麦克风已关闭")

    def _audio_loop(self):
        """后台音频轮询循环。"""
        while self._audio_running:
            with self._lock:
                self.system.poll_audio()
            time.sleep(self.AUDIO_POLL_INTERVAL_S)


# 全局监测系统实例
system = WebMonitoringSystem()


# ---- Flask 路由 ----

@app.route("/api/frame", methods=["POST"])
def api_frame():
    data = _json_object()
    if data is None:
        return _bad_request("请求体应为 JSON 对象")
    try:
        snapshot = system.process_frame(
            data.get("landmarks", []),
            data.get("expressions"),
            data.get("timestamp"),
        )
    except ValueError as e:
        return _bad_request(str(e))
    if snapshot is None:
        return jsonify({"success": True, "processed": False})
    return jsonify({"success": True, "processed": True, "data": snapshot.to_dict()})


@app.route("/api/audio", methods=["POST"])
def api_audio():
    data = _json_object()
    if data is None:
        return _bad_request("请求体应为 JSON 对象")
    samples = data.get("samples")
    if not samples:
        return _bad_request("缺少音频采样")
    try:
        result = system.process_audio(
            samples,
            data.get("frequency_db"),
            data.get("sample_rate"),
            data.get("timestamp"),
        )
    except ValueError as e:
        return _bad_request(str(e))
    if result is None:
        return jsonify({"success": True, "processed": False})
    return jsonify({
        "success": True,
        "processed": True,
        "volume": result.volume,
        "is_silent": result.is_silent,
        "band_energy_low": result.band_energy_low,
    })


@app.route("/api/data")
def api_data():
    return jsonify(system.get_data())


@app.route("/api/calibration/start", methods=["POST"])
def api_calibration_start():
    system.start_calibration()
    return jsonify({"success": True, "message": "校准已开始"})


@app.route("/api/calibration/stop", methods=["POST"])
def api_calibration_stop():
    result = system.stop_calibration()
    return jsonify({
        "success": True,
        "ear_closed_threshold": result.ear_closed_threshold,
        "ear_open_threshold": result.ear_open_threshold,
        "sample_count": result.sample_count,
    })


@app.route("/api/mode", methods=["POST"])
def api_mode():
    data = _json_object()
    if data is None:
        return _bad_request("请求体应为 JSON 对象")
    try:
        system.set_mode(data.get("mode", "normal"))
    except ValueError as e:
        return _bad_request(str(e))
    return jsonify({"success": True, "mode": system.system.config.mode})


@app.route("/api/mic/start", methods=["POST"])
def api_mic_start():
    ok = system.start_microphone()
    return jsonify({"success": ok, "message": "麦克风启动成功" if ok else "无法打开麦克风"})


@app.route("/api/mic/stop", methods=["POST"])
def api_mic_stop():
    system.stop_microphone()
    return jsonify({"success": True, "message": "麦克风已关闭"})


@app.route("/api/alerts")
def api_alerts():
    since = request.args.get("since", 0, type=int)
    logs, total = system.get_logs(since)
    return jsonify({"logs": logs, "total": total})


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    print("=" * 50)
    print("  驾驶员困倦监测系统 - Web 服务")
    print("  API 地址: http://127.0.0.1:5000/api/data")
    print("=" * 50)
    app.run(host="0.0.0.0", port=5000, debug=False, threaded=True)
