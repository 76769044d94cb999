"""驾驶员困倦监测系统入口文件"""

import argparse
import json
import logging
import math
import sys
import time
from collections import deque
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, List, Optional

from calibration.threshold_calibrator import ThresholdCalibrator
from capture.microphone import MicrophoneCapture
from detectors.audio_analyzer import AudioAnalyzer
from detectors.expression_analyzer import dominant_emotion
from detectors.eye_analyzer import EyeAnalyzer, average_ear
from detectors.head_pose_analyzer import HeadPoseAnalyzer
from detectors.landmark_parser import build_frame, parse_landmarks
from detectors.mouth_analyzer import MouthAnalyzer
from detectors.snore_detector import SnoreDetector
from evaluators.alert_detector import AlertEdgeDetector, AlertInputs
from evaluators.fusion_engine import FusionEngine
from models.data_models import (
    AlertEvent,
    AudioFrame,
    AudioResult,
    CalibrationResult,
    DriverLogRecord,
    LandmarkFrame,
    MonitoringSnapshot,
    SoundResult,
)
from models.monitor_config import MODE_DEMO, MODE_NORMAL, MonitorConfig, load_config
from persistence.log_scheduler import HttpLogSink, PersistenceScheduler, http_online_check

logger = logging.getLogger(__name__)

# 发布值的变化阈值
_EAR_EPSILON = 0.0005
_MAR_EPSILON = 0.0005
_SCORE_EPSILON = 0.005
_PERCLOS_EPSILON = 0.002
_PROGRESS_EPSILON = 0.01


def _now_ms() -> float:
    return time.time() * 1000.0


def _gated(prev: float, value: float, epsilon: float) -> float:
    """变化超过 epsilon 才采用新值"""
    return value if abs(prev - value) > epsilon else prev


def _iso_timestamp(now_ms: float) -> str:
    dt = datetime.fromtimestamp(now_ms / 1000.0, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class MonitoringSystem:
    """困倦监测主程序，按节拍串联各分析模块，发布快照、告警并调度持久化。"""

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        sink=None,
        microphone=None,
        online_check: Optional[Callable[[], bool]] = None,
    ):
        self.config = config or MonitorConfig()
        cfg = self.config

        # 初始化各模块
        self.eye_analyzer = EyeAnalyzer(
            ear_closed_threshold=cfg.ear_closed_threshold,
            ear_open_threshold=cfg.ear_open_threshold,
            blink_min_ms=cfg.blink_min_ms,
            blink_max_ms=cfg.blink_max_ms,
            blink_indicator_ms=cfg.blink_indicator_ms,
            continuous_close_ms=cfg.continuous_close_ms,
            perclos_window_ms=cfg.perclos_window_ms,
        )
        self.mouth_analyzer = MouthAnalyzer(
            mar_normalize=cfg.mar_normalize,
            yawn_threshold=cfg.yawn_threshold,
        )
        self.head_pose_analyzer = HeadPoseAnalyzer(
            velocity_alpha=cfg.pitch_velocity_alpha,
            nod_angle_deg=cfg.head_nod_angle_deg,
            nod_velocity_deg_s=cfg.head_nod_velocity_deg_s,
        )
        self.audio_analyzer = AudioAnalyzer(
            sample_interval_ms=cfg.sample_interval_ms,
            silence_db_threshold=cfg.silence_db_threshold,
            silence_seconds=cfg.silence_seconds,
            spectral_variance_threshold=cfg.spectral_variance_threshold,
            low_band_start_hz=cfg.low_band_start_hz,
            low_band_end_hz=cfg.low_band_end_hz,
            publish_epsilon=cfg.audio_publish_epsilon,
            envelope_max_entries=cfg.envelope_max_entries,
        )
        self.snore_detector = SnoreDetector(
            envelope_window=cfg.envelope_window,
            min_envelope_samples=cfg.min_envelope_samples,
            peak_min_amp=cfg.peak_min_amp,
            peak_min_separation_ms=cfg.peak_min_separation_ms,
            peak_prominence_std=cfg.peak_prominence_std,
            min_peaks=cfg.min_peaks,
            max_interval_std_ms=cfg.max_interval_std_ms,
            min_mean_interval_ms=cfg.min_mean_interval_ms,
            max_mean_interval_ms=cfg.max_mean_interval_ms,
            full_score_peak_count=cfg.full_score_peak_count,
            band_energy_fallback=cfg.band_energy_fallback,
            fallback_score=cfg.fallback_sound_score,
            short_history_score=cfg.short_history_sound_score,
        )
        self.calibrator = ThresholdCalibrator(
            duration_ms=cfg.calibration_duration_ms,
            ear_closed_threshold=cfg.ear_closed_threshold,
            ear_open_threshold=cfg.ear_open_threshold,
        )
        self.fusion_engine = FusionEngine(
            weight_eyes=cfg.weight_eyes,
            weight_perclos=cfg.weight_perclos,
            weight_mar=cfg.weight_mar,
            weight_head=cfg.weight_head,
            weight_sound=cfg.weight_sound,
            perclos_full_scale=cfg.perclos_full_scale,
            head_pitch_full_scale_deg=cfg.head_pitch_full_scale_deg,
            smooth_alpha=cfg.smooth_alpha,
            drowsy_threshold=cfg.drowsy_threshold,
            history_max_points=cfg.history_max_points,
        )
        self.alert_detector = AlertEdgeDetector(
            mode=cfg.mode,
            score_threshold=cfg.alert_score_threshold,
            score_threshold_demo=cfg.alert_score_threshold_demo,
            score_cooldown_ms=cfg.alert_score_cooldown_ms,
            score_cooldown_demo_ms=cfg.alert_score_cooldown_demo_ms,
            sound_cooldown_ms=cfg.alert_sound_cooldown_ms,
            yawn_threshold=cfg.yawn_threshold,
            yawn_cooldown_ms=cfg.alert_yawn_cooldown_ms,
            eyes_cooldown_ms=cfg.alert_eyes_cooldown_ms,
            perclos_threshold=cfg.alert_perclos_threshold,
            perclos_threshold_demo=cfg.alert_perclos_threshold_demo,
            low_ear=cfg.alert_low_ear,
        )

        # 持久化（未配置 driver_id 时禁用）
        self.scheduler: Optional[PersistenceScheduler] = None
        if cfg.driver_id:
            if sink is None:
                if online_check is None and cfg.online_check_url:
                    online_check = http_online_check(cfg.online_check_url, cfg.online_check_timeout_s)
                sink = HttpLogSink(cfg.sink_url, timeout_s=cfg.save_timeout_s, online_check=online_check)
            self.scheduler = PersistenceScheduler(
                sink,
                save_interval_ms=cfg.save_interval_ms,
                attempts=cfg.save_attempts,
                backoff_ms=cfg.save_backoff_ms,
            )
        else:
            logger.info("未配置 driver_id，持久化已禁用")

        self.microphone = microphone
        self.snapshot = MonitoringSnapshot(mode=cfg.mode)
        self.last_alerts: List[AlertEvent] = []
        self._emotion_history = deque(maxlen=cfg.history_max_points)
        self._alert_listeners: List[Callable[[AlertEvent], None]] = []
        self._audio_result: Optional[AudioResult] = None
        self._last_tick_ms: Optional[float] = None

    # ---- 控制接口 ----

    def add_alert_listener(self, listener: Callable[[AlertEvent], None]) -> None:
        self._alert_listeners.append(listener)

    def set_mode(self, mode: str) -> None:
        """切换普通/演示模式，只影响告警阈值"""
        if mode not in (MODE_NORMAL, MODE_DEMO):
            raise ValueError(f"未知模式: {mode}")
        self.config.mode = mode
        self.alert_detector.mode = mode
        self.snapshot = replace(self.snapshot, mode=mode)
        logger.info("切换到 %s 模式", mode)

    def start_calibration(self, now_ms: Optional[float] = None) -> None:
        now = _now_ms() if now_ms is None else now_ms
        self.calibrator.start(now)
        self.snapshot = replace(self.snapshot, calibrating=True, calibration_progress=0.0)

    def stop_calibration(self) -> CalibrationResult:
        result = self.calibrator.stop()
        self._apply_calibration(result)
        return result

    def _apply_calibration(self, result: CalibrationResult) -> None:
        self.eye_analyzer.set_thresholds(result.ear_closed_threshold, result.ear_open_threshold)
        self.snapshot = replace(self.snapshot, calibrating=False, calibration_progress=1.0)

    def start_microphone(self) -> bool:
        """启动麦克风；失败时声音分量保持中性，不影响主流程"""
        if self.microphone is None:
            self.microphone = MicrophoneCapture(
                sample_rate=self.config.sample_rate,
                fft_size=self.config.fft_size,
                smoothing_time_constant=self.config.smoothing_time_constant,
            )
        ok = self.microphone.start()
        if not ok:
            self._audio_result = None
        self.snapshot = replace(self.snapshot, mic_available=self.microphone.permission_granted)
        return ok

    def stop_microphone(self) -> None:
        if self.microphone is not None:
            self.microphone.stop()
        self.audio_analyzer.reset()
        self._audio_result = None
        self.snapshot = replace(self.snapshot, volume=0.0, is_silent=False, sound_warning=False)

    # ---- 音频节拍 ----

    def process_audio(self, frame: AudioFrame, now_ms: Optional[float] = None) -> Optional[AudioResult]:
        """分析一个音频窗口；受采样间隔节流时返回 None"""
        now = _now_ms() if now_ms is None else now_ms
        result = self.audio_analyzer.process(frame, now)
        if result is None:
            return None
        self._audio_result = result
        self.snapshot = replace(self.snapshot, volume=result.volume, is_silent=result.is_silent)
        return result

    def poll_audio(self, now_ms: Optional[float] = None) -> Optional[AudioResult]:
        """从麦克风读取最新窗口并分析"""
        if self.microphone is None or not self.microphone.is_running:
            return None
        frame = self.microphone.read_frame()
        if frame is None:
            return None
        return self.process_audio(frame, now_ms)

    def _sound_result(self) -> Optional[SoundResult]:
        if self._audio_result is None:
            return None
        return self.snore_detector.evaluate(self.audio_analyzer.envelope, self.audio_analyzer.band_energy_low)

    # ---- 视频节拍 ----

    def process_frame(self, frame: LandmarkFrame, now_ms: Optional[float] = None) -> Optional[MonitoringSnapshot]:
        """
        处理一帧关键点数据。

        Args:
            frame: 外部检测器输出的关键点帧
            now_ms: 当前时间戳（毫秒），默认取系统时间

        Returns:
            新快照；节流或关键点不足时返回 None，保留上一快照
        """
        now = _now_ms() if now_ms is None else now_ms
        if self._last_tick_ms is not None and now - self._last_tick_ms < self.config.min_tick_interval_ms:
            return None
        self._last_tick_ms = now

        face = parse_landmarks(frame)
        if face is None:
            logger.debug("关键点不足，跳过本帧")
            return None

        prev = self.snapshot
        ear = average_ear(face.left_eye, face.right_eye)

        if self.calibrator.active:
            result = self.calibrator.add_sample(ear, now)
            if result is not None:
                self._apply_calibration(result)
                prev = self.snapshot

        eye_result = self.eye_analyzer.update(ear, now)
        mouth_result = self.mouth_analyzer.analyze(face.mouth)
        pose_result = self.head_pose_analyzer.analyze(face.left_eye, face.right_eye, face.nose, now)
        sound_result = self._sound_result()

        fusion = self.fusion_engine.update(eye_result, mouth_result, pose_result, sound_result)

        emotion = dominant_emotion(frame.expressions)
        self._emotion_history.append(emotion)

        snapshot = MonitoringSnapshot(
            status=fusion.status,
            drowsy_score=_gated(prev.drowsy_score, fusion.score, _SCORE_EPSILON),
            drowsy_history=fusion.history,
            emotion_history=list(self._emotion_history),
            calibration_progress=_gated(prev.calibration_progress, self.calibrator.progress, _PROGRESS_EPSILON),
            calibrating=self.calibrator.active,
            blink_count=eye_result.blink_count,
            blink_detected=eye_result.blink_detected,
            dominant_emotion=emotion,
            sound_warning=sound_result.warning if sound_result is not None else False,
            continuous_close=eye_result.continuous_close,
            perclos=_gated(prev.perclos, eye_result.perclos, _PERCLOS_EPSILON),
            ear=_gated(prev.ear, ear, _EAR_EPSILON),
            mar=_gated(prev.mar, mouth_result.mar, _MAR_EPSILON),
            pitch=pose_result.pitch,
            volume=prev.volume,
            is_silent=prev.is_silent,
            mic_available=prev.mic_available,
            mode=self.config.mode,
        )
        self.snapshot = snapshot

        self.last_alerts = self.alert_detector.evaluate(
            AlertInputs(
                score=snapshot.drowsy_score,
                sound_warning=snapshot.sound_warning,
                mar=snapshot.mar,
                continuous_close=snapshot.continuous_close,
                perclos=snapshot.perclos,
                ear=snapshot.ear,
            ),
            now,
        )
        for event in self.last_alerts:
            logger.info("告警 [%s]: %s", event.cause, event.message)
            for listener in self._alert_listeners:
                listener(event)

        self._schedule_persistence(snapshot, snapshot.status != prev.status, eye_result.continuous_close, now)
        return snapshot

    # ---- 持久化 ----

    def build_record(self, snapshot: MonitoringSnapshot, now_ms: float) -> DriverLogRecord:
        return DriverLogRecord(
            driverId=self.config.driver_id or "",
            drowsiness=float(snapshot.drowsy_score),
            emotion=snapshot.dominant_emotion,
            eyeAspectRatio=float(snapshot.ear),
            mouthAspectRatio=float(snapshot.mar),
            headPose=None,
            blinkDetected=snapshot.blink_detected,
            microExpression=None,
            speechVolume=float(snapshot.volume),
            timestamp=_iso_timestamp(now_ms),
        )

    def _schedule_persistence(self, snapshot, status_changed: bool, continuous_close: bool, now_ms: float) -> None:
        if self.scheduler is None:
            return
        record = self.build_record(snapshot, now_ms)
        self.scheduler.schedule_save(record)
        if self.config.save_on_status_change and status_changed:
            self.scheduler.schedule_save(record, immediate=True)
        # 持续闭眼期间每帧都立即保存
        if continuous_close:
            self.scheduler.schedule_save(record, immediate=True)

    def stop(self):
        """停止麦克风，尽力发送未保存的记录。"""
        self.stop_microphone()
        if self.scheduler is not None:
            self.scheduler.close()


def replay(system: MonitoringSystem, lines, default_interval_ms: float = 200.0) -> List[AlertEvent]:
    """
    逐行回放 JSONL 格式的关键点记录。

    每行: {"landmarks": [[x, y], ...], "expressions": {...}, "timestamp": 毫秒(可选)}
    """
    alerts: List[AlertEvent] = []
    for i, line in enumerate(lines):
        line = line.strip()
        if not line:
            continue
        try:
            data = json.loads(line)
            if not isinstance(data, dict):
                raise TypeError(f"应为 JSON 对象，实际为 {type(data).__name__}")
            frame = build_frame(data["landmarks"], data.get("expressions"))
            now = float(data.get("timestamp", i * default_interval_ms))
            if not math.isfinite(now):
                raise ValueError(f"时间戳不合法: {now}")
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("第 %d 行无效，已跳过: %s", i + 1, e)
            continue
        if system.process_frame(frame, now) is not None:
            alerts.extend(system.last_alerts)
    return alerts


def main(argv=None):
    parser = argparse.ArgumentParser(description="驾驶员困倦监测系统")
    parser.add_argument("--config", type=str, default=None, help="JSON 参数配置文件路径")
    parser.add_argument("--mode", choices=[MODE_NORMAL, MODE_DEMO], default=None, help="告警模式")
    parser.add_argument("--driver-id", type=str, default=None, help="驾驶员 ID，设置后启用持久化")
    parser.add_argument("--sink-url", type=str, default=None, help="日志端点地址")
    parser.add_argument("--online-check-url", type=str, default=None, help="联网探测地址，不可达时跳过发送")
    parser.add_argument("--replay", type=str, required=True, help="JSONL 关键点记录文件")
    parser.add_argument("--verbose", action="store_true", help="输出调试日志")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    config = load_config(args.config)
    if args.mode is not None:
        config.mode = args.mode
    if args.driver_id is not None:
        config.driver_id = args.driver_id
    if args.sink_url is not None:
        config.sink_url = args.sink_url
    if args.online_check_url is not None:
        config.online_check_url = args.online_check_url

    system = MonitoringSystem(config)
    try:
        with open(args.replay, "r", encoding="utf-8") as f:
            alerts = replay(system, f, default_interval_ms=max(config.min_tick_interval_ms, 200.0))
    except FileNotFoundError:
        logger.error("回放文件不存在: %s", args.replay)
        return 1
    finally:
        system.stop()

    for event in alerts:
        print(f"[{event.timestamp_ms:.0f}] {event.cause}: {event.message}")
    print(json.dumps(system.snapshot.to_dict(), ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
