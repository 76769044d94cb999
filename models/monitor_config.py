"""监测系统配置：所有可调参数及其默认值集中于此"""

import json
import logging
from dataclasses import dataclass, fields
from typing import Optional

logger = logging.getLogger(__name__)

MODE_NORMAL = "normal"
MODE_DEMO = "demo"


@dataclass
class MonitorConfig:
    """
    监测参数。时间单位均为毫秒，除非字段名另有说明。

    构造一次后按引用传给各组件；未在 JSON 配置文件中出现的字段保持默认值。
    """

    # ── 视频节拍 ──────────────────────────────────────────
    min_tick_interval_ms: float = 180.0

    # ── 眼睛 / 眨眼 / PERCLOS ────────────────────────────
    ear_closed_threshold: float = 0.26
    ear_open_threshold: float = 0.30
    blink_min_ms: float = 250.0
    blink_max_ms: float = 500.0
    blink_indicator_ms: float = 300.0
    continuous_close_ms: float = 500.0
    perclos_window_ms: float = 30_000.0

    # ── 嘴巴 ──────────────────────────────────────────────
    mar_normalize: float = 0.55
    yawn_threshold: float = 0.7

    # ── 头部姿态 ──────────────────────────────────────────
    pitch_velocity_alpha: float = 0.5
    head_nod_angle_deg: float = 7.0
    head_nod_velocity_deg_s: float = 5.0
    head_pitch_full_scale_deg: float = 30.0

    # ── 音频 ──────────────────────────────────────────────
    sample_interval_ms: float = 200.0
    fft_size: int = 2048
    sample_rate: int = 48000
    smoothing_time_constant: float = 0.3
    silence_db_threshold: float = -55.0
    silence_seconds: float = 5.0
    spectral_variance_threshold: float = 1e-8
    low_band_start_hz: float = 50.0
    low_band_end_hz: float = 300.0
    audio_publish_epsilon: float = 0.005
    envelope_max_entries: int = 512

    # ── 鼾声周期性 ────────────────────────────────────────
    envelope_window: int = 256
    min_envelope_samples: int = 8
    peak_min_amp: float = 14.0
    peak_min_separation_ms: float = 150.0
    peak_prominence_std: float = 1.0
    min_peaks: int = 3
    max_interval_std_ms: float = 500.0
    min_mean_interval_ms: float = 200.0
    max_mean_interval_ms: float = 2000.0
    full_score_peak_count: int = 6
    band_energy_fallback: float = 0.25
    fallback_sound_score: float = 0.5
    short_history_sound_score: float = 0.4

    # ── 校准 ──────────────────────────────────────────────
    calibration_duration_ms: float = 10_000.0

    # ── 融合 ──────────────────────────────────────────────
    weight_eyes: float = 0.8
    weight_perclos: float = 0.5
    weight_mar: float = 0.35
    weight_head: float = 0.4
    weight_sound: float = 0.25
    perclos_full_scale: float = 0.12
    smooth_alpha: float = 0.6
    drowsy_threshold: float = 0.5
    history_max_points: int = 60

    # ── 告警 ──────────────────────────────────────────────
    mode: str = MODE_NORMAL
    alert_score_threshold: float = 0.8
    alert_score_threshold_demo: float = 0.6
    alert_score_cooldown_ms: float = 10_000.0
    alert_score_cooldown_demo_ms: float = 3_000.0
    alert_sound_cooldown_ms: float = 15_000.0
    alert_yawn_cooldown_ms: float = 10_000.0
    alert_eyes_cooldown_ms: float = 8_000.0
    alert_perclos_threshold: float = 0.25
    alert_perclos_threshold_demo: float = 0.18
    alert_low_ear: float = 0.18

    # ── 持久化 ────────────────────────────────────────────
    driver_id: Optional[str] = None
    sink_url: str = "http://localhost:3000/api/logs/driver"
    save_interval_ms: float = 5_000.0
    save_attempts: int = 3
    save_backoff_ms: float = 300.0
    save_timeout_s: float = 5.0
    save_on_status_change: bool = True
    # 设置后每次发送前先探测该地址，不可达则视为离线并跳过发送
    online_check_url: Optional[str] = None
    online_check_timeout_s: float = 2.0


def load_config(config_path: Optional[str] = None) -> MonitorConfig:
    """从 JSON 配置文件加载参数，缺失字段使用默认值。"""
    config = MonitorConfig()

    if config_path is None:
        return config

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        logger.warning("配置文件不存在 %s，使用默认参数", config_path)
        return config
    except json.JSONDecodeError:
        logger.warning("配置文件格式错误 %s，使用默认参数", config_path)
        return config

    if not isinstance(data, dict):
        logger.warning("配置文件顶层必须是对象 %s，使用默认参数", config_path)
        return config

    # 用配置文件中的值覆盖默认值，未知字段和 null 忽略
    for f in fields(MonitorConfig):
        if f.name in data and data[f.name] is not None:
            setattr(config, f.name, data[f.name])

    if config.mode not in (MODE_NORMAL, MODE_DEMO):
        logger.warning("未知模式 %s，回退到 %s", config.mode, MODE_NORMAL)
        config.mode = MODE_NORMAL

    return config
