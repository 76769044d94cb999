"""核心数据模型定义"""

from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

Point = Tuple[float, float]

STATUS_AWAKE = "AWAKE"
STATUS_DROWSY = "DROWSY"


@dataclass(frozen=True)
class LandmarkFrame:
    """外部检测器输出的单帧关键点（68 点布局）和表情置信度"""
    landmarks: Tuple[Point, ...]
    expressions: Dict[str, float] = field(default_factory=dict)


@dataclass
class FaceLandmarks:
    """从单帧中拆分出的各区域关键点"""
    left_eye: List[Point]
    right_eye: List[Point]
    mouth: List[Point]
    nose: Point


@dataclass
class EyeState:
    """眼睛开闭状态，仅在滞回阈值被跨越时变化"""
    closed: bool
    last_change_ms: float


@dataclass
class EyeResult:
    """眼睛分析结果"""
    ear: float
    is_closed: bool
    continuous_close: bool
    continuous_closed_ms: float
    perclos: float
    blink_count: int
    blink_detected: bool
    blink_registered: bool = False


@dataclass
class MouthResult:
    """嘴巴分析结果，mar 已归一化到 [0, 1]"""
    mar: float
    raw_mar: float
    is_yawning: bool


@dataclass
class PoseResult:
    """头部姿态分析结果"""
    pitch: float
    pitch_velocity: float
    is_nodding: bool


@dataclass
class AudioFrame:
    """单个分析窗口的音频数据：时域采样 + 频域幅值（dB）"""
    time_domain: np.ndarray
    frequency_db: np.ndarray
    sample_rate: int = 48000
    fft_size: int = 2048


@dataclass
class AudioResult:
    """音频分析结果，volume 与 band_energy_low 为去抖后的发布值"""
    db: float
    volume: float
    spectral_variance: float
    band_energy_low: float
    currently_silent: bool
    is_silent: bool


@dataclass
class SoundResult:
    """鼾声周期性检测结果"""
    score: float
    warning: bool
    periodic: bool
    peak_count: int


@dataclass
class Peak:
    """包络上的一个峰值"""
    index: int
    t: float
    value: float


@dataclass
class FusionResult:
    """多模态融合结果"""
    raw_score: float
    score: float
    status: str
    history: List[int]


@dataclass
class AlertEvent:
    """单次告警事件，由调用方负责实际通知"""
    cause: str
    timestamp_ms: float
    message: str


@dataclass
class CalibrationResult:
    """个性化校准结果"""
    ear_closed_threshold: float
    ear_open_threshold: float
    baseline_ear: Optional[float]
    sample_count: int
    ear_distribution: dict


@dataclass
class DriverLogRecord:
    """发送到持久化端点的单条日志记录"""
    driverId: str
    drowsiness: Optional[float] = None
    emotion: Optional[str] = None
    eyeAspectRatio: Optional[float] = None
    mouthAspectRatio: Optional[float] = None
    headPose: Optional[str] = None
    blinkDetected: Optional[bool] = None
    microExpression: Optional[str] = None
    speechVolume: Optional[float] = None
    timestamp: str = ""

    def to_payload(self) -> dict:
        return asdict(self)


@dataclass
class MonitoringSnapshot:
    """对展示层发布的只读快照"""
    status: str = STATUS_AWAKE
    drowsy_score: float = 0.0
    drowsy_history: List[int] = field(default_factory=list)
    emotion_history: List[str] = field(default_factory=list)
    calibration_progress: float = 0.0
    calibrating: bool = False
    blink_count: int = 0
    blink_detected: bool = False
    dominant_emotion: str = "neutral"
    sound_warning: bool = False
    continuous_close: bool = False
    perclos: float = 0.0
    ear: float = 0.0
    mar: float = 0.0
    pitch: float = 0.0
    volume: float = 0.0
    is_silent: bool = False
    mic_available: Optional[bool] = None
    mode: str = "normal"

    def to_dict(self) -> dict:
        return asdict(self)
