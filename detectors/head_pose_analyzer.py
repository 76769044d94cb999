"""头部姿态分析模块，由眼鼻几何关系估计俯仰角及其角速度，并判断点头"""

import math
from typing import List, Optional, Tuple

from models.data_models import PoseResult


def _center(points: List[Tuple[float, float]]) -> Tuple[float, float]:
    n = len(points)
    return sum(p[0] for p in points) / n, sum(p[1] for p in points) / n


def calculate_pitch(
    left_eye: List[Tuple[float, float]],
    right_eye: List[Tuple[float, float]],
    nose: Tuple[float, float],
) -> float:
    """
    计算俯仰角（度）。

    取双眼中心连线中点指向鼻尖的向量，pitch = atan2(vy, max(1e-6, vx))。
    """
    lx, ly = _center(left_eye)
    rx, ry = _center(right_eye)
    cx, cy = (lx + rx) / 2.0, (ly + ry) / 2.0

    vx = nose[0] - cx
    vy = nose[1] - cy

    return math.degrees(math.atan2(vy, max(1e-6, vx)))


class HeadPoseAnalyzer:
    """维护上一帧俯仰角与平滑角速度，输出点头信号"""

    def __init__(
        self,
        velocity_alpha: float = 0.5,
        nod_angle_deg: float = 7.0,
        nod_velocity_deg_s: float = 5.0,
    ):
        """初始化平滑系数、点头阈值和帧间状态"""
        self.velocity_alpha = velocity_alpha
        self.nod_angle_deg = nod_angle_deg
        self.nod_velocity_deg_s = nod_velocity_deg_s
        self._last_pitch: Optional[float] = None
        self._last_ms: Optional[float] = None
        self._velocity = 0.0

    def analyze(self, left_eye, right_eye, nose, now_ms: float) -> PoseResult:
        """
        估计头部俯仰角和角速度。

        Args:
            left_eye: 左眼 6 个关键点
            right_eye: 右眼 6 个关键点
            nose: 鼻尖坐标
            now_ms: 当前时间戳（毫秒）

        Returns:
            PoseResult(pitch, pitch_velocity, is_nodding)
        """
        pitch = calculate_pitch(left_eye, right_eye, nose)

        velocity = 0.0
        if self._last_pitch is not None and self._last_ms is not None:
            dt = (now_ms - self._last_ms) / 1000.0
            if dt > 0:
                raw = (pitch - self._last_pitch) / dt
                # 指数平滑抑制抖动
                self._velocity = self._velocity * (1 - self.velocity_alpha) + raw * self.velocity_alpha
                velocity = self._velocity

        self._last_pitch = pitch
        self._last_ms = now_ms

        return PoseResult(
            pitch=pitch,
            pitch_velocity=velocity,
            is_nodding=self.is_nod(pitch, velocity),
        )

    def is_nod(self, pitch: float, velocity: float) -> bool:
        """低头角度配合角速度，或更快角速度配合一半角度，即判定为点头"""
        abs_vel = abs(velocity)
        return (
            (pitch > self.nod_angle_deg and abs_vel > self.nod_velocity_deg_s)
            or (abs_vel > 2 * self.nod_velocity_deg_s and abs(pitch) > self.nod_angle_deg / 2)
        )

    def reset(self):
        """清除帧间状态"""
        self._last_pitch = None
        self._last_ms = None
        self._velocity = 0.0
