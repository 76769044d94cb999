"""多模态融合模块：加权合成困倦分数，EMA 平滑并输出状态"""

import math
from collections import deque
from typing import Optional

from models.data_models import (
    STATUS_AWAKE,
    STATUS_DROWSY,
    EyeResult,
    FusionResult,
    MouthResult,
    PoseResult,
    SoundResult,
)


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


class FusionEngine:
    """汇总眼睛、PERCLOS、嘴巴、头部和声音信号，输出平滑后的困倦分数。"""

    def __init__(
        self,
        weight_eyes: float = 0.8,
        weight_perclos: float = 0.5,
        weight_mar: float = 0.35,
        weight_head: float = 0.4,
        weight_sound: float = 0.25,
        perclos_full_scale: float = 0.12,
        head_pitch_full_scale_deg: float = 30.0,
        smooth_alpha: float = 0.6,
        drowsy_threshold: float = 0.5,
        history_max_points: int = 60,
    ):
        self.weight_eyes = weight_eyes
        self.weight_perclos = weight_perclos
        self.weight_mar = weight_mar
        self.weight_head = weight_head
        self.weight_sound = weight_sound
        self.perclos_full_scale = perclos_full_scale
        self.head_pitch_full_scale_deg = head_pitch_full_scale_deg
        self.smooth_alpha = smooth_alpha
        self.drowsy_threshold = drowsy_threshold
        self._ema = 0.0
        self._history = deque(maxlen=history_max_points)

    @property
    def score(self) -> float:
        return self._ema

    def eyes_component(self, eye_result: EyeResult) -> float:
        if eye_result.continuous_close:
            return 1.0
        if eye_result.is_closed:
            return 0.9
        return 0.0

    def head_component(self, pose_result: PoseResult) -> float:
        if pose_result.is_nodding:
            return 1.0
        return clamp01(pose_result.pitch / self.head_pitch_full_scale_deg)

    def raw_score(
        self,
        eye_result: EyeResult,
        mouth_result: MouthResult,
        pose_result: PoseResult,
        sound_result: Optional[SoundResult] = None,
    ) -> float:
        """未平滑的加权分数，截断到 [0, 1]"""
        sound = clamp01(sound_result.score) if sound_result is not None else 0.0

        raw = (
            self.weight_eyes * self.eyes_component(eye_result)
            + self.weight_perclos * min(1.0, eye_result.perclos / self.perclos_full_scale)
            + self.weight_mar * mouth_result.mar
            + self.weight_head * self.head_component(pose_result)
            + self.weight_sound * sound
        )
        if not math.isfinite(raw):
            raw = 0.0
        return clamp01(raw)

    def update(
        self,
        eye_result: EyeResult,
        mouth_result: MouthResult,
        pose_result: PoseResult,
        sound_result: Optional[SoundResult] = None,
    ) -> FusionResult:
        """
        融合一帧的各路信号。

        Args:
            eye_result: 眼睛分析结果
            mouth_result: 嘴巴分析结果
            pose_result: 头部姿态分析结果
            sound_result: 声音分量（麦克风不可用时为 None，按 0 处理）

        Returns:
            FusionResult(raw_score, score, status, history)
        """
        raw = self.raw_score(eye_result, mouth_result, pose_result, sound_result)

        self._ema = self._ema * (1 - self.smooth_alpha) + raw * self.smooth_alpha

        is_drowsy = self._ema > self.drowsy_threshold
        self._history.append(1 if is_drowsy else 0)

        return FusionResult(
            raw_score=raw,
            score=self._ema,
            status=STATUS_DROWSY if is_drowsy else STATUS_AWAKE,
            history=list(self._history),
        )

    def reset(self):
        self._ema = 0.0
        self._history.clear()
