"""眼睛状态分析模块，负责计算 EAR 值、滞回开闭判定、眨眼分类和 PERCLOS"""

import math
from collections import deque
from typing import List, Optional, Tuple

from models.data_models import EyeResult, EyeState


def calculate_ear(eye_points: List[Tuple[float, float]]) -> float:
    """
    计算单只眼睛的 EAR 值。

    公式: EAR = (|p1-p5| + |p2-p4|) / (2 * |p0-p3|)

    Args:
        eye_points: 6 个眼睛轮廓关键点 [(x,y), ...]，p0/p3 为眼角

    Returns:
        EAR 值，分母为零时返回 0.0
    """
    p0, p1, p2, p3, p4, p5 = eye_points

    vertical_1 = math.dist(p1, p5)
    vertical_2 = math.dist(p2, p4)
    horizontal = math.dist(p0, p3)

    if horizontal == 0.0:
        return 0.0

    return (vertical_1 + vertical_2) / (2.0 * horizontal)


def average_ear(left_eye: List[Tuple[float, float]], right_eye: List[Tuple[float, float]]) -> float:
    """双眼 EAR 平均值"""
    return (calculate_ear(left_eye) + calculate_ear(right_eye)) / 2.0


class PerclosWindow:
    """固定时长滑动窗口内的闭眼采样，比值 = 闭眼采样数 / 采样总数"""

    def __init__(self, window_ms: float = 30_000.0):
        self.window_ms = window_ms
        self._samples = deque()  # (timestamp_ms, closed)

    def add(self, now_ms: float, closed: bool) -> float:
        """追加一个采样并裁剪窗口，返回裁剪后的 PERCLOS"""
        self._samples.append((now_ms, 1 if closed else 0))
        self.prune(now_ms)
        return self.ratio()

    def prune(self, now_ms: float) -> None:
        cutoff = now_ms - self.window_ms
        while self._samples and self._samples[0][0] < cutoff:
            self._samples.popleft()

    def ratio(self) -> float:
        closed = sum(flag for _, flag in self._samples)
        return closed / max(1, len(self._samples))

    def __len__(self):
        return len(self._samples)

    def clear(self):
        self._samples.clear()


class EyeAnalyzer:
    """
    基于双阈值滞回的开闭眼状态机。

    闭眼状态下 EAR 回升到 ear_open_threshold 以上才视为睁眼；睁眼状态下
    EAR 低于 ear_closed_threshold 才视为闭眼。闭眼持续时间落在
    [blink_min_ms, blink_max_ms) 内的一次闭合计为一次眨眼。
    """

    def __init__(
        self,
        ear_closed_threshold: float = 0.26,
        ear_open_threshold: float = 0.30,
        blink_min_ms: float = 250.0,
        blink_max_ms: float = 500.0,
        blink_indicator_ms: float = 300.0,
        continuous_close_ms: float = 500.0,
        perclos_window_ms: float = 30_000.0,
    ):
        """初始化阈值和状态"""
        self.ear_closed_threshold = ear_closed_threshold
        self.ear_open_threshold = ear_open_threshold
        self.blink_min_ms = blink_min_ms
        self.blink_max_ms = blink_max_ms
        self.blink_indicator_ms = blink_indicator_ms
        self.continuous_close_ms = continuous_close_ms
        self.perclos = PerclosWindow(perclos_window_ms)
        self._state: Optional[EyeState] = None
        self._blink_count = 0
        self._blink_at: Optional[float] = None

    @property
    def state(self) -> Optional[EyeState]:
        return self._state

    @property
    def blink_count(self) -> int:
        return self._blink_count

    def set_thresholds(self, ear_closed_threshold: float, ear_open_threshold: float) -> None:
        self.ear_closed_threshold = ear_closed_threshold
        self.ear_open_threshold = ear_open_threshold

    def update(self, ear: float, now_ms: float) -> EyeResult:
        """
        以一个 EAR 采样推进状态机。

        Args:
            ear: 当前双眼平均 EAR
            now_ms: 当前时间戳（毫秒）

        Returns:
            EyeResult
        """
        if self._state is None:
            self._state = EyeState(closed=False, last_change_ms=now_ms)

        state = self._state
        if state.closed:
            closed = ear < self.ear_open_threshold
        else:
            closed = ear < self.ear_closed_threshold

        blink_registered = False
        if closed != state.closed:
            duration = now_ms - state.last_change_ms
            if state.closed:
                if self.blink_min_ms <= duration < self.blink_max_ms:
                    self._blink_count += 1
                    self._blink_at = now_ms
                    blink_registered = True
            else:
                self._blink_at = None
            self._state = EyeState(closed=closed, last_change_ms=now_ms)

        perclos = self.perclos.add(now_ms, closed)

        closed_ms = now_ms - self._state.last_change_ms if closed else 0.0

        return EyeResult(
            ear=ear,
            is_closed=closed,
            continuous_close=closed_ms >= self.continuous_close_ms,
            continuous_closed_ms=closed_ms,
            perclos=perclos,
            blink_count=self._blink_count,
            blink_detected=self.blink_detected(now_ms),
            blink_registered=blink_registered,
        )

    def analyze(self, left_eye, right_eye, now_ms: float) -> EyeResult:
        """计算双眼 EAR 并推进状态机"""
        return self.update(average_ear(left_eye, right_eye), now_ms)

    def blink_detected(self, now_ms: float) -> bool:
        """眨眼指示在计数后保持 blink_indicator_ms，随后自动清除"""
        if self._blink_at is None:
            return False
        return now_ms - self._blink_at < self.blink_indicator_ms

    def reset(self):
        """重置状态机、眨眼计数和 PERCLOS 窗口"""
        self._state = None
        self._blink_count = 0
        self._blink_at = None
        self.perclos.clear()
