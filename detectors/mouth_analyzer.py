"""嘴巴状态分析模块，负责计算并归一化 MAR 值"""

import math
from typing import List, Tuple

from models.data_models import MouthResult


def calculate_mar(mouth_points: List[Tuple[float, float]]) -> float:
    """
    计算 MAR 值。

    公式: MAR = (|m2-m6| + |m3-m5| + |m1-m7|) / (2 * |m0-m4|)

    Args:
        mouth_points: 8 个内唇轮廓关键点，m0/m4 为嘴角

    Returns:
        MAR 值，分母为零时返回 0.0
    """
    m0, m1, m2, m3, m4, m5, m6, m7 = mouth_points

    horizontal = math.dist(m0, m4)

    if horizontal == 0.0:
        return 0.0

    vertical = math.dist(m2, m6) + math.dist(m3, m5) + math.dist(m1, m7)

    return vertical / (2.0 * horizontal)


class MouthAnalyzer:
    """将 MAR 按固定常数归一化到 [0, 1]，并给出哈欠信号"""

    def __init__(self, mar_normalize: float = 0.55, yawn_threshold: float = 0.7):
        self.mar_normalize = mar_normalize
        self.yawn_threshold = yawn_threshold

    def analyze(self, mouth_points: List[Tuple[float, float]]) -> MouthResult:
        """
        分析嘴巴状态。

        Args:
            mouth_points: 8 个内唇关键点

        Returns:
            MouthResult(mar, raw_mar, is_yawning)
        """
        raw_mar = calculate_mar(mouth_points)
        mar = min(1.0, max(0.0, raw_mar / self.mar_normalize))

        return MouthResult(
            mar=mar,
            raw_mar=raw_mar,
            is_yawning=mar >= self.yawn_threshold,
        )
