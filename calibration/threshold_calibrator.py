"""阈值校准模块，采集一段时间的基线 EAR 并推导个性化的开闭眼阈值"""

import json
import logging
import math
import os
from datetime import datetime
from typing import List, Optional

from models.data_models import CalibrationResult

logger = logging.getLogger(__name__)

# 阈值推导常数
CLOSED_FACTOR = 0.6
OPEN_FACTOR = 0.75
MIN_CLOSED_THRESHOLD = 0.12
OPEN_MARGIN = 0.04


def compute_stats(values: list) -> dict:
    """
    计算一组数值的统计信息。

    Args:
        values: 非空浮点数列表

    Returns:
        {"mean": float, "std": float, "min": float, "max": float}
    """
    n = len(values)
    mean = sum(values) / n
    std = math.sqrt(sum((x - mean) ** 2 for x in values) / n)
    return {
        "mean": mean,
        "std": std,
        "min": min(values),
        "max": max(values),
    }


def derive_thresholds(baseline_ear: float) -> tuple:
    """
    由基线 EAR 推导 (闭眼阈值, 睁眼阈值)。

    closed = max(0.12, mean * 0.6)
    open = max(closed + 0.04, mean * 0.75)
    """
    closed = max(MIN_CLOSED_THRESHOLD, baseline_ear * CLOSED_FACTOR)
    opened = max(closed + OPEN_MARGIN, baseline_ear * OPEN_FACTOR)
    return closed, opened


class ThresholdCalibrator:
    """定时采集 EAR 样本，结束后输出个性化阈值；样本为空时保留原阈值"""

    def __init__(
        self,
        duration_ms: float = 10_000.0,
        ear_closed_threshold: float = 0.26,
        ear_open_threshold: float = 0.30,
    ):
        self.duration_ms = duration_ms
        self.ear_closed_threshold = ear_closed_threshold
        self.ear_open_threshold = ear_open_threshold
        self.baseline_ear: Optional[float] = None
        self.active = False
        self.progress = 0.0
        self._start_ms: Optional[float] = None
        self._samples: List[float] = []
        self._calibration_result: Optional[CalibrationResult] = None

    @property
    def sample_count(self) -> int:
        return len(self._samples)

    def start(self, now_ms: float) -> None:
        """开始校准：清空样本，进度归零"""
        self._samples = []
        self._start_ms = now_ms
        self.active = True
        self.progress = 0.0
        logger.info("开始 EAR 校准，时长 %.1f 秒", self.duration_ms / 1000.0)

    def add_sample(self, ear: float, now_ms: float) -> Optional[CalibrationResult]:
        """
        追加一个 EAR 样本并更新进度，到时自动结束。

        Returns:
            自动结束时返回 CalibrationResult，否则 None
        """
        if not self.active or self._start_ms is None:
            return None

        self._samples.append(ear)
        elapsed = now_ms - self._start_ms
        self.progress = min(1.0, elapsed / self.duration_ms)

        if elapsed >= self.duration_ms:
            return self.stop()
        return None

    def stop(self) -> CalibrationResult:
        """
        结束校准。

        有样本时按基线 EAR 更新阈值；无样本时阈值不变。进度总是置为 1。
        """
        self.active = False
        self._start_ms = None
        self.progress = 1.0

        distribution = {}
        if self._samples:
            distribution = compute_stats(self._samples)
            self.baseline_ear = distribution["mean"]
            self.ear_closed_threshold, self.ear_open_threshold = derive_thresholds(self.baseline_ear)
            logger.info(
                "校准完成: 样本 %d 个, 基线 EAR %.3f, 闭眼阈值 %.3f, 睁眼阈值 %.3f",
                len(self._samples),
                self.baseline_ear,
                self.ear_closed_threshold,
                self.ear_open_threshold,
            )
        else:
            logger.warning("校准期间未采集到样本，保留原阈值")

        self._calibration_result = CalibrationResult(
            ear_closed_threshold=self.ear_closed_threshold,
            ear_open_threshold=self.ear_open_threshold,
            baseline_ear=self.baseline_ear,
            sample_count=len(self._samples),
            ear_distribution=distribution,
        )
        return self._calibration_result

    def export_config(self, output_path: str) -> None:
        """
        导出 JSON 配置文件，可由 models.monitor_config.load_config 读取。

        Args:
            output_path: 输出 JSON 文件路径
        """
        result = self._calibration_result
        if result is None:
            result = CalibrationResult(
                ear_closed_threshold=self.ear_closed_threshold,
                ear_open_threshold=self.ear_open_threshold,
                baseline_ear=self.baseline_ear,
                sample_count=0,
                ear_distribution={},
            )

        config = {
            "ear_closed_threshold": result.ear_closed_threshold,
            "ear_open_threshold": result.ear_open_threshold,
            "calibration_info": {
                "baseline_ear": result.baseline_ear,
                "sample_count": result.sample_count,
                "ear_distribution": result.ear_distribution,
                "calibrated_at": datetime.now().isoformat(),
            },
        }

        os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(config, f, indent=4, ensure_ascii=False)

        logger.info("配置文件已导出: %s", output_path)
