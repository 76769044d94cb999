"""关键点拆分模块，将外部检测器输出的 68 点关键点拆分为眼、嘴、鼻区域"""

import math
from typing import Iterable, Mapping, Optional

from models.data_models import FaceLandmarks, LandmarkFrame

# 关键点索引常量（68 点布局）
LEFT_EYE_INDICES = list(range(36, 42))
RIGHT_EYE_INDICES = list(range(42, 48))
MOUTH_INDICES = list(range(60, 68))
NOSE_TIP_INDEX = 30

MIN_LANDMARKS = MOUTH_INDICES[-1] + 1


def _to_point(raw) -> tuple:
    """接受 (x, y) 序列或 {"x":..,"y":..} 字典，返回浮点坐标元组"""
    if isinstance(raw, Mapping):
        x, y = raw["x"], raw["y"]
    else:
        x, y = raw[0], raw[1]
    return float(x), float(y)


def build_frame(landmarks: Iterable, expressions: Optional[Mapping] = None) -> LandmarkFrame:
    """
    由原始数据构建 LandmarkFrame。

    Raises:
        ValueError: 坐标或表情置信度格式不合法
    """
    try:
        points = tuple(_to_point(p) for p in landmarks)
    except (KeyError, IndexError, TypeError, ValueError) as e:
        raise ValueError(f"关键点格式不合法: {e}") from e

    if expressions is not None and not isinstance(expressions, Mapping):
        raise ValueError(f"表情置信度应为字典，实际为 {type(expressions).__name__}")
    try:
        scores = {str(k): float(v) for k, v in (expressions or {}).items()}
    except (TypeError, ValueError) as e:
        raise ValueError(f"表情置信度格式不合法: {e}") from e

    return LandmarkFrame(landmarks=points, expressions=scores)


def parse_landmarks(frame: LandmarkFrame) -> Optional[FaceLandmarks]:
    """
    从单帧中提取眼、嘴、鼻尖关键点。

    Args:
        frame: 外部检测器输出的关键点帧

    Returns:
        FaceLandmarks；关键点数量不足或含非有限值时返回 None（跳过本帧）
    """
    points = frame.landmarks
    if len(points) < MIN_LANDMARKS:
        return None

    left_eye = [points[i] for i in LEFT_EYE_INDICES]
    right_eye = [points[i] for i in RIGHT_EYE_INDICES]
    mouth = [points[i] for i in MOUTH_INDICES]
    nose = points[NOSE_TIP_INDEX]

    for x, y in left_eye + right_eye + mouth + [nose]:
        if not (math.isfinite(x) and math.isfinite(y)):
            return None

    return FaceLandmarks(left_eye=left_eye, right_eye=right_eye, mouth=mouth, nose=nose)
