"""测试用合成 68 点人脸关键点"""

import math

from detectors.landmark_parser import build_frame

LEFT_EYE_CENTER = (100.0, 100.0)
RIGHT_EYE_CENTER = (160.0, 100.0)
MOUTH_CENTER = (130.0, 180.0)
NOSE_DISTANCE = 40.0


def make_eye(cx, cy, ear):
    """6 点眼睛轮廓，EAR 恰为 ear（眼宽 30）"""
    h = ear * 15.0
    return [
        (cx - 15.0, cy),
        (cx - 5.0, cy - h),
        (cx + 5.0, cy - h),
        (cx + 15.0, cy),
        (cx + 5.0, cy + h),
        (cx - 5.0, cy + h),
    ]


def make_mouth(mx, my, raw_mar):
    """8 点内唇轮廓，未归一化 MAR 恰为 raw_mar（嘴宽 40）"""
    o = raw_mar / 0.075
    return [
        (mx - 20.0, my),
        (mx - 10.0, my - o),
        (mx, my - o),
        (mx + 10.0, my - o),
        (mx + 20.0, my),
        (mx + 10.0, my + o),
        (mx, my + o),
        (mx - 10.0, my + o),
    ]


def make_nose(pitch_deg):
    """使双眼中点指向鼻尖的向量与水平方向夹角为 pitch_deg"""
    cx = (LEFT_EYE_CENTER[0] + RIGHT_EYE_CENTER[0]) / 2.0
    cy = (LEFT_EYE_CENTER[1] + RIGHT_EYE_CENTER[1]) / 2.0
    rad = math.radians(pitch_deg)
    return (cx + NOSE_DISTANCE * math.cos(rad), cy + NOSE_DISTANCE * math.sin(rad))


def make_landmarks(ear=0.3, mar=0.0, pitch=0.0):
    """
    生成 68 个关键点。

    Args:
        ear: 双眼 EAR
        mar: 归一化后的 MAR（按 0.55 还原为原始值）
        pitch: 俯仰角（度）
    """
    points = [(130.0, 150.0)] * 68
    points[36:42] = make_eye(*LEFT_EYE_CENTER, ear)
    points[42:48] = make_eye(*RIGHT_EYE_CENTER, ear)
    points[60:68] = make_mouth(*MOUTH_CENTER, mar * 0.55)
    points[30] = make_nose(pitch)
    return points


def make_frame(ear=0.3, mar=0.0, pitch=0.0, expressions=None):
    return build_frame(make_landmarks(ear, mar, pitch), expressions)
