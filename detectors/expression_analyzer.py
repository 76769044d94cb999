"""表情分析：从表情置信度映射中选出主导表情"""

from typing import Mapping, Optional

DEFAULT_EMOTION = "neutral"


def dominant_emotion(expressions: Optional[Mapping]) -> str:
    """
    返回置信度最高的表情类别。

    置信度相同时取后出现的类别；映射为空或数值不合法时返回 "neutral"。
    """
    if not expressions:
        return DEFAULT_EMOTION

    best_label, best_score = DEFAULT_EMOTION, 0.0
    try:
        for label, score in expressions.items():
            score = float(score)
            if not best_score > score:
                best_label, best_score = label, score
    except (TypeError, ValueError):
        return DEFAULT_EMOTION

    return str(best_label)
