"""告警边沿检测模块：四路独立原因，上升沿触发并带冷却时间"""

from dataclasses import dataclass
from typing import Dict, List, Optional

from models.data_models import AlertEvent
from models.monitor_config import MODE_DEMO, MODE_NORMAL

CAUSE_DROWSY = "drowsy"
CAUSE_SNORE = "snore"
CAUSE_YAWN = "yawn"
CAUSE_EYES = "eyes"

ALERT_TEXT = {
    CAUSE_SNORE: "Snoring detected – driver may be sleeping.",
    CAUSE_YAWN: "Yawning detected – driver is getting drowsy.",
    CAUSE_EYES: "Eyes closed too long – risk of microsleep.",
    CAUSE_DROWSY: "Drowsiness level high – stop and rest.",
}


@dataclass
class AlertInputs:
    """单帧告警判定所需的已发布值"""
    score: float
    sound_warning: bool
    mar: float
    continuous_close: bool
    perclos: float
    ear: float


def should_fire(
    prev_active: bool,
    active: bool,
    last_fired_ms: Optional[float],
    now_ms: float,
    cooldown_ms: float,
) -> bool:
    """仅在 false→true 的边沿且冷却时间已过时触发"""
    if prev_active or not active:
        return False
    return last_fired_ms is None or now_ms - last_fired_ms >= cooldown_ms


class AlertEdgeDetector:
    """维护各原因的上一帧条件与最近触发时间，返回本帧触发的告警。"""

    def __init__(
        self,
        mode: str = MODE_NORMAL,
        score_threshold: float = 0.8,
        score_threshold_demo: float = 0.6,
        score_cooldown_ms: float = 10_000.0,
        score_cooldown_demo_ms: float = 3_000.0,
        sound_cooldown_ms: float = 15_000.0,
        yawn_threshold: float = 0.7,
        yawn_cooldown_ms: float = 10_000.0,
        eyes_cooldown_ms: float = 8_000.0,
        perclos_threshold: float = 0.25,
        perclos_threshold_demo: float = 0.18,
        low_ear: float = 0.18,
    ):
        self.mode = mode
        self.score_threshold = score_threshold
        self.score_threshold_demo = score_threshold_demo
        self.score_cooldown_ms = score_cooldown_ms
        self.score_cooldown_demo_ms = score_cooldown_demo_ms
        self.sound_cooldown_ms = sound_cooldown_ms
        self.yawn_threshold = yawn_threshold
        self.yawn_cooldown_ms = yawn_cooldown_ms
        self.eyes_cooldown_ms = eyes_cooldown_ms
        self.perclos_threshold = perclos_threshold
        self.perclos_threshold_demo = perclos_threshold_demo
        self.low_ear = low_ear
        self.reset()

    @property
    def demo(self) -> bool:
        return self.mode == MODE_DEMO

    def reset(self):
        self._prev: Dict[str, bool] = {cause: False for cause in ALERT_TEXT}
        self._last_fired: Dict[str, Optional[float]] = {cause: None for cause in ALERT_TEXT}

    def conditions(self, inputs: AlertInputs) -> Dict[str, bool]:
        """各原因的当前条件（与模式相关的阈值在此选择）"""
        score_threshold = self.score_threshold_demo if self.demo else self.score_threshold
        perclos_threshold = self.perclos_threshold_demo if self.demo else self.perclos_threshold
        return {
            CAUSE_DROWSY: inputs.score >= score_threshold,
            CAUSE_SNORE: bool(inputs.sound_warning),
            CAUSE_YAWN: inputs.mar >= self.yawn_threshold,
            CAUSE_EYES: (
                bool(inputs.continuous_close)
                or inputs.perclos > perclos_threshold
                or inputs.ear < self.low_ear
            ),
        }

    def cooldowns(self) -> Dict[str, float]:
        return {
            CAUSE_DROWSY: self.score_cooldown_demo_ms if self.demo else self.score_cooldown_ms,
            CAUSE_SNORE: self.sound_cooldown_ms,
            CAUSE_YAWN: self.yawn_cooldown_ms,
            CAUSE_EYES: self.eyes_cooldown_ms,
        }

    def evaluate(self, inputs: AlertInputs, now_ms: float) -> List[AlertEvent]:
        """
        判定本帧触发的告警。

        上一帧条件每帧都会更新，即使冷却期内抑制了告警。

        Returns:
            本帧触发的 AlertEvent 列表（可能为空）
        """
        fired: List[AlertEvent] = []
        cooldowns = self.cooldowns()

        for cause, active in self.conditions(inputs).items():
            prev = self._prev[cause]
            self._prev[cause] = active
            if should_fire(prev, active, self._last_fired[cause], now_ms, cooldowns[cause]):
                self._last_fired[cause] = now_ms
                fired.append(AlertEvent(cause=cause, timestamp_ms=now_ms, message=ALERT_TEXT[cause]))

        return fired
