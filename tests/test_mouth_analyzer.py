"""MouthAnalyzer 单元测试"""

import pytest

from detectors.mouth_analyzer import MouthAnalyzer, calculate_mar
from models.data_models import MouthResult

from landmark_factory import make_mouth


class TestCalculateMar:
    """测试 MAR 计算"""

    def test_known_value(self):
        assert calculate_mar(make_mouth(0, 0, 0.3)) == pytest.approx(0.3)

    def test_closed_mouth(self):
        assert calculate_mar(make_mouth(0, 0, 0.0)) == pytest.approx(0.0)

    def test_zero_width_returns_zero(self):
        assert calculate_mar([(5.0, 5.0)] * 8) == 0.0


class TestMouthAnalyzer:
    """测试归一化与哈欠判定"""

    def test_returns_mouth_result(self):
        result = MouthAnalyzer().analyze(make_mouth(0, 0, 0.11))
        assert isinstance(result, MouthResult)
        assert result.raw_mar == pytest.approx(0.11)
        assert result.mar == pytest.approx(0.2)
        assert not result.is_yawning

    def test_clamped_to_one(self):
        result = MouthAnalyzer().analyze(make_mouth(0, 0, 2.0))
        assert result.mar == 1.0
        assert result.is_yawning

    def test_yawn_threshold_inclusive(self):
        analyzer = MouthAnalyzer(mar_normalize=1.0, yawn_threshold=0.7)
        assert analyzer.analyze(make_mouth(0, 0, 0.71)).is_yawning
        assert not analyzer.analyze(make_mouth(0, 0, 0.69)).is_yawning
        assert MouthAnalyzer(yawn_threshold=1.0).analyze(make_mouth(0, 0, 2.0)).is_yawning

    def test_degenerate_mouth(self):
        result = MouthAnalyzer().analyze([(1.0, 1.0)] * 8)
        assert result.mar == 0.0
        assert not result.is_yawning
