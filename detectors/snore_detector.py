"""鼾声检测模块：在低频能量包络上做峰值检测和间隔规律性检验"""

from typing import List, Sequence

import numpy as np

from models.data_models import Peak, SoundResult


def smooth_envelope(values: Sequence[float], window: int = 3) -> List[float]:
    """尾随滑动平均，前几个点用已有的采样求均值"""
    smoothed = []
    for i in range(len(values)):
        chunk = values[max(0, i - window + 1):i + 1]
        smoothed.append(sum(chunk) / len(chunk))
    return smoothed


def detect_peaks(
    values: Sequence[float],
    times: Sequence[float],
    min_amp: float = 14.0,
    min_separation_ms: float = 150.0,
    prominence_std: float = 1.0,
) -> List[Peak]:
    """
    检测包络上的局部峰值。

    峰值条件: 严格大于前一点且不小于后一点；距上一个已接受峰值不少于
    min_separation_ms；幅值 >= min_amp 且 >= median + prominence_std * std。

    Args:
        values: 平滑后的包络值
        times: 与 values 等长的时间戳（毫秒）

    Returns:
        已接受的峰值列表
    """
    peaks: List[Peak] = []
    if len(values) == 0:
        return peaks

    arr = np.asarray(values, dtype=np.float64)
    med = float(np.median(arr))
    std = float(np.std(arr))

    for i in range(1, len(values) - 1):
        v = values[i]
        if not (v > values[i - 1] and v >= values[i + 1]):
            continue
        t = times[i]
        if peaks and t - peaks[-1].t < min_separation_ms:
            continue
        prominent = v >= med + prominence_std * std if std > 0 else True
        if prominent and v >= min_amp:
            peaks.append(Peak(index=i, t=t, value=v))

    return peaks


def evaluate_periodicity(
    peaks: Sequence[Peak],
    min_peaks: int = 3,
    max_interval_std_ms: float = 500.0,
    min_mean_interval_ms: float = 200.0,
    max_mean_interval_ms: float = 2000.0,
) -> bool:
    """峰值数量足够、间隔标准差够小且平均间隔在合理范围内时判定为周期性"""
    if len(peaks) < min_peaks:
        return False

    intervals = np.diff([p.t for p in peaks])
    mean_interval = float(np.mean(intervals))
    std_interval = float(np.std(intervals))

    return (
        std_interval <= max_interval_std_ms
        and min_mean_interval_ms <= mean_interval <= max_mean_interval_ms
    )


class SnoreDetector:
    """由包络周期性和低频能量占比给出声音分量"""

    def __init__(
        self,
        envelope_window: int = 256,
        min_envelope_samples: int = 8,
        peak_min_amp: float = 14.0,
        peak_min_separation_ms: float = 150.0,
        peak_prominence_std: float = 1.0,
        min_peaks: int = 3,
        max_interval_std_ms: float = 500.0,
        min_mean_interval_ms: float = 200.0,
        max_mean_interval_ms: float = 2000.0,
        full_score_peak_count: int = 6,
        band_energy_fallback: float = 0.25,
        fallback_score: float = 0.5,
        short_history_score: float = 0.4,
    ):
        self.envelope_window = envelope_window
        self.min_envelope_samples = min_envelope_samples
        self.peak_min_amp = peak_min_amp
        self.peak_min_separation_ms = peak_min_separation_ms
        self.peak_prominence_std = peak_prominence_std
        self.min_peaks = min_peaks
        self.max_interval_std_ms = max_interval_std_ms
        self.min_mean_interval_ms = min_mean_interval_ms
        self.max_mean_interval_ms = max_mean_interval_ms
        self.full_score_peak_count = full_score_peak_count
        self.band_energy_fallback = band_energy_fallback
        self.fallback_score = fallback_score
        self.short_history_score = short_history_score

    def evaluate(self, envelope, band_energy_low: float) -> SoundResult:
        """
        计算声音分量。

        Args:
            envelope: AudioEnvelopeBuffer
            band_energy_low: 当前发布的低频能量占比

        Returns:
            SoundResult(score, warning, periodic, peak_count)
        """
        values, times = envelope.recent(self.envelope_window)
        loud_low_band = band_energy_low > self.band_energy_fallback

        if len(values) < self.min_envelope_samples:
            if loud_low_band:
                return SoundResult(score=self.short_history_score, warning=True, periodic=False, peak_count=0)
            return SoundResult(score=0.0, warning=False, periodic=False, peak_count=0)

        peaks = detect_peaks(
            smooth_envelope(values),
            times,
            self.peak_min_amp,
            self.peak_min_separation_ms,
            self.peak_prominence_std,
        )
        periodic = evaluate_periodicity(
            peaks,
            self.min_peaks,
            self.max_interval_std_ms,
            self.min_mean_interval_ms,
            self.max_mean_interval_ms,
        )

        if periodic:
            score = min(1.0, len(peaks) / self.full_score_peak_count)
            return SoundResult(score=score, warning=True, periodic=True, peak_count=len(peaks))
        if loud_low_band:
            return SoundResult(score=self.fallback_score, warning=True, periodic=False, peak_count=len(peaks))
        return SoundResult(score=0.0, warning=False, periodic=False, peak_count=len(peaks))
