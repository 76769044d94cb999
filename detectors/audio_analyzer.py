"""音频分析模块：响度（dB）、频谱方差、静音去抖和低频能量占比"""

import math
from collections import deque
from typing import List, Optional, Tuple

import numpy as np

from models.data_models import AudioFrame, AudioResult

DB_FLOOR = -120.0


def rms_db(time_domain: np.ndarray) -> float:
    """时域采样的 RMS 分贝值，下限 -120 dB"""
    samples = np.asarray(time_domain, dtype=np.float64)
    mean_square = float(np.sum(samples * samples)) / max(1, samples.size)
    rms = math.sqrt(mean_square) or 1e-12
    return max(20.0 * math.log10(rms), DB_FLOOR)


def db_to_magnitude(frequency_db: np.ndarray) -> np.ndarray:
    """dB 转线性幅值，非有限值按 0 处理"""
    db = np.asarray(frequency_db, dtype=np.float64)
    finite = np.isfinite(db)
    magnitude = np.zeros_like(db)
    magnitude[finite] = np.power(10.0, db[finite] / 20.0)
    return magnitude


def spectral_variance(magnitude: np.ndarray) -> float:
    """各频点幅值的总体方差，空输入返回 0"""
    if magnitude.size == 0:
        return 0.0
    return float(np.var(magnitude))


def low_band_ratio(
    frequency_db: np.ndarray,
    sample_rate: int,
    fft_size: int,
    start_hz: float = 50.0,
    end_hz: float = 300.0,
) -> float:
    """
    低频段线性幅值之和占全频段之和的比例。

    Args:
        frequency_db: 各频点幅值（dB），长度为 fft_size / 2
        sample_rate: 采样率
        fft_size: FFT 长度
        start_hz: 频段下限
        end_hz: 频段上限（含该频点）

    Returns:
        [0, 1] 内的比例；总能量为 0 时返回 0
    """
    magnitude = db_to_magnitude(frequency_db)
    bin_count = magnitude.size
    if bin_count == 0:
        return 0.0

    freq_per_bin = sample_rate / fft_size
    start_bin = max(0, int(math.floor(start_hz / freq_per_bin)))
    end_bin = min(bin_count - 1, int(math.floor(end_hz / freq_per_bin)))

    total = float(np.sum(magnitude))
    if total <= 0:
        return 0.0

    band = float(np.sum(magnitude[start_bin:end_bin + 1]))
    return max(0.0, min(1.0, band / total))


def magnitude_spectrum(samples: np.ndarray, fft_size: int) -> np.ndarray:
    """
    计算时域窗口的线性幅度谱。

    使用 Blackman 窗和实数 FFT，返回前 fft_size / 2 个频点；不足 fft_size
    的输入在前端补零。
    """
    window = np.zeros(fft_size, dtype=np.float64)
    data = np.asarray(samples, dtype=np.float64)[-fft_size:]
    window[fft_size - data.size:] = data
    spectrum = np.fft.rfft(window * np.blackman(fft_size))
    return np.abs(spectrum[: fft_size // 2]) / fft_size


def magnitude_to_db(magnitude: np.ndarray) -> np.ndarray:
    return 20.0 * np.log10(np.maximum(magnitude, 1e-12))


def spectrum_db(samples: np.ndarray, fft_size: int) -> np.ndarray:
    """计算时域窗口的幅度谱（dB）"""
    return magnitude_to_db(magnitude_spectrum(samples, fft_size))


class AudioEnvelopeBuffer:
    """低频能量百分比的环形缓冲区，满时淘汰最旧的采样"""

    def __init__(self, max_entries: int = 512):
        self.max_entries = max_entries
        self._entries = deque(maxlen=max_entries)  # (timestamp_ms, percent)

    def append(self, timestamp_ms: float, percent: float) -> None:
        self._entries.append((timestamp_ms, percent))

    def recent(self, max_samples: int = 120) -> Tuple[List[float], List[float]]:
        """返回最近 max_samples 个采样的 (包络值, 时间戳)"""
        entries = list(self._entries)[-max_samples:]
        return [v for _, v in entries], [t for t, _ in entries]

    def __len__(self):
        return len(self._entries)

    def clear(self):
        self._entries.clear()


class AudioAnalyzer:
    """逐窗口分析音频，维护静音去抖、发布值去抖和低频能量包络"""

    def __init__(
        self,
        sample_interval_ms: float = 200.0,
        silence_db_threshold: float = -55.0,
        silence_seconds: float = 5.0,
        spectral_variance_threshold: float = 1e-8,
        low_band_start_hz: float = 50.0,
        low_band_end_hz: float = 300.0,
        publish_epsilon: float = 0.005,
        envelope_max_entries: int = 512,
    ):
        self.sample_interval_ms = sample_interval_ms
        self.silence_db_threshold = silence_db_threshold
        self.silence_seconds = silence_seconds
        self.spectral_variance_threshold = spectral_variance_threshold
        self.low_band_start_hz = low_band_start_hz
        self.low_band_end_hz = low_band_end_hz
        self.publish_epsilon = publish_epsilon
        self.envelope = AudioEnvelopeBuffer(envelope_max_entries)
        self.reset()

    def reset(self):
        """清空所有帧间状态和已发布值"""
        self._last_sample_ms: Optional[float] = None
        self._silence_start_ms: Optional[float] = None
        self.volume = 0.0
        self.band_energy_low = 0.0
        self.is_silent = False
        self.envelope.clear()

    def process(self, frame: AudioFrame, now_ms: float) -> Optional[AudioResult]:
        """
        分析一个音频窗口。

        Args:
            frame: 时域 + 频域数据
            now_ms: 当前时间戳（毫秒）

        Returns:
            AudioResult；距上次采样不足 sample_interval_ms 时返回 None
        """
        if self._last_sample_ms is not None and now_ms - self._last_sample_ms < self.sample_interval_ms:
            return None
        self._last_sample_ms = now_ms

        db = rms_db(frame.time_domain)
        variance = spectral_variance(db_to_magnitude(frame.frequency_db))
        currently_silent = db < self.silence_db_threshold and variance < self.spectral_variance_threshold

        volume = max(0.0, min(1.0, (db + 120.0) / 120.0))
        ratio = low_band_ratio(
            frame.frequency_db,
            frame.sample_rate,
            frame.fft_size,
            self.low_band_start_hz,
            self.low_band_end_hz,
        )

        # 整数百分比，半数向上取整
        self.envelope.append(now_ms, math.floor(ratio * 100 + 0.5))

        if currently_silent:
            if self._silence_start_ms is None:
                self._silence_start_ms = now_ms
            if now_ms - self._silence_start_ms >= self.silence_seconds * 1000:
                self.is_silent = True
        else:
            self.is_silent = False
            self._silence_start_ms = None

        # 变化超过 epsilon 才更新发布值，避免向下游频繁推送噪声
        if abs(volume - self.volume) > self.publish_epsilon:
            self.volume = volume
        if abs(ratio - self.band_energy_low) > self.publish_epsilon:
            self.band_energy_low = ratio

        return AudioResult(
            db=db,
            volume=self.volume,
            spectral_variance=variance,
            band_energy_low=self.band_energy_low,
            currently_silent=currently_silent,
            is_silent=self.is_silent,
        )
