"""音频分析模块单元测试"""

import math

import numpy as np
import pytest

from detectors.audio_analyzer import (
    DB_FLOOR,
    AudioAnalyzer,
    AudioEnvelopeBuffer,
    db_to_magnitude,
    low_band_ratio,
    rms_db,
    spectral_variance,
    spectrum_db,
)
from models.data_models import AudioFrame, AudioResult

FFT_SIZE = 2048
SAMPLE_RATE = 48000
BIN_HZ = SAMPLE_RATE / FFT_SIZE


def _sine(bin_index=10, amplitude=1.0, n=FFT_SIZE):
    t = np.arange(n) / SAMPLE_RATE
    return amplitude * np.sin(2 * np.pi * bin_index * BIN_HZ * t)


def _frame(samples):
    return AudioFrame(
        time_domain=samples,
        frequency_db=spectrum_db(samples, FFT_SIZE),
        sample_rate=SAMPLE_RATE,
        fft_size=FFT_SIZE,
    )


def _silent_frame():
    return AudioFrame(
        time_domain=np.zeros(FFT_SIZE),
        frequency_db=np.full(FFT_SIZE // 2, -np.inf),
        sample_rate=SAMPLE_RATE,
        fft_size=FFT_SIZE,
    )


class TestRmsDb:
    """测试 rms_db()"""

    def test_silence_floor(self):
        assert rms_db(np.zeros(1024)) == DB_FLOOR

    def test_empty_floor(self):
        assert rms_db(np.array([])) == DB_FLOOR

    def test_full_scale_sine(self):
        assert rms_db(_sine()) == pytest.approx(20 * math.log10(1 / math.sqrt(2)), abs=0.01)

    def test_constant_signal(self):
        assert rms_db(np.full(100, 0.1)) == pytest.approx(-20.0)


class TestSpectrumHelpers:
    """测试频域辅助函数"""

    def test_db_to_magnitude(self):
        mags = db_to_magnitude(np.array([0.0, -20.0, -np.inf]))
        assert mags == pytest.approx([1.0, 0.1, 0.0])

    def test_variance_empty(self):
        assert spectral_variance(np.array([])) == 0.0

    def test_variance_constant(self):
        assert spectral_variance(np.ones(16)) == 0.0

    def test_variance_population(self):
        assert spectral_variance(np.array([0.0, 2.0])) == pytest.approx(1.0)

    def test_spectrum_peak_bin(self):
        spectrum = spectrum_db(_sine(bin_index=10), FFT_SIZE)
        assert spectrum.shape == (FFT_SIZE // 2,)
        assert int(np.argmax(spectrum)) == 10

    def test_spectrum_short_input_padded(self):
        spectrum = spectrum_db(np.ones(100), FFT_SIZE)
        assert spectrum.shape == (FFT_SIZE // 2,)
        assert np.all(np.isfinite(spectrum))


class TestLowBandRatio:
    """测试 low_band_ratio()"""

    def test_flat_spectrum(self):
        # 50 Hz -> bin 2, 300 Hz -> bin 12，含两端共 11 个频点
        flat = np.zeros(FFT_SIZE // 2)
        ratio = low_band_ratio(flat, SAMPLE_RATE, FFT_SIZE, 50.0, 300.0)
        assert ratio == pytest.approx(11 / (FFT_SIZE // 2))

    def test_all_energy_in_band(self):
        db = np.full(FFT_SIZE // 2, -np.inf)
        db[5] = 0.0
        assert low_band_ratio(db, SAMPLE_RATE, FFT_SIZE) == pytest.approx(1.0)

    def test_no_energy_in_band(self):
        db = np.full(FFT_SIZE // 2, -np.inf)
        db[500] = 0.0
        assert low_band_ratio(db, SAMPLE_RATE, FFT_SIZE) == 0.0

    def test_zero_total(self):
        db = np.full(FFT_SIZE // 2, -np.inf)
        assert low_band_ratio(db, SAMPLE_RATE, FFT_SIZE) == 0.0

    def test_empty(self):
        assert low_band_ratio(np.array([]), SAMPLE_RATE, FFT_SIZE) == 0.0

    def test_end_bin_clamped(self):
        db = np.zeros(8)
        assert low_band_ratio(db, SAMPLE_RATE, FFT_SIZE, 0.0, 1e6) == pytest.approx(1.0)


class TestEnvelopeBuffer:
    """测试 AudioEnvelopeBuffer"""

    def test_evicts_oldest(self):
        buf = AudioEnvelopeBuffer(max_entries=4)
        for i in range(6):
            buf.append(i * 200, i)
        assert len(buf) == 4
        values, times = buf.recent(10)
        assert values == [2, 3, 4, 5]
        assert times == [400, 600, 800, 1000]

    def test_recent_limit(self):
        buf = AudioEnvelopeBuffer()
        for i in range(10):
            buf.append(i, i)
        values, _ = buf.recent(3)
        assert values == [7, 8, 9]


class TestAudioAnalyzer:
    """测试 AudioAnalyzer.process()"""

    def test_throttled(self):
        analyzer = AudioAnalyzer()
        assert isinstance(analyzer.process(_frame(_sine()), 0), AudioResult)
        assert analyzer.process(_frame(_sine()), 100) is None
        assert analyzer.process(_frame(_sine()), 200) is not None
        assert len(analyzer.envelope) == 2

    def test_volume(self):
        result = AudioAnalyzer().process(_frame(_sine()), 0)
        expected = (20 * math.log10(1 / math.sqrt(2)) + 120.0) / 120.0
        assert result.volume == pytest.approx(expected, abs=1e-3)

    def test_silence_debounced(self):
        analyzer = AudioAnalyzer()
        first = analyzer.process(_silent_frame(), 0)
        assert first.currently_silent
        assert not first.is_silent
        assert not analyzer.process(_silent_frame(), 4800).is_silent
        assert analyzer.process(_silent_frame(), 5000).is_silent

    def test_sound_clears_silence(self):
        analyzer = AudioAnalyzer()
        analyzer.process(_silent_frame(), 0)
        analyzer.process(_silent_frame(), 5000)
        result = analyzer.process(_frame(_sine()), 5200)
        assert not result.currently_silent
        assert not result.is_silent
        # 静音计时重新开始
        analyzer.process(_silent_frame(), 5400)
        assert not analyzer.process(_silent_frame(), 10000).is_silent

    def test_publish_epsilon(self):
        analyzer = AudioAnalyzer()
        analyzer.process(_frame(_sine(amplitude=1.0)), 0)
        published = analyzer.volume
        # 幅值变化 1% 约为 0.09 dB，低于发布阈值
        result = analyzer.process(_frame(_sine(amplitude=0.99)), 200)
        assert result.volume == published

    def test_envelope_percent(self):
        analyzer = AudioAnalyzer()
        db = np.full(FFT_SIZE // 2, -np.inf)
        db[5] = 0.0
        frame = AudioFrame(time_domain=_sine(), frequency_db=db, sample_rate=SAMPLE_RATE, fft_size=FFT_SIZE)
        result = analyzer.process(frame, 0)
        assert result.band_energy_low == pytest.approx(1.0)
        values, times = analyzer.envelope.recent()
        assert values == [100]
        assert times == [0]

    def test_reset(self):
        analyzer = AudioAnalyzer()
        analyzer.process(_frame(_sine()), 0)
        analyzer.reset()
        assert analyzer.volume == 0.0
        assert len(analyzer.envelope) == 0
        assert analyzer.process(_frame(_sine()), 50) is not None
