"""麦克风采集模块，基于 sounddevice 维护最近一个分析窗口的采样"""

import logging
import threading
from typing import Optional

import numpy as np

from detectors.audio_analyzer import magnitude_spectrum, magnitude_to_db
from models.data_models import AudioFrame

logger = logging.getLogger(__name__)


def _load_sounddevice():
    """延迟加载 sounddevice，处理导入错误（缺少 PortAudio 时会抛 OSError）"""
    try:
        import sounddevice as sd
        return sd
    except (ImportError, OSError) as e:
        raise ImportError(
            "sounddevice 不可用，请运行 pip install sounddevice 并安装 PortAudio"
        ) from e


class MicrophoneCapture:
    """从默认输入设备持续采集单声道音频，按需输出 AudioFrame"""

    def __init__(
        self,
        sample_rate: int = 48000,
        fft_size: int = 2048,
        blocksize: int = 1024,
        smoothing_time_constant: float = 0.3,
    ):
        if not 0.0 <= smoothing_time_constant < 1.0:
            raise ValueError(f"smoothing_time_constant 应在 [0, 1) 内: {smoothing_time_constant}")
        self.sample_rate = sample_rate
        self.fft_size = fft_size
        self.blocksize = blocksize
        # 相邻帧幅度谱的指数平滑系数，0 表示不平滑
        self.smoothing_time_constant = smoothing_time_constant
        self._smoothed: Optional[np.ndarray] = None
        # None 表示尚未尝试打开设备
        self.permission_granted: Optional[bool] = None
        self._buffer = np.zeros(fft_size, dtype=np.float32)
        self._lock = threading.Lock()
        self._stream = None

    @property
    def is_running(self) -> bool:
        return self._stream is not None

    def start(self) -> bool:
        """
        打开输入流。

        Returns:
            是否成功；设备或权限失败时不抛异常，只置 permission_granted=False
        """
        if self._stream is not None:
            return True

        try:
            sd = _load_sounddevice()
        except ImportError as e:
            logger.warning("无法启动麦克风: %s", e)
            self.permission_granted = False
            return False

        try:
            stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                blocksize=self.blocksize,
                callback=self._callback,
            )
            stream.start()
        except sd.PortAudioError as e:
            logger.warning("麦克风打开失败: %s", e)
            self.permission_granted = False
            return False

        with self._lock:
            self._buffer = np.zeros(self.fft_size, dtype=np.float32)
        self._smoothed = None
        self._stream = stream
        self.permission_granted = True
        logger.info("麦克风已启动 (%d Hz)", self.sample_rate)
        return True

    def _callback(self, indata, frames, time_info, status):
        if status:
            logger.debug("音频回调状态: %s", status)
        mono = np.mean(indata, axis=1) if indata.ndim > 1 else indata
        with self._lock:
            self._buffer = np.concatenate([self._buffer, mono.astype(np.float32)])[-self.fft_size:]

    def read_frame(self) -> Optional[AudioFrame]:
        """返回最近 fft_size 个采样组成的 AudioFrame；未运行时返回 None"""
        if self._stream is None:
            return None
        with self._lock:
            samples = self._buffer.copy()
        magnitude = magnitude_spectrum(samples, self.fft_size)
        if self._smoothed is not None:
            tau = self.smoothing_time_constant
            magnitude = tau * self._smoothed + (1.0 - tau) * magnitude
        self._smoothed = magnitude
        return AudioFrame(
            time_domain=samples,
            frequency_db=magnitude_to_db(magnitude),
            sample_rate=self.sample_rate,
            fft_size=self.fft_size,
        )

    def stop(self):
        """关闭输入流并清空缓冲"""
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()
            stream.close()
            logger.info("麦克风已停止")
        with self._lock:
            self._buffer = np.zeros(self.fft_size, dtype=np.float32)
        self._smoothed = None
