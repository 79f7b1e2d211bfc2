from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional, Union

import numpy as np

from cuecard.models import AudioFormat

logger = logging.getLogger(__name__)

SubmitFn = Callable[[np.ndarray, str, AudioFormat, float], Any]


def list_audio_devices() -> Dict[str, Any]:
    """
    Returns available INPUT audio devices for device selection.
    """
    devices = []
    try:
        import sounddevice as sd

        for idx, d in enumerate(sd.query_devices()):
            if int(d.get("max_input_channels", 0)) <= 0:
                continue

            devices.append(
                {
                    "index": idx,
                    "name": d.get("name", f"Device {idx}"),
                    "max_input_channels": int(d.get("max_input_channels", 0)),
                    "default_samplerate": int(d.get("default_samplerate", 0) or 0),
                }
            )
    except Exception as e:
        logger.warning("[Capture] Device query failed: %r", e)
        return {
            "ok": False,
            "error": repr(e),
            "devices": [],
        }

    return {
        "ok": True,
        "devices": devices,
    }


def _sounddevice_stream(**kwargs):
    import sounddevice as sd
    return sd.InputStream(**kwargs)


class DeviceCapture:
    """
    Opens a PortAudio input stream for one source and hands every block to
    the session on its event loop. The PortAudio callback thread never
    touches session state directly.
    """

    def __init__(
        self,
        source: str,
        device: Optional[Union[int, str]],
        submit: SubmitFn,
        loop: asyncio.AbstractEventLoop,
        sample_rate: int = 48000,
        channels: int = 2,
        blocksize: int = 960,  # ~20ms @ 48k
        stream_factory: Optional[Callable[..., Any]] = None,
    ):
        self.source = source
        self.device = device
        self.submit = submit
        self.loop = loop
        self.format = AudioFormat(sample_rate=int(sample_rate), channels=max(1, min(2, int(channels))), encoding="float32")
        self.blocksize = int(blocksize)
        self._stream_factory = stream_factory or _sounddevice_stream
        self._stream = None
        self.blocks = 0

    @property
    def running(self) -> bool:
        return self._stream is not None

    def _callback(self, indata, frames, time_info, status):
        if status:
            logger.debug("[Capture] %s device status: %s", self.source, status)
        # Interleaved copy; PortAudio reuses its buffer
        samples = np.array(indata, dtype=np.float32, copy=True).reshape(-1)
        self.blocks += 1
        try:
            self.loop.call_soon_threadsafe(self.submit, samples, self.source, self.format, time.time())
        except RuntimeError:
            # Loop already closed during shutdown
            pass

    def start(self) -> None:
        if self._stream is not None:
            return
        self._stream = self._stream_factory(
            device=self.device,
            samplerate=self.format.sample_rate,
            channels=self.format.channels,
            dtype="float32",
            blocksize=self.blocksize,
            callback=self._callback,
        )
        self._stream.start()
        logger.info(
            "[Capture] %s device %r open (sr=%d ch=%d bs=%d)",
            self.source, self.device, self.format.sample_rate, self.format.channels, self.blocksize,
        )

    def stop(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as e:
            logger.warning("[Capture] Error closing %s device: %r", self.source, e)
        logger.info("[Capture] %s device closed after %d blocks", self.source, self.blocks)
