"""
Audio normalization: raw captured samples -> mono 16 kHz PCM16.

Resampling is plain linear interpolation between neighbouring source
samples, with no anti-alias filter.
"""
from __future__ import annotations

import math
from typing import List, Sequence, Union

import numpy as np

from cuecard.models import AudioFormat, LevelReading

TARGET_SAMPLE_RATE = 16000
ENCODINGS = ("float32", "int16")
MIN_DB = -60.0

SampleInput = Union[np.ndarray, Sequence[float], bytes, bytearray, memoryview]


def validate_format(fmt: AudioFormat) -> List[str]:
    """Return a list of problems with `fmt`; empty when the format is usable."""
    problems: List[str] = []
    rate = getattr(fmt, "sample_rate", None)
    if not isinstance(rate, (int, np.integer)) or isinstance(rate, bool) or rate <= 0:
        problems.append(f"sample_rate must be a positive integer, got {rate!r}")
    channels = getattr(fmt, "channels", None)
    if channels not in (1, 2):
        problems.append(f"channels must be 1 or 2, got {channels!r}")
    encoding = getattr(fmt, "encoding", None)
    if encoding not in ENCODINGS:
        problems.append(f"encoding must be one of {ENCODINGS}, got {encoding!r}")
    return problems


def to_float(samples: SampleInput, encoding: str) -> np.ndarray:
    """Convert samples of the given encoding to float32 in [-1, 1] scale."""
    if isinstance(samples, (bytes, bytearray, memoryview)):
        dtype = np.dtype("<i2" if encoding == "int16" else "<f4")
        raw = bytes(samples)
        # A trailing partial sample is dropped
        raw = raw[:len(raw) - len(raw) % dtype.itemsize]
        x = np.frombuffer(raw, dtype=dtype)
    else:
        x = np.asarray(samples)

    x = x.reshape(-1)
    if encoding == "int16":
        f = x.astype(np.float32) / 32768.0
    else:
        f = x.astype(np.float32)

    # NaN and Inf become silence
    return np.nan_to_num(f, nan=0.0, posinf=0.0, neginf=0.0)


def to_mono(x: np.ndarray, channels: int) -> np.ndarray:
    """Average interleaved channel pairs. A dangling odd sample is dropped."""
    if channels != 2:
        return x
    usable = len(x) - (len(x) % 2)
    if usable == 0:
        return np.zeros(0, dtype=np.float32)
    return x[:usable].reshape(-1, 2).mean(axis=1).astype(np.float32)


def resample(x: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """Linear-interpolation resample. Output length is floor(len / ratio)."""
    if source_rate == target_rate:
        return x
    if len(x) == 0:
        return x[:0]

    ratio = source_rate / target_rate
    target_len = int(math.floor(len(x) / ratio))
    if target_len <= 0:
        return x[:0]

    src = np.arange(target_len, dtype=np.float64) * ratio
    lo = np.floor(src).astype(np.int64)
    hi = np.minimum(lo + 1, len(x) - 1)
    frac = (src - lo).astype(np.float32)
    return (x[lo] * (1.0 - frac) + x[hi] * frac).astype(np.float32)


def quantize(x: np.ndarray) -> np.ndarray:
    """Clamp to [-1, 1] and scale to int16 (-1.0 -> -32768, 1.0 -> 32767)."""
    clamped = np.clip(x.astype(np.float32), -1.0, 1.0)
    scaled = np.where(clamped < 0, clamped * 32768.0, clamped * 32767.0)
    return np.rint(scaled).astype(np.int16)


def normalize(samples: SampleInput, fmt: AudioFormat, target_rate: int = TARGET_SAMPLE_RATE) -> np.ndarray:
    """Raw samples in `fmt` -> mono PCM16 at `target_rate`."""
    problems = validate_format(fmt)
    if problems:
        raise ValueError("; ".join(problems))
    mono = to_mono(to_float(samples, fmt.encoding), fmt.channels)
    return quantize(resample(mono, int(fmt.sample_rate), target_rate))


def to_bytes(pcm: np.ndarray) -> bytes:
    return pcm.astype("<i2").tobytes(order="C")


# -------------------- Level metrics --------------------

def compute_rms(x: np.ndarray) -> float:
    if len(x) == 0:
        return 0.0
    f = x.astype(np.float64)
    return float(np.sqrt(np.mean(f * f)))


def compute_peak(x: np.ndarray) -> float:
    if len(x) == 0:
        return 0.0
    return float(np.max(np.abs(x)))


def rms_to_db(rms: float) -> float:
    """20*log10(rms), clamped to [-60, 0]."""
    if rms is None or not (rms > 0):
        return MIN_DB
    db = 20.0 * math.log10(rms)
    return max(MIN_DB, min(0.0, db))


def measure_levels(x: np.ndarray) -> LevelReading:
    rms = compute_rms(x)
    peak = compute_peak(x)
    return LevelReading(rms=rms, peak=peak, db=rms_to_db(rms), peak_db=rms_to_db(peak))
