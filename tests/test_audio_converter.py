import math

import numpy as np
import pytest

from cuecard import audio_converter as ac
from cuecard.models import AudioFormat


def test_resample_is_identity_at_matching_rate():
    x = np.linspace(-1, 1, 480, dtype=np.float32)
    assert ac.resample(x, 16000, 16000) is x


@pytest.mark.parametrize("n,src,dst", [(4800, 48000, 16000), (100, 48000, 16000), (441, 44100, 16000), (7, 8000, 16000)])
def test_resample_length_is_floor_of_len_over_ratio(n, src, dst):
    x = np.random.default_rng(0).uniform(-1, 1, n).astype(np.float32)
    out = ac.resample(x, src, dst)
    assert len(out) == math.floor(n / (src / dst))


def test_resample_interpolates_between_neighbours():
    x = np.array([0.0, 1.0, 0.0, -1.0], dtype=np.float32)
    # upsample by two: midpoints are averages of neighbours
    out = ac.resample(x, 8000, 16000)
    assert out[:4].tolist() == pytest.approx([0.0, 0.5, 1.0, 0.5])


def test_normalize_never_emits_non_finite_values():
    x = np.array([np.nan, np.inf, -np.inf, 0.25, 2.0, -3.0] * 100, dtype=np.float32)
    out = ac.normalize(x, AudioFormat(48000, 1, "float32"))
    assert out.dtype == np.int16
    assert len(out) == 200
    assert np.isfinite(out.astype(np.float64)).all()


def test_non_finite_samples_become_silence():
    f = ac.to_float(np.array([np.nan, np.inf, -np.inf, 0.25], dtype=np.float32), "float32")
    assert f.tolist() == [0.0, 0.0, 0.0, 0.25]
    out = ac.normalize(np.array([np.inf, -np.inf], dtype=np.float32), AudioFormat(16000, 1, "float32"))
    assert out.tolist() == [0, 0]


def test_quantize_scales_asymmetrically():
    out = ac.quantize(np.array([-1.0, 1.0, 0.0, -0.5, 1.5, -1.5], dtype=np.float32))
    assert out.tolist() == [-32768, 32767, 0, -16384, 32767, -32768]


def test_to_mono_averages_pairs_and_drops_dangling_sample():
    out = ac.to_mono(np.array([1.0, 3.0, -1.0, 1.0, 0.5], dtype=np.float32), 2)
    assert out.tolist() == [2.0, 0.0]


def test_int16_bytes_are_decoded_little_endian():
    raw = np.array([16384, -16384], dtype="<i2").tobytes() + b"\x01"
    f = ac.to_float(raw, "int16")
    assert f.tolist() == [0.5, -0.5]


def test_validate_format_reports_every_problem():
    problems = ac.validate_format(AudioFormat(0, 3, "mp3"))
    assert len(problems) == 3
    assert ac.validate_format(AudioFormat(44100, 2, "int16")) == []


def test_normalize_rejects_invalid_format():
    with pytest.raises(ValueError):
        ac.normalize(np.zeros(10, dtype=np.float32), AudioFormat(-1, 1, "float32"))


def test_rms_to_db_reference_points():
    assert ac.rms_to_db(0.0) == -60.0
    assert ac.rms_to_db(1.0) == 0.0
    assert ac.rms_to_db(0.1) == pytest.approx(-20.0)
    assert ac.rms_to_db(1e-9) == -60.0
    assert ac.rms_to_db(4.0) == 0.0


def test_measure_levels():
    reading = ac.measure_levels(np.array([0.5, -0.5, 0.5, -0.5], dtype=np.float32))
    assert reading.rms == pytest.approx(0.5)
    assert reading.peak == pytest.approx(0.5)
    assert reading.db == pytest.approx(20 * math.log10(0.5))

    silent = ac.measure_levels(np.zeros(0, dtype=np.float32))
    assert silent.rms == 0.0
    assert silent.db == -60.0


def test_to_bytes_is_pcm16_little_endian():
    assert ac.to_bytes(np.array([1, -2], dtype=np.int16)) == b"\x01\x00\xfe\xff"
