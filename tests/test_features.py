"""Tests for log-mel feature extraction."""

import numpy as np
import pytest
import torch

from qwen3_asr.errors import InputError
from qwen3_asr.features import FeatureExtractor, compute_mel_filters, fft_bin_frequencies, hertz_to_mel, mel_to_hertz


@pytest.fixture(scope="module")
def extractor():
    return FeatureExtractor()


@pytest.mark.parametrize("n_samples", [1, 159, 160, 161, 400, 16000, 16037, 48000])
def test_frame_count(extractor: FeatureExtractor, n_samples: int) -> None:
    audio = np.random.default_rng(n_samples).standard_normal(n_samples).astype(np.float32) * 0.1
    mel = extractor.extract(audio, 16000)
    assert mel.shape == (128, n_samples // 160)
    assert extractor.num_frames(n_samples) == n_samples // 160


def test_resampled_frame_count(extractor: FeatureExtractor) -> None:
    # 1 s at 24 kHz -> 16000 samples -> 100 frames
    mel = extractor.extract(np.zeros(24000, dtype=np.float32), 24000)
    assert mel.shape == (128, 100)


def test_reproducible(extractor: FeatureExtractor) -> None:
    audio = np.random.default_rng(0).standard_normal(24000).astype(np.float32)
    first = extractor.extract(audio, 24000)
    second = extractor.extract(audio, 24000)
    assert torch.equal(first, second)
    assert torch.isfinite(first).all()


def test_silent_and_empty_are_valid(extractor: FeatureExtractor) -> None:
    silent = extractor.extract(np.zeros(24000, dtype=np.float32), 24000)
    assert torch.isfinite(silent).all()
    # log10(1e-10) = -10 everywhere, then (x + 4) / 4
    assert torch.allclose(silent, torch.full_like(silent, -1.5))

    empty = extractor.extract(np.zeros(0, dtype=np.float32), 24000)
    assert empty.shape == (128, 0)


def test_padded_bin_frequencies() -> None:
    freqs = fft_bin_frequencies(n_fft=512, sample_rate=16000)
    assert len(freqs) == 257
    for k in (1, 10, 100, 256):
        assert freqs[k] == pytest.approx(k * 16000 / 512)
        assert freqs[k] != pytest.approx(k * 16000 / 400)


def test_filterbank_uses_padded_size() -> None:
    fb = compute_mel_filters(n_mels=128, n_fft=512, sample_rate=16000)
    assert fb.shape == (257, 128)

    # Every filter peaks at the padded-size bin closest to its centre frequency
    centers = mel_to_hertz(np.linspace(hertz_to_mel(0.0), hertz_to_mel(8000.0), 130))[1:-1]
    bin_hz = 16000 / 512
    peak_hz = np.argmax(fb, axis=0) * bin_hz
    assert np.all(np.abs(peak_hz - centers) <= bin_hz)

    # Reading the same matrix with window-size bin spacing puts peaks in the wrong place
    wrong_hz = np.argmax(fb, axis=0) * (16000 / 400)
    assert np.any(np.abs(wrong_hz - centers) > 16000 / 400)


def test_hann_window_precomputed(extractor: FeatureExtractor) -> None:
    assert extractor.window.shape == (400,)
    assert torch.allclose(extractor.window, torch.hann_window(400))
    assert extractor.mel_filters.shape == (257, 128)


def test_input_errors(extractor: FeatureExtractor) -> None:
    with pytest.raises(InputError):
        extractor.extract(np.zeros((2, 1000), dtype=np.float32), 16000)
    with pytest.raises(InputError):
        extractor.extract(np.array([0.0, np.nan, 0.0], dtype=np.float32), 16000)
    with pytest.raises(InputError):
        extractor.extract(np.zeros(1000, dtype=np.float32), 0)
    with pytest.raises(InputError):
        extractor.extract([[0.0, 0.1], [0.2]], 16000)
    with pytest.raises(InputError):
        extractor.extract(["a", "b"], 16000)
    with pytest.raises(InputError):
        extractor.extract(np.zeros(16000, dtype=np.complex64) + 1j, 16000)
    with pytest.raises(InputError):
        extractor.extract(torch.zeros(16000, dtype=torch.complex64), 16000)


def test_half_precision_tensor_input(extractor: FeatureExtractor) -> None:
    audio = torch.randn(16000, generator=torch.Generator().manual_seed(0)) * 0.1
    for dtype in (torch.bfloat16, torch.float16):
        mel = extractor.extract(audio.to(dtype), 16000)
        expected = extractor.extract(audio.to(dtype).float().numpy(), 16000)
        assert mel.shape == (128, 100)
        assert torch.equal(mel, expected)
