"""Log-mel feature extraction (Whisper-compatible, 25 ms / 10 ms framing)."""

import logging

import numpy as np
import soxr
import torch
import torch.nn.functional as F

from .config import HOP_LENGTH, N_FFT, NUM_MEL_BINS, SAMPLE_RATE, WINDOW_SIZE
from .errors import InputError

logger = logging.getLogger(__name__)

# ============================================================================
# Mel filter bank (Slaney-style, matching WhisperFeatureExtractor)
# ============================================================================

def hertz_to_mel(freq):
    min_log_hertz = 1000.0
    min_log_mel = 15.0
    logstep = 27.0 / np.log(6.4)
    mels = 3.0 * freq / 200.0
    if isinstance(freq, np.ndarray):
        log_region = freq >= min_log_hertz
        mels[log_region] = min_log_mel + np.log(freq[log_region] / min_log_hertz) * logstep
    elif freq >= min_log_hertz:
        mels = min_log_mel + np.log(freq / min_log_hertz) * logstep
    return mels


def mel_to_hertz(mels):
    min_log_hertz = 1000.0
    min_log_mel = 15.0
    logstep = np.log(6.4) / 27.0
    freq = 200.0 * mels / 3.0
    log_region = mels >= min_log_mel
    freq[log_region] = min_log_hertz * np.exp(logstep * (mels[log_region] - min_log_mel))
    return freq


def fft_bin_frequencies(n_fft=N_FFT, sample_rate=SAMPLE_RATE):
    """Centre frequency of each real-FFT bin for a transform of size ``n_fft``.

    ``n_fft`` is the zero-padded transform size, not the analysis window.
    """
    return np.arange(n_fft // 2 + 1, dtype=np.float64) * sample_rate / n_fft


def compute_mel_filters(n_mels=NUM_MEL_BINS, n_fft=N_FFT, sample_rate=SAMPLE_RATE):
    """Returns a [n_fft // 2 + 1, n_mels] Slaney-normalized triangular filterbank."""
    fft_freqs = fft_bin_frequencies(n_fft, sample_rate)
    mel_min = hertz_to_mel(0.0)
    mel_max = hertz_to_mel(sample_rate / 2.0)
    mel_freqs = np.linspace(mel_min, mel_max, n_mels + 2)
    filter_freqs = mel_to_hertz(mel_freqs)
    filter_diff = np.diff(filter_freqs)
    slopes = np.expand_dims(filter_freqs, 0) - np.expand_dims(fft_freqs, 1)
    down_slopes = -slopes[:, :-2] / filter_diff[:-1]
    up_slopes = slopes[:, 2:] / filter_diff[1:]
    fb = np.maximum(np.zeros(1), np.minimum(down_slopes, up_slopes))
    enorm = 2.0 / (filter_freqs[2:n_mels + 2] - filter_freqs[:n_mels])
    fb *= np.expand_dims(enorm, 0)
    return fb

# ============================================================================
# Input validation / resampling
# ============================================================================

def validate_waveform(waveform, sample_rate):
    """Return ``waveform`` as a 1-D float32 numpy array or raise InputError."""
    if sample_rate is None or sample_rate <= 0:
        raise InputError(f"Sample rate must be positive, got {sample_rate}")
    if isinstance(waveform, torch.Tensor):
        if waveform.is_complex():
            raise InputError(f"Expected a real-valued waveform, got {waveform.dtype}")
        # numpy has no bfloat16
        waveform = waveform.detach().cpu().float().numpy()
    try:
        audio = np.asarray(waveform)
    except (TypeError, ValueError) as e:
        raise InputError(f"Waveform is not a numeric sample sequence: {e}") from e
    if np.iscomplexobj(audio):
        raise InputError("Expected a real-valued waveform, got complex samples")
    try:
        audio = audio.astype(np.float32, copy=False)
    except (TypeError, ValueError) as e:
        raise InputError(f"Waveform is not a numeric sample sequence: {e}") from e
    if audio.ndim != 1:
        raise InputError(
            f"Expected a mono waveform with shape [samples], got shape {tuple(audio.shape)}"
        )
    if not np.all(np.isfinite(audio)):
        raise InputError("Waveform contains NaN or infinite samples")
    return audio


def resample(audio, orig_sr, target_sr=SAMPLE_RATE):
    if orig_sr == target_sr or audio.size == 0:
        return audio
    return soxr.resample(audio, orig_sr, target_sr, quality="HQ").astype(np.float32)

# ============================================================================
# Feature extractor
# ============================================================================

class FeatureExtractor:
    """Turns a mono waveform into a [n_mels, T] log-mel spectrogram.

    Each frame is ``window_size`` samples of Hann-windowed audio, zero-padded
    to ``n_fft`` before the real FFT. The window and the filterbank are
    computed once per extractor; per-call scratch (frame matrix, FFT input,
    filter output) is allocated once and shared by every frame.
    """

    def __init__(self, n_mels=NUM_MEL_BINS, sample_rate=SAMPLE_RATE,
                 window_size=WINDOW_SIZE, hop_length=HOP_LENGTH, n_fft=N_FFT):
        if n_fft < window_size:
            raise ValueError(f"n_fft ({n_fft}) must be >= window_size ({window_size})")
        self.n_mels = n_mels
        self.sample_rate = sample_rate
        self.window_size = window_size
        self.hop_length = hop_length
        self.n_fft = n_fft
        self.window = torch.hann_window(window_size)
        self.mel_filters = torch.tensor(
            compute_mel_filters(n_mels, n_fft, sample_rate), dtype=torch.float32
        )  # [n_fft // 2 + 1, n_mels]

    def num_frames(self, n_samples):
        """Frame count for ``n_samples`` samples already at ``self.sample_rate``."""
        return n_samples // self.hop_length

    def extract(self, waveform, sample_rate):
        return self.features(validate_waveform(waveform, sample_rate), sample_rate)

    __call__ = extract

    def features(self, audio, sample_rate):
        """Like ``extract`` for a waveform that already went through ``validate_waveform``."""
        if sample_rate != self.sample_rate:
            logger.debug("Resampling %d samples from %d Hz to %d Hz", audio.size, sample_rate, self.sample_rate)
            audio = resample(audio, sample_rate, self.sample_rate)
        return self.log_mel(torch.from_numpy(np.ascontiguousarray(audio)))

    def log_mel(self, audio):
        """audio: 1-D float tensor at ``self.sample_rate``. Returns [n_mels, T]."""
        n_frames = self.num_frames(audio.shape[0])
        if n_frames == 0:
            return torch.zeros(self.n_mels, 0)

        # Centered framing; too-short inputs can't be reflected
        pad = self.window_size // 2
        mode = "reflect" if audio.shape[0] > pad else "constant"
        padded = F.pad(audio.view(1, 1, -1), (pad, pad), mode=mode).view(-1)
        frames = padded.unfold(0, self.window_size, self.hop_length)[:n_frames]

        fft_in = torch.zeros(n_frames, self.n_fft)
        fft_in[:, :self.window_size].copy_(frames).mul_(self.window)
        spectrum = torch.fft.rfft(fft_in, n=self.n_fft)
        power = spectrum.abs().pow_(2)

        mel_spec = torch.empty(n_frames, self.n_mels)
        torch.matmul(power, self.mel_filters, out=mel_spec)

        log_spec = mel_spec.clamp_(min=1e-10).log10_()
        log_spec = torch.maximum(log_spec, log_spec.max() - 8.0)
        log_spec = (log_spec + 4.0) / 4.0
        return log_spec.T.contiguous()  # [n_mels, frames]
