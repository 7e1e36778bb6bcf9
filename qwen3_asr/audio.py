"""Audio file loading for the command line (the pipeline itself takes arrays)."""

import logging

import soundfile as sf

from .config import INPUT_SAMPLE_RATE
from .features import resample

logger = logging.getLogger(__name__)


def load_audio(path, target_sample_rate=INPUT_SAMPLE_RATE):
    """Read ``path`` as mono float32 at ``target_sample_rate``. Returns (samples, sample_rate)."""
    audio, sr = sf.read(path, dtype="float32")
    if audio.ndim > 1:
        audio = audio.mean(axis=1)
    if sr != target_sample_rate:
        audio = resample(audio, sr, target_sample_rate)
    logger.info("Loaded %d samples (%.2fs)", len(audio), len(audio) / target_sample_rate)
    return audio, target_sample_rate
