"""End-to-end transcription tests on a tiny random checkpoint."""

from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from qwen3_asr import features
from qwen3_asr import model as model_module
from qwen3_asr.config import EOS_TOKEN_IDS
from qwen3_asr.errors import InputError
from qwen3_asr.model import STOP_EOS, STOP_MAX_TOKENS, Qwen3ASRModel
from qwen3_asr.sampling import TemperatureSampler


def _noise(seconds: float, seed: int = 0, sample_rate: int = 24000) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return (0.1 * rng.standard_normal(int(seconds * sample_rate))).astype(np.float32)


@pytest.fixture(params=["dense", "quantized"])
def asr(request, model, quantized_model) -> Qwen3ASRModel:
    return model if request.param == "dense" else quantized_model


def test_silent_audio(asr: Qwen3ASRModel) -> None:
    result = asr.transcribe_detailed(np.zeros(24000, dtype=np.float32), 24000)
    assert result.stop_reason in (STOP_EOS, STOP_MAX_TOKENS)
    assert len(result.tokens) <= asr.max_new_tokens
    assert result.num_audio_tokens == 13
    assert result.prompt_length == 13 + 15
    assert isinstance(result.text, str)
    assert not set(result.tokens) & set(EOS_TOKEN_IDS)


def test_deterministic(asr: Qwen3ASRModel) -> None:
    audio = _noise(1.5)
    first = asr.transcribe_detailed(audio, 24000)
    second = asr.transcribe_detailed(audio, 24000)
    assert first.tokens == second.tokens
    assert first.text == second.text


def test_stops_at_max_tokens(model: Qwen3ASRModel) -> None:
    emitted = []
    result = model.transcribe_detailed(
        _noise(1.0), 24000, max_new_tokens=5, sampler=lambda logits: ord("a"), on_token=emitted.append
    )
    assert result.stop_reason == STOP_MAX_TOKENS
    assert result.tokens == [ord("a")] * 5
    assert emitted == result.tokens
    assert result.text == "aaaaa"


def test_stops_at_eos(model: Qwen3ASRModel) -> None:
    emitted = []
    result = model.transcribe_detailed(
        _noise(1.0), 24000, sampler=lambda logits: EOS_TOKEN_IDS[0], on_token=emitted.append
    )
    assert result.stop_reason == STOP_EOS
    assert result.tokens == []
    assert emitted == []
    assert result.text == ""


def test_eos_after_text(model: Qwen3ASRModel) -> None:
    script = iter([ord("h"), ord("i"), EOS_TOKEN_IDS[1], ord("x")])
    result = model.transcribe_detailed(_noise(1.0), 24000, sampler=lambda logits: next(script))
    assert result.tokens == [ord("h"), ord("i")]
    assert result.text == "hi"
    assert result.stop_reason == STOP_EOS


def test_zero_max_tokens(model: Qwen3ASRModel) -> None:
    result = model.transcribe_detailed(_noise(0.5), 24000, max_new_tokens=0)
    assert result.tokens == []
    assert result.stop_reason == STOP_MAX_TOKENS
    with pytest.raises(ValueError):
        model.transcribe(_noise(0.5), 24000, max_new_tokens=-1)


def test_seeded_sampler_is_reproducible(model: Qwen3ASRModel) -> None:
    audio = _noise(1.0, seed=3)
    first = model.transcribe_detailed(audio, 24000, sampler=TemperatureSampler(temperature=1.0, seed=7))
    second = model.transcribe_detailed(audio, 24000, sampler=TemperatureSampler(temperature=1.0, seed=7))
    assert first.tokens == second.tokens


def test_transcribe_returns_text(model: Qwen3ASRModel) -> None:
    audio = _noise(1.0)
    assert model.transcribe(audio, 24000) == model.transcribe_detailed(audio, 24000).text


def test_other_sample_rates(model: Qwen3ASRModel) -> None:
    # 2 s of 16 kHz audio -> 200 frames -> two full chunks
    result = model.transcribe_detailed(_noise(2.0, sample_rate=16000), 16000)
    assert result.num_audio_tokens == 26


def test_empty_waveform(model: Qwen3ASRModel) -> None:
    result = model.transcribe_detailed(np.zeros(0, dtype=np.float32), 24000)
    assert result.num_audio_tokens == 0
    assert result.prompt_length == 15
    assert result.stop_reason in (STOP_EOS, STOP_MAX_TOKENS)


def test_invalid_input_rejected_before_compute(model: Qwen3ASRModel, monkeypatch: pytest.MonkeyPatch) -> None:
    def fail(*args, **kwargs):
        raise AssertionError("feature extraction should not run")

    monkeypatch.setattr(model.feature_extractor, "features", fail)
    with pytest.raises(InputError):
        model.transcribe(np.zeros((2, 24000), dtype=np.float32), 24000)
    with pytest.raises(InputError):
        model.transcribe(np.full(24000, np.inf, dtype=np.float32), 24000)
    with pytest.raises(InputError):
        model.transcribe(np.zeros(24000, dtype=np.float32), -1)


def test_concurrent_transcriptions(model: Qwen3ASRModel) -> None:
    inputs = [_noise(1.0 + 0.25 * i, seed=i) for i in range(4)]
    sequential = [model.transcribe_detailed(audio, 24000).tokens for audio in inputs]
    with ThreadPoolExecutor(max_workers=4) as pool:
        concurrent = list(pool.map(lambda audio: model.transcribe_detailed(audio, 24000).tokens, inputs))
    assert concurrent == sequential


def test_waveform_validated_once(model: Qwen3ASRModel, monkeypatch: pytest.MonkeyPatch) -> None:
    calls = []
    validate = features.validate_waveform

    def counting(waveform, sample_rate):
        calls.append(sample_rate)
        return validate(waveform, sample_rate)

    monkeypatch.setattr(model_module, "validate_waveform", counting)
    monkeypatch.setattr(features, "validate_waveform", counting)
    model.transcribe(_noise(0.5).tolist(), 24000, max_new_tokens=1)
    assert calls == [24000]
