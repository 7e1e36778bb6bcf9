"""End-to-end transcription: features -> encoder -> decoder loop -> text."""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import torch

from .config import ModelConfig
from .decoder import TextDecoder
from .encoder import BlockAttentionEncoder
from .errors import ConsistencyError
from .features import FeatureExtractor, validate_waveform
from .sampling import greedy
from .tokenizer import Tokenizer, parse_asr_output
from .weights import WeightStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_NEW_TOKENS = 1024

STOP_EOS = "eos"
STOP_MAX_TOKENS = "max_tokens"


@dataclass
class TranscriptionResult:
    text: str
    language: Optional[str]
    tokens: List[int] = field(default_factory=list)
    stop_reason: str = STOP_EOS
    num_audio_tokens: int = 0
    prompt_length: int = 0


class Qwen3ASRModel:
    """Owns the immutable weights and runs one transcription per call.

    Every call builds its own decoder session (and so its own KV cache) and
    its own feature scratch, so concurrent calls on one instance only share
    read-only state.
    """

    def __init__(self, config, store, tokenizer, max_new_tokens=DEFAULT_MAX_NEW_TOKENS):
        self.config = config
        self.tokenizer = tokenizer
        self.max_new_tokens = max_new_tokens
        self.feature_extractor = FeatureExtractor(n_mels=config.audio_config.num_mel_bins)
        self.encoder = BlockAttentionEncoder(store, config.audio_config, config.quantization)
        self.decoder = TextDecoder(store, config.text_config, config.quantization)
        if config.audio_config.output_dim != config.text_config.hidden_size:
            raise ValueError(
                f"Encoder output_dim ({config.audio_config.output_dim}) must equal decoder "
                f"hidden_size ({config.text_config.hidden_size})"
            )

    @classmethod
    def from_pretrained(cls, model_dir, max_new_tokens=DEFAULT_MAX_NEW_TOKENS):
        config = ModelConfig.from_model_dir(model_dir)
        logger.info(
            "Model: enc_d=%d, enc_layers=%d, dec_hidden=%d, dec_layers=%d%s",
            config.audio_config.d_model, config.audio_config.encoder_layers,
            config.text_config.hidden_size, config.text_config.num_hidden_layers,
            f", {config.quantization.bits}-bit" if config.quantization else "",
        )
        store = WeightStore.from_dir(model_dir)
        tokenizer = Tokenizer.from_pretrained(model_dir)
        return cls(config, store, tokenizer, max_new_tokens=max_new_tokens)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def encode(self, waveform, sample_rate):
        """Waveform -> audio embeddings [n_audio_tokens, hidden_size]."""
        return self._encode_validated(validate_waveform(waveform, sample_rate), sample_rate)

    def _encode_validated(self, audio, sample_rate):
        mel = self.feature_extractor.features(audio, sample_rate)
        logger.debug("Mel spectrogram: [%d, %d]", mel.shape[0], mel.shape[1])
        return self.encoder(mel)

    def build_inputs_embeds(self, audio_embeds):
        """Chat prompt with one <|audio_pad|> per audio embedding, pads replaced by the embeddings."""
        n_audio = audio_embeds.shape[0]
        input_ids = torch.tensor(self.config.build_prompt(n_audio), dtype=torch.long)
        input_embeds = self.decoder.embed(input_ids)

        audio_positions = (input_ids == self.config.audio_token_id).nonzero(as_tuple=True)[0]
        if len(audio_positions) != n_audio:
            raise ConsistencyError(f"Expected {n_audio} audio positions, got {len(audio_positions)}")
        input_embeds[audio_positions] = audio_embeds.to(input_embeds.dtype)
        return input_ids, input_embeds

    def generate(self, input_embeds, max_new_tokens=None, sampler=None, on_token=None):
        """One prefill, then decode steps until EOS or ``max_new_tokens``.

        Returns (tokens, stop_reason). EOS ids are not included in ``tokens``.
        """
        max_new_tokens = self.max_new_tokens if max_new_tokens is None else max_new_tokens
        if max_new_tokens < 0:
            raise ValueError(f"max_new_tokens must be >= 0, got {max_new_tokens}")
        sampler = sampler or greedy
        eos_ids = set(self.config.eos_token_ids)

        session = self.decoder.new_session()
        logger.debug("Running decoder prefill (%d tokens)", input_embeds.shape[0])
        logits = session.prefill(input_embeds)

        tokens = []
        stop_reason = STOP_MAX_TOKENS
        for step in range(max_new_tokens):
            token = sampler(logits)
            if token in eos_ids:
                stop_reason = STOP_EOS
                break
            tokens.append(token)
            if step < 5:
                logger.debug("Token %d: %d", step + 1, token)
            if on_token is not None:
                on_token(token)
            if step + 1 < max_new_tokens:
                logits = session.decode(token)

        logger.info("Generated %d tokens (%s)", len(tokens), stop_reason)
        return tokens, stop_reason

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def transcribe_detailed(self, waveform, sample_rate, *, max_new_tokens=None, sampler=None, on_token=None):
        # Reject bad input before any model computation
        audio = validate_waveform(waveform, sample_rate)
        with torch.no_grad():
            audio_embeds = self._encode_validated(audio, sample_rate)
            input_ids, input_embeds = self.build_inputs_embeds(audio_embeds)
            logger.debug("Prompt length: %d tokens (%d audio pads)", len(input_ids), audio_embeds.shape[0])
            tokens, stop_reason = self.generate(
                input_embeds, max_new_tokens=max_new_tokens, sampler=sampler, on_token=on_token
            )

        language, text = parse_asr_output(self.tokenizer.decode(tokens))
        return TranscriptionResult(
            text=text,
            language=language,
            tokens=tokens,
            stop_reason=stop_reason,
            num_audio_tokens=audio_embeds.shape[0],
            prompt_length=len(input_ids),
        )

    def transcribe(self, waveform, sample_rate, *, max_new_tokens=None, sampler=None, on_token=None):
        return self.transcribe_detailed(
            waveform, sample_rate, max_new_tokens=max_new_tokens, sampler=sampler, on_token=on_token
        ).text
