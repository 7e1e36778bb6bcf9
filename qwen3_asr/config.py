"""Model configuration and fixed pipeline constants."""

import json
import os
from dataclasses import dataclass, field, fields
from typing import Optional

# ============================================================================
# Audio preprocessing constants
# ============================================================================

SAMPLE_RATE = 16000
INPUT_SAMPLE_RATE = 24000
NUM_MEL_BINS = 128
HOP_LENGTH = 160
WINDOW_SIZE = 400
N_FFT = 512

# ============================================================================
# Special token ids (from tokenizer_config.json)
# ============================================================================

TOKEN_IM_START = 151644
TOKEN_IM_END = 151645
TOKEN_AUDIO_START = 151669
TOKEN_AUDIO_END = 151670
TOKEN_AUDIO_PAD = 151676
TOKEN_ENDOFTEXT = 151643
TOKEN_ASR_TEXT = 151704

# From generation_config.json
EOS_TOKEN_IDS = (TOKEN_ENDOFTEXT, TOKEN_IM_END)

# "system", "user", "assistant", "\n" in the Qwen2 vocabulary
_TOKEN_SYSTEM = 8948
_TOKEN_USER = 872
_TOKEN_ASSISTANT = 77091
_TOKEN_NEWLINE = 198


def _from_known_keys(cls, params):
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in params.items() if k in names})


@dataclass(frozen=True)
class AudioEncoderConfig:
    d_model: int = 896
    encoder_layers: int = 18
    encoder_attention_heads: int = 14
    encoder_ffn_dim: int = 3584
    output_dim: int = 1024
    downsample_hidden_size: int = 480
    num_mel_bins: int = NUM_MEL_BINS
    max_source_positions: int = 1500
    n_window: int = 50
    n_window_infer: int = 800
    conv_chunksize: int = 500

    @property
    def head_dim(self):
        return self.d_model // self.encoder_attention_heads

    @property
    def chunk_size(self):
        """Mel frames fed through the conv stem at once."""
        return self.n_window * 2

    @property
    def freq_after_conv(self):
        return (((self.num_mel_bins + 1) // 2 + 1) // 2 + 1) // 2

    @classmethod
    def from_dict(cls, params):
        return _from_known_keys(cls, params)


@dataclass(frozen=True)
class TextDecoderConfig:
    hidden_size: int = 1024
    num_hidden_layers: int = 28
    num_attention_heads: int = 16
    num_key_value_heads: int = 8
    head_dim: int = 128
    intermediate_size: int = 3072
    rms_norm_eps: float = 1e-6
    rope_theta: float = 1000000.0
    vocab_size: int = 151936
    tie_word_embeddings: bool = True

    @property
    def gqa_ratio(self):
        return self.num_attention_heads // self.num_key_value_heads

    @classmethod
    def from_dict(cls, params):
        return _from_known_keys(cls, params)


@dataclass(frozen=True)
class QuantizationConfig:
    group_size: int = 64
    bits: int = 4

    @classmethod
    def from_dict(cls, params):
        return _from_known_keys(cls, params)


@dataclass(frozen=True)
class ModelConfig:
    audio_config: AudioEncoderConfig = field(default_factory=AudioEncoderConfig)
    text_config: TextDecoderConfig = field(default_factory=TextDecoderConfig)
    quantization: Optional[QuantizationConfig] = None
    audio_start_token_id: int = TOKEN_AUDIO_START
    audio_end_token_id: int = TOKEN_AUDIO_END
    audio_token_id: int = TOKEN_AUDIO_PAD
    eos_token_ids: tuple = EOS_TOKEN_IDS

    def __post_init__(self):
        text = self.text_config
        if text.num_attention_heads % text.num_key_value_heads != 0:
            raise ValueError(
                f"num_attention_heads ({text.num_attention_heads}) must be a multiple of "
                f"num_key_value_heads ({text.num_key_value_heads})"
            )
        audio = self.audio_config
        if audio.d_model % audio.encoder_attention_heads != 0:
            raise ValueError(
                f"d_model ({audio.d_model}) must be divisible by "
                f"encoder_attention_heads ({audio.encoder_attention_heads})"
            )
        if audio.n_window_infer % audio.chunk_size != 0:
            raise ValueError(
                f"n_window_infer ({audio.n_window_infer}) must be a multiple of "
                f"2 * n_window ({audio.chunk_size})"
            )

    @classmethod
    def from_dict(cls, cfg):
        """Accepts both the HF layout (``thinker_config``) and the flattened MLX one."""
        tc = cfg.get("thinker_config", cfg)
        quant = cfg.get("quantization") or cfg.get("quantization_config")
        return cls(
            audio_config=AudioEncoderConfig.from_dict(tc.get("audio_config", {})),
            text_config=TextDecoderConfig.from_dict(tc.get("text_config", {})),
            quantization=QuantizationConfig.from_dict(quant) if quant else None,
            audio_start_token_id=tc.get("audio_start_token_id", TOKEN_AUDIO_START),
            audio_end_token_id=tc.get("audio_end_token_id", TOKEN_AUDIO_END),
            audio_token_id=tc.get("audio_token_id", TOKEN_AUDIO_PAD),
        )

    @classmethod
    def from_model_dir(cls, model_dir):
        path = os.path.join(model_dir, "config.json")
        if not os.path.exists(path):
            raise FileNotFoundError(f"No config.json in {model_dir}")
        with open(path) as f:
            return cls.from_dict(json.load(f))

    def prompt_prefix(self):
        """<|im_start|>system\\n<|im_end|>\\n<|im_start|>user\\n<|audio_start|>"""
        return [TOKEN_IM_START, _TOKEN_SYSTEM, _TOKEN_NEWLINE, TOKEN_IM_END, _TOKEN_NEWLINE,
                TOKEN_IM_START, _TOKEN_USER, _TOKEN_NEWLINE, self.audio_start_token_id]

    def prompt_suffix(self):
        """<|audio_end|><|im_end|>\\n<|im_start|>assistant\\n"""
        return [self.audio_end_token_id, TOKEN_IM_END, _TOKEN_NEWLINE,
                TOKEN_IM_START, _TOKEN_ASSISTANT, _TOKEN_NEWLINE]

    def build_prompt(self, n_audio):
        return self.prompt_prefix() + [self.audio_token_id] * n_audio + self.prompt_suffix()
