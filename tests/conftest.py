"""Shared fixtures: a tiny randomly initialized Qwen3-ASR checkpoint."""

import json
from dataclasses import asdict

import pytest
import torch
from safetensors.torch import save_file

from qwen3_asr.config import (
    EOS_TOKEN_IDS,
    TOKEN_ASR_TEXT,
    TOKEN_AUDIO_END,
    TOKEN_AUDIO_PAD,
    TOKEN_AUDIO_START,
    TOKEN_IM_START,
    AudioEncoderConfig,
    ModelConfig,
    QuantizationConfig,
    TextDecoderConfig,
)
from qwen3_asr.model import Qwen3ASRModel
from qwen3_asr.quant import QuantizedTensor
from qwen3_asr.tokenizer import Tokenizer, bytes_to_unicode
from qwen3_asr.weights import WeightStore

SPECIAL_TOKENS = {TOKEN_IM_START, TOKEN_AUDIO_START, TOKEN_AUDIO_END, TOKEN_AUDIO_PAD, TOKEN_ASR_TEXT, *EOS_TOKEN_IDS}


def tiny_config(quantization=None):
    return ModelConfig(
        audio_config=AudioEncoderConfig(
            d_model=16,
            encoder_layers=2,
            encoder_attention_heads=2,
            encoder_ffn_dim=32,
            output_dim=32,
            downsample_hidden_size=4,
            n_window=50,
            n_window_infer=200,
        ),
        text_config=TextDecoderConfig(
            hidden_size=32,
            num_hidden_layers=2,
            num_attention_heads=4,
            num_key_value_heads=2,
            head_dim=8,
            intermediate_size=64,
            rope_theta=10000.0,
            tie_word_embeddings=True,
        ),
        quantization=quantization,
    )


def make_state_dict(config, seed=0, prefix="thinker.", channels_last_conv=False, lm_head=False):
    """Random weights named like a real checkpoint; decoder linears are
    quantized when ``config.quantization`` is set."""
    g = torch.Generator().manual_seed(seed)
    quant = config.quantization
    sd = {}

    def randn(*shape, std=0.1):
        return torch.randn(*shape, generator=g) * std

    def dense(name, out_dim, in_dim, bias=True):
        sd[f"{name}.weight"] = randn(out_dim, in_dim)
        if bias:
            sd[f"{name}.bias"] = randn(out_dim, std=0.02)

    def quantized(name, out_dim, in_dim):
        w = randn(out_dim, in_dim)
        if quant is None:
            sd[f"{name}.weight"] = w
            return
        qt = QuantizedTensor.quantize(w, bits=quant.bits, group_size=quant.group_size)
        sd[f"{name}.weight"] = qt.packed
        sd[f"{name}.scales"] = qt.scales
        sd[f"{name}.biases"] = qt.biases

    def norm(name, dim, bias=True):
        sd[f"{name}.weight"] = torch.ones(dim) + randn(dim, std=0.02)
        if bias:
            sd[f"{name}.bias"] = randn(dim, std=0.02)

    a = config.audio_config
    p = f"{prefix}audio_tower"
    channels = a.downsample_hidden_size
    for i, in_ch in ((1, 1), (2, channels), (3, channels)):
        w = randn(channels, in_ch, 3, 3)
        sd[f"{p}.conv2d{i}.weight"] = w.permute(0, 2, 3, 1).contiguous() if channels_last_conv else w
        sd[f"{p}.conv2d{i}.bias"] = randn(channels, std=0.02)
    dense(f"{p}.conv_out", a.d_model, channels * a.freq_after_conv, bias=False)
    for i in range(a.encoder_layers):
        lp = f"{p}.layers.{i}"
        norm(f"{lp}.self_attn_layer_norm", a.d_model)
        for proj in ("q_proj", "k_proj", "v_proj", "out_proj"):
            dense(f"{lp}.self_attn.{proj}", a.d_model, a.d_model)
        norm(f"{lp}.final_layer_norm", a.d_model)
        dense(f"{lp}.fc1", a.encoder_ffn_dim, a.d_model)
        dense(f"{lp}.fc2", a.d_model, a.encoder_ffn_dim)
    norm(f"{p}.ln_post", a.d_model)
    dense(f"{p}.proj1", a.d_model, a.d_model)
    dense(f"{p}.proj2", a.output_dim, a.d_model)

    t = config.text_config
    p = f"{prefix}model"
    q_dim = t.num_attention_heads * t.head_dim
    kv_dim = t.num_key_value_heads * t.head_dim
    quantized(f"{p}.embed_tokens", t.vocab_size, t.hidden_size)
    norm(f"{p}.norm", t.hidden_size, bias=False)
    for i in range(t.num_hidden_layers):
        lp = f"{p}.layers.{i}"
        norm(f"{lp}.input_layernorm", t.hidden_size, bias=False)
        norm(f"{lp}.post_attention_layernorm", t.hidden_size, bias=False)
        quantized(f"{lp}.self_attn.q_proj", q_dim, t.hidden_size)
        quantized(f"{lp}.self_attn.k_proj", kv_dim, t.hidden_size)
        quantized(f"{lp}.self_attn.v_proj", kv_dim, t.hidden_size)
        quantized(f"{lp}.self_attn.o_proj", t.hidden_size, q_dim)
        norm(f"{lp}.self_attn.q_norm", t.head_dim, bias=False)
        norm(f"{lp}.self_attn.k_norm", t.head_dim, bias=False)
        quantized(f"{lp}.mlp.gate_proj", t.intermediate_size, t.hidden_size)
        quantized(f"{lp}.mlp.up_proj", t.intermediate_size, t.hidden_size)
        quantized(f"{lp}.mlp.down_proj", t.hidden_size, t.intermediate_size)
    if lm_head:
        quantized(f"{prefix}lm_head", t.vocab_size, t.hidden_size)
    return sd


def byte_vocab():
    """Token id b (0..255) decodes to byte b."""
    return {ch: b for b, ch in bytes_to_unicode().items()}


def hf_config_dict(config):
    return {
        "thinker_config": {
            "audio_config": asdict(config.audio_config),
            "text_config": asdict(config.text_config),
            "audio_start_token_id": config.audio_start_token_id,
            "audio_end_token_id": config.audio_end_token_id,
            "audio_token_id": config.audio_token_id,
        }
    }


def write_model_dir(path, config, state_dict, config_dict=None):
    path.mkdir(parents=True, exist_ok=True)
    save_file({k: v.contiguous() for k, v in state_dict.items()}, str(path / "model.safetensors"))
    with open(path / "config.json", "w") as f:
        json.dump(config_dict or hf_config_dict(config), f)
    with open(path / "vocab.json", "w", encoding="utf-8") as f:
        json.dump(byte_vocab(), f)
    with open(path / "tokenizer_config.json", "w") as f:
        json.dump({"added_tokens_decoder": {str(tid): {"special": True} for tid in SPECIAL_TOKENS}}, f)
    return path


@pytest.fixture(scope="session")
def config():
    return tiny_config()


@pytest.fixture(scope="session")
def quantized_config():
    return tiny_config(QuantizationConfig(group_size=32, bits=4))


@pytest.fixture(scope="session")
def tokenizer():
    return Tokenizer(byte_vocab(), SPECIAL_TOKENS)


@pytest.fixture(scope="session")
def model(config, tokenizer):
    return Qwen3ASRModel(config, WeightStore(make_state_dict(config)), tokenizer, max_new_tokens=8)


@pytest.fixture(scope="session")
def quantized_model(quantized_config, tokenizer):
    store = WeightStore(make_state_dict(quantized_config))
    return Qwen3ASRModel(quantized_config, store, tokenizer, max_new_tokens=8)
