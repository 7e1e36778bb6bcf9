"""Qwen3 text decoder: GQA + Q/K norms + RoPE, with prefill/decode sessions."""

import enum
import logging

import torch
import torch.nn.functional as F

from .attention import causal_mask, repeat_kv, scaled_dot_product_attention
from .errors import ConsistencyError, WeightLoadError
from .kv_cache import KeyValueCache
from .positional import RotaryEmbedding
from .quant import linear, take_rows
from .weights import get_linear_weight, get_weight

logger = logging.getLogger(__name__)


def rms_norm(x, weight, eps=1e-6):
    variance = x.float().pow(2).mean(-1, keepdim=True)
    x = x.float() * torch.rsqrt(variance + eps)
    return weight * x


class DecodePhase(enum.Enum):
    PREFILL = "prefill"
    DECODE = "decode"


class TextDecoder:
    """Immutable decoder weights plus the stateless per-layer math.

    One instance is shared by every request; all mutable state lives in the
    AutoregressiveDecoder sessions created by ``new_session``.
    """

    def __init__(self, store, config, quantization=None, prefix="model"):
        self.config = config
        self.hidden_size = config.hidden_size
        self.n_layers = config.num_hidden_layers
        self.n_heads = config.num_attention_heads
        self.n_kv_heads = config.num_key_value_heads
        self.head_dim = config.head_dim
        self.eps = config.rms_norm_eps
        self.rope = RotaryEmbedding(self.head_dim, config.rope_theta)

        self.embed_tokens = get_linear_weight(store, f"{prefix}.embed_tokens", quantization)
        if "lm_head.weight" in store:
            self.lm_head = get_linear_weight(store, "lm_head", quantization)
        elif config.tie_word_embeddings:
            self.lm_head = self.embed_tokens
        else:
            raise WeightLoadError("Config has tie_word_embeddings=False but the checkpoint has no lm_head.weight")
        self.final_norm = get_weight(store, f"{prefix}.norm.weight")

        self.layers = []
        for i in range(self.n_layers):
            self.layers.append(self._load_layer(store, f"{prefix}.layers.{i}", quantization))
            if (i + 1) % 8 == 0:
                logger.debug("Decoder layer %d/%d loaded", i + 1, self.n_layers)

    @staticmethod
    def _load_layer(store, lp, quantization):
        return {
            "input_layernorm": get_weight(store, f"{lp}.input_layernorm.weight"),
            "post_attention_layernorm": get_weight(store, f"{lp}.post_attention_layernorm.weight"),
            "q_proj": get_linear_weight(store, f"{lp}.self_attn.q_proj", quantization),
            "k_proj": get_linear_weight(store, f"{lp}.self_attn.k_proj", quantization),
            "v_proj": get_linear_weight(store, f"{lp}.self_attn.v_proj", quantization),
            "o_proj": get_linear_weight(store, f"{lp}.self_attn.o_proj", quantization),
            "q_norm": get_weight(store, f"{lp}.self_attn.q_norm.weight"),
            "k_norm": get_weight(store, f"{lp}.self_attn.k_norm.weight"),
            "gate_proj": get_linear_weight(store, f"{lp}.mlp.gate_proj", quantization),
            "up_proj": get_linear_weight(store, f"{lp}.mlp.up_proj", quantization),
            "down_proj": get_linear_weight(store, f"{lp}.mlp.down_proj", quantization),
        }

    def new_session(self):
        return AutoregressiveDecoder(self)

    def embed(self, token_ids):
        """token_ids: [seq] -> [seq, hidden_size]"""
        return take_rows(self.embed_tokens, torch.as_tensor(token_ids, dtype=torch.long))

    def logits(self, h):
        """h: [..., hidden_size] -> logits [..., vocab]"""
        return linear(rms_norm(h, self.final_norm, self.eps), self.lm_head)

    def layer_forward(self, h, layer_idx, cache, start_pos, mask=None):
        """One decoder block over h [seq, hidden_size] starting at ``start_pos``.

        Appends this block's keys/values to ``cache`` and attends over
        everything cached for the layer.
        """
        L = self.layers[layer_idx]
        seq_len = h.shape[0]

        x = rms_norm(h, L["input_layernorm"], self.eps)
        q = linear(x, L["q_proj"]).view(seq_len, self.n_heads, self.head_dim)
        k = linear(x, L["k_proj"]).view(seq_len, self.n_kv_heads, self.head_dim)
        v = linear(x, L["v_proj"]).view(seq_len, self.n_kv_heads, self.head_dim)

        # Per-head RMSNorm on Q and K, before RoPE
        q = rms_norm(q, L["q_norm"], self.eps)
        k = rms_norm(k, L["k_norm"], self.eps)

        cos, sin = self.rope.cos_sin(start_pos, seq_len)
        q = RotaryEmbedding.apply(q, cos, sin)
        k = RotaryEmbedding.apply(k, cos, sin)

        k_all, v_all = cache.append(layer_idx, k.transpose(0, 1), v.transpose(0, 1))
        n_rep = self.n_heads // self.n_kv_heads
        attn = scaled_dot_product_attention(
            q.transpose(0, 1), repeat_kv(k_all, n_rep), repeat_kv(v_all, n_rep), mask=mask
        )
        attn = attn.transpose(0, 1).reshape(seq_len, self.n_heads * self.head_dim)
        h = h + linear(attn, L["o_proj"])

        # SwiGLU MLP
        x = rms_norm(h, L["post_attention_layernorm"], self.eps)
        gate = F.silu(linear(x, L["gate_proj"]))
        up = linear(x, L["up_proj"])
        return h + linear(gate * up, L["down_proj"])


class AutoregressiveDecoder:
    """One utterance worth of decoder state: a KV cache and a phase.

    PREFILL runs exactly once over the whole prompt, then the session is in
    DECODE for good, consuming one token per step. ``reset`` starts a new
    utterance with a brand-new cache.
    """

    def __init__(self, model):
        self.model = model
        self.reset()

    def reset(self):
        self.cache = KeyValueCache(self.model.n_layers, self.model.n_kv_heads, self.model.head_dim)
        self.phase = DecodePhase.PREFILL
        self.tokens_processed = 0

    def _check_cache(self):
        cached = self.cache.length
        if cached != self.tokens_processed:
            raise ConsistencyError(
                f"KV cache holds {cached} positions but {self.tokens_processed} tokens were processed"
            )

    def _forward(self, h, mask):
        self._check_cache()
        start = self.tokens_processed
        for layer in range(self.model.n_layers):
            h = self.model.layer_forward(h, layer, self.cache, start, mask)
        self.tokens_processed += h.shape[0]
        self._check_cache()
        return h

    def prefill(self, input_embeds):
        """Process the whole prompt input_embeds [seq, hidden_size]; returns last-position logits."""
        if self.phase is not DecodePhase.PREFILL:
            raise ConsistencyError("prefill may only run once per utterance; call reset() first")
        if input_embeds.dim() != 2 or input_embeds.shape[1] != self.model.hidden_size:
            raise ConsistencyError(
                f"Prefill expects [seq, {self.model.hidden_size}] embeddings, got {tuple(input_embeds.shape)}"
            )
        seq_len = input_embeds.shape[0]
        if seq_len == 0:
            raise ConsistencyError("Prefill needs at least one position")

        h = self._forward(input_embeds.float(), causal_mask(seq_len, seq_len))
        self.phase = DecodePhase.DECODE
        logger.debug("Prefilled %d positions", seq_len)
        return self.model.logits(h[-1])

    def decode(self, token_id):
        """Feed exactly one token; returns logits [vocab] for the next position."""
        if self.phase is not DecodePhase.DECODE:
            raise ConsistencyError("decode requires a completed prefill")
        h = self.model.embed([int(token_id)])
        # One query over already-causal cached keys: no mask needed
        h = self._forward(h, None)
        return self.model.logits(h[-1])
