"""Audio encoder: per-chunk Conv2D stem + block-attention transformer."""

import logging

import torch
import torch.nn.functional as F

from .attention import block_attention_mask, block_spans, scaled_dot_product_attention, validate_block_ids
from .positional import PositionalEncoder
from .quant import linear
from .weights import get_conv2d_weight, get_linear_weight, get_weight

logger = logging.getLogger(__name__)


def conv_output_length(n_frames):
    """Sequence length after three Conv2D(k=3, stride=2, padding=1) layers."""
    for _ in range(3):
        n_frames = (n_frames - 1) // 2 + 1
    return max(n_frames, 0)


def layer_norm(x, weight, bias, eps=1e-5):
    return F.layer_norm(x, (x.shape[-1],), weight, bias, eps)


class BlockAttentionEncoder:
    """mel [n_mels, frames] -> audio embeddings [n_tokens, output_dim].

    The stem runs on chunks of ``2 * n_window`` mel frames; each full chunk
    yields ``conv_output_length(2 * n_window)`` tokens (13 for the released
    checkpoints). Positions restart at 0 in every chunk. Transformer
    attention is then confined to blocks of ``n_window_infer`` mel frames
    worth of tokens by an additive block-diagonal mask.
    """

    def __init__(self, store, config, quantization=None, prefix="audio_tower"):
        self.config = config
        self.quantization = quantization
        self.n_heads = config.encoder_attention_heads
        self.head_dim = config.head_dim
        self.chunk_size = config.chunk_size
        self.tokens_per_chunk = conv_output_length(self.chunk_size)
        self.tokens_per_block = self.tokens_per_chunk * (config.n_window_infer // self.chunk_size)
        self.positional = PositionalEncoder(config.d_model)

        self.conv = [
            (get_conv2d_weight(store, f"{prefix}.conv2d{i}.weight"), get_weight(store, f"{prefix}.conv2d{i}.bias"))
            for i in (1, 2, 3)
        ]
        self.conv_out = get_linear_weight(store, f"{prefix}.conv_out", quantization)
        self.layers = [self._load_layer(store, f"{prefix}.layers.{i}") for i in range(config.encoder_layers)]
        self.ln_post = (get_weight(store, f"{prefix}.ln_post.weight"), get_weight(store, f"{prefix}.ln_post.bias"))
        self.proj1 = (get_linear_weight(store, f"{prefix}.proj1", quantization), get_weight(store, f"{prefix}.proj1.bias"))
        self.proj2 = (get_linear_weight(store, f"{prefix}.proj2", quantization), get_weight(store, f"{prefix}.proj2.bias"))

    def _load_layer(self, store, lp):
        def lin(name):
            return (get_linear_weight(store, f"{lp}.{name}", self.quantization), get_weight(store, f"{lp}.{name}.bias"))

        return {
            "self_attn_layer_norm": (get_weight(store, f"{lp}.self_attn_layer_norm.weight"),
                                     get_weight(store, f"{lp}.self_attn_layer_norm.bias")),
            "q_proj": lin("self_attn.q_proj"),
            "k_proj": lin("self_attn.k_proj"),
            "v_proj": lin("self_attn.v_proj"),
            "out_proj": lin("self_attn.out_proj"),
            "final_layer_norm": (get_weight(store, f"{lp}.final_layer_norm.weight"),
                                 get_weight(store, f"{lp}.final_layer_norm.bias")),
            "fc1": lin("fc1"),
            "fc2": lin("fc2"),
        }

    # ------------------------------------------------------------------
    # Stem
    # ------------------------------------------------------------------

    def _stem(self, mel):
        """Conv2D per chunk, then conv_out + per-chunk positions. Returns [tokens, d_model]."""
        chunk_outputs = []
        for start in range(0, mel.shape[1], self.chunk_size):
            x = mel[:, start:start + self.chunk_size].unsqueeze(0).unsqueeze(0)
            for w, b in self.conv:
                x = F.gelu(F.conv2d(x, w, b, stride=2, padding=1))
            # [1, C, freq, time] -> [time, C*freq]
            _, c, f, t = x.shape
            chunk_outputs.append(x.permute(0, 3, 1, 2).reshape(t, c * f))

        if not chunk_outputs:
            return torch.zeros(0, self.config.d_model)

        x = linear(torch.cat(chunk_outputs, dim=0), self.conv_out)
        offset = 0
        for chunk in chunk_outputs:
            n = chunk.shape[0]
            x[offset:offset + n] += self.positional.positions(n)
            offset += n
        logger.debug("Conv output: %d frames -> %d tokens (chunks of %d)", mel.shape[1], x.shape[0], self.chunk_size)
        return x

    def block_ids(self, n_tokens):
        """Block id of every encoder token; non-decreasing by construction."""
        return torch.arange(n_tokens, dtype=torch.long) // self.tokens_per_block

    # ------------------------------------------------------------------
    # Transformer
    # ------------------------------------------------------------------

    def _attention(self, x, L, spans, mask):
        seq_len = x.shape[0]
        q = linear(x, *L["q_proj"]).view(seq_len, self.n_heads, self.head_dim).transpose(0, 1)
        k = linear(x, *L["k_proj"]).view(seq_len, self.n_heads, self.head_dim).transpose(0, 1)
        v = linear(x, *L["v_proj"]).view(seq_len, self.n_heads, self.head_dim).transpose(0, 1)

        weights = None
        if mask is not None:
            out, weights = scaled_dot_product_attention(q, k, v, mask=mask, return_weights=True)
        else:
            # Same result as the masked path; work stays bounded by block size
            out = torch.empty(self.n_heads, seq_len, self.head_dim)
            for start, end in spans:
                out[:, start:end] = scaled_dot_product_attention(
                    q[:, start:end], k[:, start:end], v[:, start:end]
                )
        out = out.transpose(0, 1).reshape(seq_len, self.n_heads * self.head_dim)
        return linear(out, *L["out_proj"]), weights

    def _layer_forward(self, x, L, spans, mask):
        attn_out, weights = self._attention(layer_norm(x, *L["self_attn_layer_norm"]), L, spans, mask)
        x = x + attn_out
        h = F.gelu(linear(layer_norm(x, *L["final_layer_norm"]), *L["fc1"]))
        x = x + linear(h, *L["fc2"])
        return x, weights

    def forward(self, mel, output_attentions=False, block_ids=None):
        """mel: [n_mels, frames].

        Returns [n_tokens, output_dim], or ``(hidden, attentions)`` with one
        [n_heads, n_tokens, n_tokens] post-softmax weight tensor per layer when
        ``output_attentions`` is set (this runs the dense masked path).
        """
        x = self._stem(mel)
        n_tokens = x.shape[0]
        if block_ids is None:
            block_ids = self.block_ids(n_tokens)
        validate_block_ids(block_ids, n_tokens)
        spans = block_spans(block_ids)
        mask = block_attention_mask(block_ids) if output_attentions else None
        logger.debug("Attention blocks: %s", [end for _, end in spans])

        attentions = []
        for i, L in enumerate(self.layers):
            x, weights = self._layer_forward(x, L, spans, mask)
            if output_attentions:
                attentions.append(weights)
            if n_tokens and ((i + 1) % 6 == 0 or i == 0):
                logger.debug("Encoder layer %d/%d: range [%.2f, %.2f]", i + 1, len(self.layers), x.min(), x.max())

        x = layer_norm(x, *self.ln_post)
        x = F.gelu(linear(x, *self.proj1))
        x = linear(x, *self.proj2)
        logger.debug("Encoder final output: [%d, %d]", x.shape[0], x.shape[1])
        if output_attentions:
            return x, attentions
        return x

    __call__ = forward
