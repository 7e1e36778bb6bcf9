"""Position encodings: sinusoidal (encoder) and rotary (decoder)."""

import math

import torch


class PositionalEncoder:
    """Sinusoidal position embeddings, memoized by sequence length.

    The memo is private to the instance so independent models never share it.
    """

    def __init__(self, channels, max_timescale=10000.0):
        if channels % 2 != 0:
            raise ValueError(f"Sinusoidal embeddings need an even channel count, got {channels}")
        self.channels = channels
        self.max_timescale = max_timescale
        self._cache = {}

    def positions(self, length):
        """Returns [length, channels] sinusoidal embeddings."""
        emb = self._cache.get(length)
        if emb is None:
            emb = self._compute(length)
            self._cache[length] = emb
        return emb

    __call__ = positions

    def _compute(self, length):
        log_timescale_increment = math.log(self.max_timescale) / (self.channels // 2 - 1)
        inv_timescales = torch.exp(-log_timescale_increment * torch.arange(self.channels // 2).float())
        scaled_time = torch.arange(length).float().unsqueeze(1) * inv_timescales.unsqueeze(0)
        return torch.cat([torch.sin(scaled_time), torch.cos(scaled_time)], dim=1)


class RotaryEmbedding:
    """Split-half (NeoX / Qwen3 style) rotary position embedding.

    Feature ``i`` is rotated together with feature ``i + head_dim // 2`` by the
    angle ``position * theta ** (-2i / head_dim)``.
    """

    def __init__(self, head_dim, theta=10000.0):
        if head_dim % 2 != 0:
            raise ValueError(f"RoPE needs an even head_dim, got {head_dim}")
        self.head_dim = head_dim
        self.theta = theta
        self.inv_freq = 1.0 / (theta ** (torch.arange(0, head_dim, 2).float() / head_dim))

    def cos_sin(self, start, length):
        """cos, sin each [length, head_dim] for positions start..start+length-1."""
        positions = torch.arange(start, start + length).float()
        angles = positions.unsqueeze(-1) * self.inv_freq.unsqueeze(0)  # [seq, hd/2]
        emb = torch.cat([angles, angles], dim=-1)  # [seq, hd]
        return torch.cos(emb), torch.sin(emb)

    @staticmethod
    def apply(x, cos, sin):
        """x: [seq, n_heads, head_dim]; cos, sin: [seq, head_dim].

        result = x * cos + rotate_half(x) * sin, rotate_half(x) = cat(-x2, x1)
        """
        cos = cos.unsqueeze(1)
        sin = sin.unsqueeze(1)
        half = x.shape[-1] // 2
        x1 = x[..., :half]
        x2 = x[..., half:]
        rotated = torch.cat([-x2, x1], dim=-1)
        return x * cos + rotated * sin
