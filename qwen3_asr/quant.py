"""Affine group-quantized weights (MLX layout) and the matmul that reads them.

A quantized matrix of shape [rows, cols] is stored as:
  - packed: int32 [rows, cols * bits / 32], ``32 / bits`` values per word,
    lowest bits first
  - scales, biases: float32 [rows, cols / group_size]
and dequantizes as ``w = q * scale + bias`` per group. The packed form is
what stays resident; full-precision weights only exist transiently inside
``linear`` / ``take_rows``.
"""

import torch
import torch.nn.functional as F

SUPPORTED_BITS = (2, 4, 8)


def _check_bits(bits):
    if bits not in SUPPORTED_BITS:
        raise ValueError(f"Unsupported quantization width {bits}; expected one of {SUPPORTED_BITS}")


def pack(q, bits):
    """q: integer tensor [rows, cols] with values in [0, 2**bits). Returns int32 words."""
    per_word = 32 // bits
    rows, cols = q.shape
    if cols % per_word != 0:
        raise ValueError(f"{cols} columns can't be packed {per_word} per word")
    q = q.to(torch.int64).reshape(rows, cols // per_word, per_word)
    shifts = torch.arange(0, 32, bits, dtype=torch.int64)
    words = (q << shifts).sum(-1)
    # Reinterpret the unsigned 32-bit pattern as int32
    words = torch.where(words >= 2 ** 31, words - 2 ** 32, words)
    return words.to(torch.int32)


def unpack(packed, bits):
    """Inverse of ``pack``: int32 [rows, words] -> int32 [rows, words * 32 / bits]."""
    shifts = torch.arange(0, 32, bits, dtype=torch.int32)
    mask = (1 << bits) - 1
    vals = (packed.unsqueeze(-1) >> shifts) & mask
    return vals.reshape(*packed.shape[:-1], packed.shape[-1] * (32 // bits))


class QuantizedTensor:
    """A 2-D weight kept in packed affine-quantized form."""

    def __init__(self, packed, scales, biases, bits, group_size):
        _check_bits(bits)
        if packed.dtype == torch.uint32:
            packed = packed.view(torch.int32)
        if packed.dtype != torch.int32:
            raise TypeError(f"Packed weights must be 32-bit integers, got {packed.dtype}")
        cols = packed.shape[-1] * (32 // bits)
        if scales.shape != biases.shape or scales.shape[0] != packed.shape[0]:
            raise ValueError(
                f"scales {tuple(scales.shape)} / biases {tuple(biases.shape)} don't match "
                f"packed weight {tuple(packed.shape)}"
            )
        if scales.shape[-1] * group_size != cols:
            raise ValueError(
                f"{scales.shape[-1]} groups of {group_size} don't cover {cols} columns"
            )
        self.packed = packed
        self.scales = scales.float()
        self.biases = biases.float()
        self.bits = bits
        self.group_size = group_size

    @property
    def shape(self):
        return (self.packed.shape[0], self.packed.shape[-1] * (32 // self.bits))

    @classmethod
    def quantize(cls, w, bits=4, group_size=64):
        """Min/max affine quantization of a float matrix, one scale per group."""
        _check_bits(bits)
        rows, cols = w.shape
        if cols % group_size != 0:
            raise ValueError(f"{cols} columns aren't a multiple of group_size {group_size}")
        groups = w.float().reshape(rows, cols // group_size, group_size)
        w_min = groups.amin(-1)
        w_max = groups.amax(-1)
        n_levels = (1 << bits) - 1
        scales = (w_max - w_min) / n_levels
        # Constant groups: any scale works, q is all zeros
        scales = torch.where(scales == 0, torch.ones_like(scales), scales)
        q = torch.round((groups - w_min.unsqueeze(-1)) / scales.unsqueeze(-1))
        q = q.clamp_(0, n_levels).reshape(rows, cols)
        return cls(pack(q, bits), scales, w_min, bits, group_size)

    def _dequantize(self, packed, scales, biases):
        q = unpack(packed, self.bits).float()
        rows = q.shape[0]
        q = q.view(rows, -1, self.group_size)
        w = q * scales.unsqueeze(-1) + biases.unsqueeze(-1)
        return w.view(rows, -1)

    def dequantize(self):
        return self._dequantize(self.packed, self.scales, self.biases)

    def take_rows(self, ids):
        """Dequantize only the requested rows (embedding lookup)."""
        ids = torch.as_tensor(ids, dtype=torch.long)
        flat = ids.reshape(-1)
        rows = self._dequantize(self.packed[flat], self.scales[flat], self.biases[flat])
        return rows.view(*ids.shape, -1)

    def __repr__(self):
        return f"QuantizedTensor(shape={self.shape}, bits={self.bits}, group_size={self.group_size})"


def linear(x, weight, bias=None):
    """F.linear that also accepts a QuantizedTensor weight."""
    if isinstance(weight, QuantizedTensor):
        weight = weight.dequantize()
    return F.linear(x, weight, bias)


def take_rows(weight, ids):
    if isinstance(weight, QuantizedTensor):
        return weight.take_rows(ids)
    return weight[ids]
