"""Explicit attention kernels and masks.

Everything here works on head-major tensors: q [n_heads, seq_q, head_dim],
k / v [n_heads, seq_kv, head_dim]. Masks are additive [seq_q, seq_kv]
tensors holding 0 for allowed pairs and -inf for forbidden ones.
"""

import math

import torch

from .errors import ConsistencyError


def scaled_dot_product_attention(q, k, v, mask=None, return_weights=False):
    """softmax(q k^T / sqrt(d) + mask) v"""
    seq_q, seq_kv = q.shape[-2], k.shape[-2]
    if k.shape != v.shape or q.shape[0] != k.shape[0] or q.shape[-1] != k.shape[-1]:
        raise ConsistencyError(
            f"Attention shape mismatch: q {tuple(q.shape)}, k {tuple(k.shape)}, v {tuple(v.shape)}"
        )
    scores = torch.matmul(q.float(), k.float().transpose(-1, -2)) / math.sqrt(q.shape[-1])
    if mask is not None:
        if tuple(mask.shape[-2:]) != (seq_q, seq_kv):
            raise ConsistencyError(
                f"Mask shape {tuple(mask.shape)} doesn't match scores [{seq_q}, {seq_kv}]"
            )
        scores = scores + mask
    weights = torch.softmax(scores, dim=-1)
    out = torch.matmul(weights, v.float())
    if return_weights:
        return out, weights
    return out


def repeat_kv(x, n_rep):
    """[n_kv_heads, seq, hd] -> [n_kv_heads * n_rep, seq, hd]; query head h reads kv head h // n_rep."""
    if n_rep == 1:
        return x
    return x.repeat_interleave(n_rep, dim=0)


def causal_mask(seq_q, seq_kv):
    """Lower-triangular additive mask for the last ``seq_q`` of ``seq_kv`` positions."""
    q_pos = torch.arange(seq_kv - seq_q, seq_kv).unsqueeze(1)
    kv_pos = torch.arange(seq_kv).unsqueeze(0)
    mask = torch.zeros(seq_q, seq_kv)
    return mask.masked_fill_(kv_pos > q_pos, float("-inf"))

# ============================================================================
# Block (chunk) attention
# ============================================================================

def validate_block_ids(block_ids, length=None):
    """Block ids must be a non-negative, non-decreasing integer vector (of ``length``, if given)."""
    if not isinstance(block_ids, torch.Tensor) or block_ids.dim() != 1:
        raise ConsistencyError("Block ids must be a 1-D tensor")
    if block_ids.is_floating_point() or block_ids.is_complex():
        raise ConsistencyError(f"Block ids must be integers, got {block_ids.dtype}")
    if length is not None and block_ids.shape[0] != length:
        raise ConsistencyError(f"Got {block_ids.shape[0]} block ids for {length} positions")
    length = block_ids.shape[0]
    if length == 0:
        return
    if int(block_ids.min()) < 0:
        raise ConsistencyError("Block ids must be non-negative")
    if length > 1 and bool((block_ids[1:] < block_ids[:-1]).any()):
        raise ConsistencyError("Block ids must be non-decreasing in frame order")


def block_attention_mask(block_ids):
    """Additive [T, T] mask: 0 where blockId(i) == blockId(j), -inf elsewhere."""
    validate_block_ids(block_ids)
    same = block_ids.unsqueeze(1) == block_ids.unsqueeze(0)
    mask = torch.zeros(same.shape)
    return mask.masked_fill_(~same, float("-inf"))


def block_spans(block_ids):
    """Contiguous [start, end) ranges sharing one block id, in order."""
    ids = block_ids.tolist()
    spans = []
    start = 0
    for i in range(1, len(ids) + 1):
        if i == len(ids) or ids[i] != ids[start]:
            spans.append((start, i))
            start = i
    return spans
