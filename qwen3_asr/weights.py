"""Checkpoint access: safetensors shards or in-memory dicts behind one interface.

Tensor names are normalized to the unprefixed form (``audio_tower.*``,
``model.*``, ``lm_head.weight``) so HF checkpoints (``thinker.`` prefix) and
MLX conversions load through the same code.
"""

import glob
import json
import logging
import os

import torch
from safetensors import safe_open

from .errors import WeightLoadError
from .quant import QuantizedTensor

logger = logging.getLogger(__name__)

_PREFIX = "thinker."


def _canonical(name):
    return name[len(_PREFIX):] if name.startswith(_PREFIX) else name


class WeightStore:
    """Read-only name -> tensor mapping.

    ``tensors`` may hold tensors directly or zero-argument callables that load
    them on first access.
    """

    def __init__(self, tensors):
        self._tensors = {_canonical(k): v for k, v in tensors.items()}

    @classmethod
    def from_dir(cls, model_dir):
        """Load weights from one or more safetensors files."""
        index_path = os.path.join(model_dir, "model.safetensors.index.json")
        if os.path.exists(index_path):
            with open(index_path) as f:
                weight_map = json.load(f)["weight_map"]
            shard_files = sorted(set(weight_map.values()))
        else:
            shard_files = sorted(os.path.basename(p) for p in glob.glob(os.path.join(model_dir, "*.safetensors")))
            weight_map = None
        if not shard_files:
            raise FileNotFoundError(f"No safetensors weights in {model_dir}")

        handles = {shard: safe_open(os.path.join(model_dir, shard), framework="pt") for shard in shard_files}
        tensors = {}
        if weight_map is None:
            weight_map = {name: shard for shard, handle in handles.items() for name in handle.keys()}
        for name, shard in weight_map.items():
            handle = handles[shard]
            tensors[name] = lambda handle=handle, name=name: handle.get_tensor(name)
        logger.info("Indexed %d tensors from %d shard(s) in %s", len(tensors), len(handles), model_dir)
        return cls(tensors)

    def __contains__(self, name):
        return name in self._tensors

    def keys(self):
        return self._tensors.keys()

    def get_tensor(self, name):
        try:
            t = self._tensors[name]
        except KeyError:
            raise WeightLoadError(f"Weight not found: {name}") from None
        return t() if callable(t) else t


def get_weight(store, name):
    t = store.get_tensor(name)
    if t.is_floating_point() and t.dtype != torch.float32:
        t = t.float()
    return t


def get_linear_weight(store, prefix, quantization=None):
    """``{prefix}.weight`` as a dense tensor, or a QuantizedTensor when the
    checkpoint stores ``{prefix}.scales`` / ``{prefix}.biases`` alongside it."""
    if f"{prefix}.scales" not in store:
        return get_weight(store, f"{prefix}.weight")
    if quantization is None:
        raise WeightLoadError(f"{prefix} is quantized but the config has no quantization entry")
    if f"{prefix}.biases" not in store:
        raise WeightLoadError(f"{prefix} has scales but no biases")
    try:
        return QuantizedTensor(
            store.get_tensor(f"{prefix}.weight"),
            store.get_tensor(f"{prefix}.scales"),
            store.get_tensor(f"{prefix}.biases"),
            bits=quantization.bits,
            group_size=quantization.group_size,
        )
    except (TypeError, ValueError) as e:
        raise WeightLoadError(f"Malformed quantized weight {prefix}: {e}") from e


def get_conv2d_weight(store, name):
    """Conv kernels as [out, in, kh, kw]; MLX stores them channels-last."""
    w = get_weight(store, name)
    if w.dim() == 4 and w.shape[-1] != w.shape[-2]:
        w = w.permute(0, 3, 1, 2).contiguous()
    return w
