"""Per-layer key/value cache for the text decoder."""

import torch

from .errors import ConsistencyError


class KeyValueCache:
    """Append-only key/value buffers, one pair per decoder layer.

    Each layer holds keys and values as [num_kv_heads, capacity, head_dim]
    buffers, of which the first ``length`` positions are valid. Capacity grows
    in multiples of ``step`` so appends rarely reallocate.
    """

    step = 256

    def __init__(self, num_layers, num_kv_heads, head_dim, dtype=torch.float32):
        self.num_layers = num_layers
        self.num_kv_heads = num_kv_heads
        self.head_dim = head_dim
        self.dtype = dtype
        self._keys = [None] * num_layers
        self._values = [None] * num_layers
        self._lengths = [0] * num_layers

    def layer_length(self, layer):
        return self._lengths[layer]

    @property
    def length(self):
        """Positions cached; every layer must agree between forward passes."""
        lengths = set(self._lengths)
        if len(lengths) != 1:
            raise ConsistencyError(f"KV cache layers disagree on length: {self._lengths}")
        return self._lengths[0]

    def __len__(self):
        return self.length

    def _grow(self, layer, needed):
        capacity = ((needed + self.step - 1) // self.step) * self.step
        shape = (self.num_kv_heads, capacity, self.head_dim)
        keys = torch.zeros(shape, dtype=self.dtype)
        values = torch.zeros(shape, dtype=self.dtype)
        n = self._lengths[layer]
        if n:
            keys[:, :n] = self._keys[layer][:, :n]
            values[:, :n] = self._values[layer][:, :n]
        self._keys[layer] = keys
        self._values[layer] = values

    def append(self, layer, k, v):
        """Append k, v [num_kv_heads, seq, head_dim]; returns all cached keys and values for the layer."""
        expected = (self.num_kv_heads, self.head_dim)
        if k.shape != v.shape or (k.shape[0], k.shape[-1]) != expected:
            raise ConsistencyError(
                f"Cannot cache k {tuple(k.shape)} / v {tuple(v.shape)}; expected "
                f"[{self.num_kv_heads}, seq, {self.head_dim}]"
            )
        start = self._lengths[layer]
        end = start + k.shape[1]
        if self._keys[layer] is None or end > self._keys[layer].shape[1]:
            self._grow(layer, end)
        self._keys[layer][:, start:end] = k
        self._values[layer][:, start:end] = v
        self._lengths[layer] = end
        return self._keys[layer][:, :end], self._values[layer][:, :end]

    def get(self, layer):
        n = self._lengths[layer]
        if self._keys[layer] is None:
            empty = torch.zeros(self.num_kv_heads, 0, self.head_dim, dtype=self.dtype)
            return empty, empty
        return self._keys[layer][:, :n], self._values[layer][:, :n]
