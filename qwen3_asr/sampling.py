"""Token selection policies. A sampler is any callable ``logits [vocab] -> int``."""

import torch


def greedy(logits):
    return int(logits.argmax().item())


class TemperatureSampler:
    """Temperature sampling with optional top-k / top-p (nucleus) filtering.

    Draws from a private generator, so a fixed ``seed`` gives the same tokens
    run to run without touching global RNG state.
    """

    def __init__(self, temperature=1.0, top_k=0, top_p=1.0, seed=None):
        if temperature < 0:
            raise ValueError(f"temperature must be >= 0, got {temperature}")
        if not 0.0 < top_p <= 1.0:
            raise ValueError(f"top_p must be in (0, 1], got {top_p}")
        self.temperature = temperature
        self.top_k = top_k
        self.top_p = top_p
        self.generator = torch.Generator()
        if seed is not None:
            self.generator.manual_seed(seed)

    def __call__(self, logits):
        if self.temperature == 0:
            return greedy(logits)
        logits = logits.float() / self.temperature
        if self.top_k > 0:
            kth = torch.topk(logits, min(self.top_k, logits.shape[-1])).values[-1]
            logits = logits.masked_fill(logits < kth, float("-inf"))
        if self.top_p < 1.0:
            sorted_logits, sorted_idx = torch.sort(logits, descending=True)
            cumulative = torch.softmax(sorted_logits, dim=-1).cumsum(-1)
            # Keep the smallest prefix whose mass reaches top_p
            remove = cumulative - torch.softmax(sorted_logits, dim=-1) >= self.top_p
            logits = logits.scatter(-1, sorted_idx, sorted_logits.masked_fill(remove, float("-inf")))
        probs = torch.softmax(logits, dim=-1)
        return int(torch.multinomial(probs, 1, generator=self.generator).item())
