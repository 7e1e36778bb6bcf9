"""Exception types raised by the inference pipeline."""


class Qwen3ASRError(Exception):
    """Base class for all pipeline errors."""


class InputError(Qwen3ASRError, ValueError):
    """The waveform handed to the pipeline cannot be transcribed.

    Raised before any model computation happens, so the shared weights and
    any other in-flight request are untouched.
    """


class ConsistencyError(Qwen3ASRError, RuntimeError):
    """An internal invariant was violated.

    Cache/sequence-length mismatches, invalid block ids, mask or shape
    mismatches and illegal decoder phase transitions all land here. These are
    defects, not bad input, and are never retried.
    """


class WeightLoadError(Qwen3ASRError, KeyError):
    """A tensor is missing from the checkpoint or is malformed."""

    def __str__(self):
        # KeyError quotes its argument; keep the message readable
        return str(self.args[0]) if self.args else ""
