"""Qwen3-ASR speech recognition in plain PyTorch."""

from .config import AudioEncoderConfig, ModelConfig, QuantizationConfig, TextDecoderConfig
from .decoder import AutoregressiveDecoder, DecodePhase, TextDecoder
from .encoder import BlockAttentionEncoder
from .errors import ConsistencyError, InputError, Qwen3ASRError, WeightLoadError
from .features import FeatureExtractor
from .kv_cache import KeyValueCache
from .model import Qwen3ASRModel, TranscriptionResult
from .positional import PositionalEncoder, RotaryEmbedding
from .quant import QuantizedTensor
from .sampling import TemperatureSampler, greedy
from .tokenizer import Tokenizer
from .weights import WeightStore

__version__ = "0.1.0"

__all__ = [
    "AudioEncoderConfig",
    "AutoregressiveDecoder",
    "BlockAttentionEncoder",
    "ConsistencyError",
    "DecodePhase",
    "FeatureExtractor",
    "InputError",
    "KeyValueCache",
    "ModelConfig",
    "PositionalEncoder",
    "QuantizationConfig",
    "QuantizedTensor",
    "Qwen3ASRError",
    "Qwen3ASRModel",
    "RotaryEmbedding",
    "TemperatureSampler",
    "TextDecoder",
    "TextDecoderConfig",
    "Tokenizer",
    "TranscriptionResult",
    "WeightLoadError",
    "WeightStore",
    "greedy",
]
