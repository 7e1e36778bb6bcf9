"""Command-line transcription.

Usage:
    python -m qwen3_asr samples/test_speech.wav
    python -m qwen3_asr --model 1.7B samples/test_speech.wav
    python -m qwen3_asr -m /path/to/qwen3-asr-0.6b samples/test_speech.wav
"""

import argparse
import logging
import os
import sys

from huggingface_hub import snapshot_download

from .audio import load_audio
from .errors import Qwen3ASRError
from .model import DEFAULT_MAX_NEW_TOKENS, Qwen3ASRModel

logger = logging.getLogger(__name__)

MODEL_SHORTHANDS = {
    "0.6b": "Qwen/Qwen3-ASR-0.6B",
    "small": "Qwen/Qwen3-ASR-0.6B",
    "1.7b": "Qwen/Qwen3-ASR-1.7B",
    "large": "Qwen/Qwen3-ASR-1.7B",
}

MODEL_FILES = ["config.json", "*.safetensors", "model.safetensors.index.json", "vocab.json", "tokenizer_config.json"]


def resolve_model(name):
    """Local directory, shorthand (0.6B, 1.7B, small, large) or Hub model id -> local directory."""
    if os.path.isdir(name):
        return name
    repo_id = MODEL_SHORTHANDS.get(name.lower(), name)

    logger.info("Fetching %s", repo_id)
    return snapshot_download(repo_id, allow_patterns=MODEL_FILES)


def main(argv=None):
    parser = argparse.ArgumentParser(prog="qwen3-asr", description="Transcribe an audio file with Qwen3-ASR.")
    parser.add_argument("audio", help="audio file to transcribe")
    parser.add_argument("-m", "--model", default="0.6B",
                        help="model directory, shorthand (0.6B, 1.7B, small, large) or Hub id (default: 0.6B)")
    parser.add_argument("--max-tokens", type=int, default=DEFAULT_MAX_NEW_TOKENS,
                        help="maximum number of generated tokens")
    parser.add_argument("-v", "--verbose", action="store_true", help="log per-stage diagnostics")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        model_dir = resolve_model(args.model)
        logger.info("Loading model from %s", model_dir)
        model = Qwen3ASRModel.from_pretrained(model_dir, max_new_tokens=args.max_tokens)
        audio, sr = load_audio(args.audio)
        logger.info("Transcribing...")
        result = model.transcribe_detailed(audio, sr)
    except (Qwen3ASRError, OSError, RuntimeError) as e:
        logger.error("%s", e)
        return 1

    if result.language:
        logger.info("Detected language: %s", result.language)
    print(result.text)
    return 0


if __name__ == "__main__":
    sys.exit(main())
