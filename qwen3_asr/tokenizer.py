"""Minimal byte-level BPE decoder built from vocab.json (decode only)."""

import json
import os

from .config import TOKEN_ASR_TEXT

ASR_TEXT_MARKER = "<asr_text>"


def bytes_to_unicode():
    """GPT-2 style byte-to-unicode mapping used by Qwen2 tokenizer."""
    bs = list(range(ord("!"), ord("~") + 1)) + \
         list(range(ord("\xa1"), ord("\xac") + 1)) + \
         list(range(ord("\xae"), ord("\xff") + 1))
    cs = bs[:]
    n = 0
    for b in range(256):
        if b not in bs:
            bs.append(b)
            cs.append(256 + n)
            n += 1
    return dict(zip(bs, [chr(c) for c in cs]))


class Tokenizer:
    """Maps token ids back to text.

    Special tokens are dropped, except ``<asr_text>`` which is kept as a
    marker so the caller can split the language tag from the transcript.
    """

    def __init__(self, vocab, special_tokens=()):
        # vocab maps token_string -> token_id
        self.id_to_token = {v: k for k, v in vocab.items()}
        self.special_tokens = set(special_tokens)
        self.byte_decoder = {v: k for k, v in bytes_to_unicode().items()}

    @classmethod
    def from_pretrained(cls, model_dir):
        vocab_path = os.path.join(model_dir, "vocab.json")
        with open(vocab_path, "r", encoding="utf-8") as f:
            vocab = json.load(f)

        special_tokens = set()
        tc_path = os.path.join(model_dir, "tokenizer_config.json")
        if os.path.exists(tc_path):
            with open(tc_path, encoding="utf-8") as f:
                tc = json.load(f)
            special_tokens = {int(tid) for tid in tc.get("added_tokens_decoder", {})}
        return cls(vocab, special_tokens)

    def _decode_bytes(self, text):
        return bytearray([self.byte_decoder[c] for c in text if c in self.byte_decoder]).decode("utf-8", errors="replace")

    def decode(self, token_ids):
        pieces = []
        run = []
        for tid in token_ids:
            if tid == TOKEN_ASR_TEXT:
                pieces.append(self._decode_bytes("".join(run)))
                pieces.append(ASR_TEXT_MARKER)
                run = []
            elif tid not in self.special_tokens:
                run.append(self.id_to_token.get(tid, ""))
        pieces.append(self._decode_bytes("".join(run)))
        return "".join(pieces)


def parse_asr_output(text):
    """Split ``language <Lang><asr_text><transcript>`` into (language, transcript)."""
    text = text.strip()
    if ASR_TEXT_MARKER not in text:
        return None, text
    head, transcript = text.split(ASR_TEXT_MARKER, 1)
    head = head.strip()
    language = head[len("language"):].strip() if head.startswith("language") else head
    return language or None, transcript.strip()
