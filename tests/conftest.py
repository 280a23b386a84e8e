"""Pytest configuration for tests.

Sets up the Python path and provides a fake tokenizer and a scripted engine, so the chat core can be tested without a
model file.
"""

import sys
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Union

import pytest

# Add project root to Python path so imports work correctly
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

import parley_log  # noqa: E402


class FakeTokenizer:
    """Word-level tokenizer over a fixed vocabulary.

    Vocabulary entries are text, or raw bytes standing in for the partial characters of a byte-level vocabulary.
    `encode` splits on the known text entries greedily (longest first) and ignores anything unknown. Decoding raises
    `KeyError` for an unknown identifier.
    """

    def __init__(self, vocab: Dict[int, Union[str, bytes]], specials: Optional[Dict[str, int]] = None):
        self.vocab = dict(vocab)
        self.ids = {text: i for i, text in self.vocab.items() if isinstance(text, str)}
        self.specials = dict(specials or {})
        self.lookups: List[str] = []

    def encode(self, text: str) -> List[int]:
        out: List[int] = []
        entries = sorted(self.ids, key=len, reverse=True)
        pos = 0
        while pos < len(text):
            for entry in entries:
                if entry and text.startswith(entry, pos):
                    out.append(self.ids[entry])
                    pos += len(entry)
                    break
            else:
                pos += 1
        return out

    def decode_bytes(self, ids: Sequence[int]) -> bytes:
        pieces = [self.vocab[i] for i in ids]
        return b"".join(p if isinstance(p, bytes) else p.encode("utf-8") for p in pieces)

    def decode(self, ids: Sequence[int]) -> str:
        return self.decode_bytes(ids).decode("utf-8", errors="replace")

    def lookup_special_token(self, name: str) -> Optional[int]:
        self.lookups.append(name)
        return self.specials.get(name)


class ScriptedEngine:
    """Engine that replays a fixed list of tokens and records how far it was consumed."""

    def __init__(self, script: Sequence[int], fail_after: Optional[int] = None, exc: Optional[Exception] = None):
        self.script = list(script)
        self.fail_after = fail_after
        self.exc = exc
        self.calls: List[Sequence[int]] = []
        self.consumed = 0
        self.closed = False

    def generate(self, prompt_tokens: Sequence[int], max_new_tokens: int) -> Iterator[int]:
        self.calls.append(list(prompt_tokens))
        self.consumed = 0
        self.closed = False
        try:
            for i, tok in enumerate(self.script[:max_new_tokens]):
                if self.fail_after is not None and i == self.fail_after:
                    raise self.exc
                self.consumed += 1
                yield tok
        except GeneratorExit:
            self.closed = True
            raise


@pytest.fixture(autouse=True)
def quiet_log():
    parley_log.set_verbosity(0)
    yield
    parley_log.set_verbosity(0)


@pytest.fixture
def vocab() -> Dict[int, str]:
    return {
        5: "Hello",
        7: " tail",
        15: "Hi",
        22: " there",
        50: "!",
        91: "[/",
        92: "RESP]",
        93: " [/",
        2: "</s>",
        100: "<|eot|>",
        101: "<|hdr|>",
    }


@pytest.fixture
def tokenizer(vocab) -> FakeTokenizer:
    return FakeTokenizer(vocab)
