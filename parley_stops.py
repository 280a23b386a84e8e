#!/usr/bin/env python3
"""
Copyright 2025 7th software Ltd.

Licensed under the Apache License, Version 2.0 (the "License"); you may not use this file except in compliance with the
License. You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software distributed under the License is distributed on an
"AS IS" BASIS, WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied. See the License for the specific
language governing permissions and limitations under the License.

This module describes the supported model families and resolves, once per session, the token identifiers that end
an assistant turn.

A `ChatFamily` bundles everything that differs between model families: the prompt formatter, the end-of-sequence
marker, the special markers that structure a turn, and the closing-tag strings that some checkpoints emit instead of
a proper end-of-turn token. The family is chosen once, at start-up, from an explicit format key or from the model
filename.

`resolve_stop_conditions` then asks the tokenizer for the identifiers of those markers. Each marker is resolved by
trying three strategies in a fixed order:

1. a direct special-token lookup by name,
2. encoding the marker text, accepted only if it yields exactly one token,
3. a hard-coded identifier known to be stable for the family's public release.

If none works for a required marker the session cannot start (`StopResolutionError`). Optional markers that fail are
simply left out.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Protocol, Sequence, Tuple
import os
import re

from parley_errors import StopResolutionError
from parley_log import debug, echo
from parley_prompt import Renderer, format_chat_chatml, format_chat_llama2, format_chat_llama3


class Tokenizer(Protocol):
    def encode(self, text: str) -> List[int]:
        ...

    def decode(self, ids: Sequence[int]) -> str:
        ...

    def decode_bytes(self, ids: Sequence[int]) -> bytes:
        ...

    def lookup_special_token(self, name: str) -> Optional[int]:
        ...


# Closing tags some instruct checkpoints emit to end a response, with and without the leading space a
# SentencePiece tokenizer folds into the first piece.
DEFAULT_STOP_STRINGS: Tuple[str, ...] = (" [/RESP]", "[/RESP]")


@dataclass(frozen=True)
class MarkerSpec:
    """
    A special marker token the session needs the identifier of.

    Attributes
    ----------
    name : str
        Short label used in log and error messages, e.g. "eot".
    text : str
        The literal marker text, e.g. "<|eot_id|>".
    fallback_id : Optional[int]
        Identifier used when the tokenizer cannot resolve `text` itself.
    required : bool
        Whether failing to resolve the marker aborts the session.
    stop : bool
        Whether the marker also terminates generation. Every resolved marker is a control token regardless.
    """

    name: str
    text: str
    fallback_id: Optional[int] = None
    required: bool = True
    stop: bool = False


@dataclass(frozen=True)
class ChatFamily:
    """
    Everything PARLEY needs to know about one model family.

    Attributes
    ----------
    name : str
        The canonical format key, e.g. "llama3".
    render : Renderer
        Prompt formatter for this family.
    eos : MarkerSpec
        The family's generic end-of-sequence marker. Always required, always a stop.
    markers : Tuple[MarkerSpec, ...]
        Turn-structure markers. All of them are suppressed from visible output.
    stop_strings : Tuple[str, ...]
        Closing-tag literals whose encodings become multi-token stop sequences.
    aliases : Tuple[str, ...]
        Additional format keys accepted for this family.
    """

    name: str
    render: Renderer
    eos: MarkerSpec
    markers: Tuple[MarkerSpec, ...] = ()
    stop_strings: Tuple[str, ...] = DEFAULT_STOP_STRINGS
    aliases: Tuple[str, ...] = ()


LLAMA2 = ChatFamily(
    name="llama2",
    render=format_chat_llama2,
    eos=MarkerSpec("eos", "</s>", fallback_id=2),
    aliases=("llama-2",),
)

# Fallback identifiers are those of the Meta-Llama-3 / 3.1 / 3.2 Instruct tokenizer.
LLAMA3 = ChatFamily(
    name="llama3",
    render=format_chat_llama3,
    eos=MarkerSpec("eos", "<|end_of_text|>", fallback_id=128001),
    markers=(
        MarkerSpec("eot", "<|eot_id|>", fallback_id=128009, stop=True),
        MarkerSpec("eom", "<|eom_id|>", fallback_id=128008),
        MarkerSpec("start_header", "<|start_header_id|>", fallback_id=128006),
        MarkerSpec("end_header", "<|end_header_id|>", fallback_id=128007),
        MarkerSpec("begin_of_text", "<|begin_of_text|>", required=False),
    ),
    aliases=("llama-3",),
)

# Fallback identifiers are those of the Qwen2 / Qwen2.5 tokenizer.
CHATML = ChatFamily(
    name="chatml",
    render=format_chat_chatml,
    eos=MarkerSpec("eos", "<|endoftext|>", fallback_id=151643),
    markers=(
        MarkerSpec("im_end", "<|im_end|>", fallback_id=151645, stop=True),
        MarkerSpec("im_start", "<|im_start|>", fallback_id=151644),
    ),
    aliases=("qwen",),
)


def _build_registry(families: Iterable[ChatFamily]) -> Dict[str, ChatFamily]:
    registry: Dict[str, ChatFamily] = {}
    for fam in families:
        for key in (fam.name,) + fam.aliases:
            registry[key] = fam
    return registry


FAMILIES: Dict[str, ChatFamily] = _build_registry((LLAMA2, LLAMA3, CHATML))


def llm_formatters() -> List[str]:
    """Return the sorted list of recognised chat format keys, aliases included."""

    return sorted(FAMILIES.keys())


def detect_family(model_id: str) -> ChatFamily:
    """
    Detect the model family from a model filename or Hub repository ID.

    This uses a light heuristic on the base name. The more specific Llama 3 pattern is tested before the generic
    Llama one. If nothing matches the Llama 2 chat format is assumed.

    Parameters:
    - `model_id`: A path, filename, or repository ID such as "bartowski/Meta-Llama-3.1-8B-Instruct-GGUF".

    Returns:
    - The detected `ChatFamily`.
    """

    name = os.path.basename(model_id.rstrip("/\\")).lower()
    if re.search(r"llama[-_ ]?3", name):
        return LLAMA3
    if re.search(r"qwen", name):
        return CHATML
    # llama-2 and anything unrecognised
    return LLAMA2


def resolve_family(chat_format: Optional[str], model_id: str) -> ChatFamily:
    """
    Resolve the chat family for a session.

    Parameters:
    - `chat_format`: A key in `FAMILIES`, or "auto" / None to detect from `model_id`.
    - `model_id`: The model filename or repository ID used for detection.

    Returns:
    - The selected `ChatFamily`.

    Raises:
    - `ValueError`: If `chat_format` is neither "auto" nor a recognised key.
    """

    key = (chat_format or "auto").lower()
    if key == "auto":
        family = detect_family(model_id)
        echo(f"Chat format auto-detected as '{family.name}'")
        return family
    if key not in FAMILIES:
        raise ValueError(f"Unknown chat_format '{chat_format}'. Valid: {llm_formatters()}")
    return FAMILIES[key]


# ---------------------------- Stop conditions ----------------------------


@dataclass(frozen=True)
class StopConditions:
    """
    The immutable stop vocabulary of a session.

    Attributes
    ----------
    single_token_stops : FrozenSet[int]
        Tokens that end generation as soon as they are produced.
    multi_token_stops : Tuple[Tuple[int, ...], ...]
        Token sequences that end generation once produced in full. None is empty.
    control_token_ids : FrozenSet[int]
        Tokens that are never rendered as text.
    """

    single_token_stops: FrozenSet[int] = frozenset()
    multi_token_stops: Tuple[Tuple[int, ...], ...] = ()
    control_token_ids: FrozenSet[int] = frozenset()

    def __post_init__(self) -> None:
        if any(len(seq) == 0 for seq in self.multi_token_stops):
            raise ValueError("Multi-token stop sequences must not be empty")


def _by_lookup(tokenizer: Tokenizer, spec: MarkerSpec) -> Optional[int]:
    return tokenizer.lookup_special_token(spec.text)


def _by_encoding(tokenizer: Tokenizer, spec: MarkerSpec) -> Optional[int]:
    ids = tokenizer.encode(spec.text)
    return ids[0] if len(ids) == 1 else None


def _by_fallback(tokenizer: Tokenizer, spec: MarkerSpec) -> Optional[int]:
    return spec.fallback_id


Strategy = Callable[[Tokenizer, MarkerSpec], Optional[int]]

RESOLUTION_STRATEGIES: Tuple[Tuple[str, Strategy], ...] = (
    ("lookup", _by_lookup),
    ("encode", _by_encoding),
    ("fallback", _by_fallback),
)


def resolve_marker(tokenizer: Tokenizer, spec: MarkerSpec) -> Optional[int]:
    """
    Resolve a marker to its token identifier using the strategies in `RESOLUTION_STRATEGIES`, in order.

    Parameters:
    - `tokenizer`: The session tokenizer.
    - `spec`: The marker to resolve.

    Returns:
    - The token identifier, or `None` if an optional marker could not be resolved.

    Raises:
    - `StopResolutionError`: If a required marker could not be resolved.
    """

    for label, strategy in RESOLUTION_STRATEGIES:
        token_id = strategy(tokenizer, spec)
        if token_id is not None:
            debug(f"marker {spec.name} {spec.text!r} -> {token_id} ({label})")
            return token_id

    if spec.required:
        raise StopResolutionError(f"Token '{spec.text}' missing from tokenizer vocabulary and no fallback available")
    debug(f"marker {spec.name} {spec.text!r} unresolved (optional, skipped)")
    return None


def encode_stop_strings(tokenizer: Tokenizer, stop_strings: Iterable[str]) -> Tuple[Tuple[int, ...], ...]:
    """
    Encode closing-tag strings into multi-token stop sequences.

    Empty encodings are dropped and duplicates removed with the first occurrence kept.

    Parameters:
    - `tokenizer`: The session tokenizer.
    - `stop_strings`: The literal strings to encode.

    Returns:
    - A tuple of non-empty token sequences.
    """

    seen: set = set()
    out: List[Tuple[int, ...]] = []
    for text in stop_strings:
        if not text:
            continue
        seq = tuple(tokenizer.encode(text))
        if seq and seq not in seen:
            seen.add(seq)
            out.append(seq)
    return tuple(out)


def resolve_stop_conditions(
    tokenizer: Tokenizer,
    family: ChatFamily,
    extra_stop_strings: Sequence[str] = (),
) -> StopConditions:
    """
    Resolve the complete stop vocabulary for a model family.

    This is called once, before the first turn. The generic end-of-sequence token and every marker flagged as a stop
    go into the single-token stops. Every resolved turn-structure marker goes into the control set, whether or not it
    stops generation. The family's closing-tag strings, followed by `extra_stop_strings`, are encoded into the
    multi-token stops.

    Parameters:
    - `tokenizer`: The session tokenizer.
    - `family`: The session's chat family.
    - `extra_stop_strings`: Additional closing-tag strings, e.g. from the command line.

    Returns:
    - The session's `StopConditions`.

    Raises:
    - `StopResolutionError`: If the end-of-sequence marker or any required family marker cannot be resolved.
    """

    eos_id = resolve_marker(tokenizer, family.eos)
    singles = {eos_id}
    controls = set()

    for spec in family.markers:
        token_id = resolve_marker(tokenizer, spec)
        if token_id is None:
            continue
        controls.add(token_id)
        if spec.stop:
            singles.add(token_id)

    sequences = encode_stop_strings(tokenizer, list(family.stop_strings) + list(extra_stop_strings))

    stops = StopConditions(
        single_token_stops=frozenset(singles),
        multi_token_stops=sequences,
        control_token_ids=frozenset(controls),
    )
    echo(
        f"Stop conditions for '{family.name}': {len(stops.single_token_stops)} stop token(s), "
        f"{len(stops.multi_token_stops)} stop sequence(s), {len(stops.control_token_ids)} control token(s)"
    )
    return stops
