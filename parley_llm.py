#!/usr/bin/env python3
"""
Copyright 2025 7th software Ltd.

Licensed under the Apache License, Version 2.0 (the "License"); you may not use this file except in compliance with the
License. You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software distributed under the License is distributed on an
"AS IS" BASIS, WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied. See the License for the specific
language governing permissions and limitations under the License.

This module connects PARLEY to a local GGUF model through the llama_cpp library.

PARLEY does its own prompt formatting and stop detection, so it needs the model at the token level rather than
through `create_completion`:

* `LlamaTokenizer` maps text to token identifiers and back, and looks up special tokens by name.
* `LlamaEngine` turns a prompt token sequence into a lazy, bounded stream of generated token identifiers using
  `llama_cpp.Llama.generate`.
* `LocalChatModel` loads the model once and hands out both.
* `download_model` fetches a GGUF file from the Hugging Face Hub.

Highlights:

* Prompts are tokenized with `special=True`, because the chat formatters write markers such as `<|eot_id|>` and
  `<s>` into the prompt text and those must become single control tokens.
* The engine never runs past the context window: the token budget is clipped to the space left after the prompt.
* Failures inside llama.cpp surface as `EngineError`, undecodable identifiers as `DecodeError`.
* `decode_bytes` exposes raw token bytes so a streaming consumer can reassemble characters split across tokens.
"""

from __future__ import annotations

from dataclasses import dataclass
from llama_cpp import Llama
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, Union
import os
import re

from parley_errors import DecodeError, EngineError
from parley_log import debug, echo, error


@dataclass
class GenerationConfig:
    """
    Settings that control how text is generated.

    Attributes
    ----------
    max_new_tokens : int
        Hard limit on how many tokens to generate for one assistant turn. Generation may stop earlier if a stop
        token or stop sequence is produced.
    temperature : float
        Controls randomness by smoothing the probability distribution. 0 gives greedy decoding
        and is deterministic.
    top_p : float
        Nucleus sampling. At each step keep the smallest set of tokens whose cumulative
        probability ≥ top_p, then sample from that set.
    top_k : int
        Top-k sampling. At each step consider only the top_k most likely tokens.
    repeat_penalty : float
        Penalises tokens that have appeared recently to reduce repetition.

    Notes
    -----
    - Tokens are model-specific. 512 tokens is roughly 350–450 English words.
    - For maximum determinism: temperature=0, top_p=1.0, repeat_penalty≈1.0.
    """

    max_new_tokens: int = 512
    temperature: float = 0.3
    top_p: float = 0.9
    top_k: int = 60
    repeat_penalty: float = 1.05


class LlamaTokenizer:
    """
    Tokenizer backed by the vocabulary embedded in a GGUF model.

    Parameters:
    - `llm`: A loaded `llama_cpp.Llama` instance.
    """

    def __init__(self, llm: Llama) -> None:
        self.llm = llm

    def encode(self, text: str) -> List[int]:
        """
        Encode text to token identifiers, parsing special markers and without adding a begin token.

        The chat formatters write the begin token themselves, so adding one here would duplicate it.
        """

        return list(self.llm.tokenize(text.encode("utf-8"), add_bos=False, special=True))

    def decode_bytes(self, ids: Sequence[int]) -> bytes:
        """
        Return the raw bytes of token identifiers.

        With a byte-level vocabulary one token may hold only part of a multi-byte character, so streaming callers
        should feed these bytes to an incremental UTF-8 decoder rather than decoding token by token.

        Raises:
        - `DecodeError`: If an identifier is outside the model vocabulary or llama.cpp cannot decode it.
        """

        n_vocab = self.llm.n_vocab()
        for tok in ids:
            if not 0 <= tok < n_vocab:
                raise DecodeError(f"Token {tok} is outside the vocabulary (size {n_vocab})")
        try:
            return self.llm.detokenize(list(ids))
        except Exception as exc:
            raise DecodeError(f"llama.cpp failed to decode {list(ids)}: {exc}") from exc

    def decode(self, ids: Sequence[int]) -> str:
        """
        Decode token identifiers to text.

        Parameters:
        - `ids`: The identifiers to decode.

        Returns:
        - The decoded text. Bytes that do not form a complete character decode to a replacement character.

        Raises:
        - `DecodeError`: As `decode_bytes`.
        """

        return self.decode_bytes(ids).decode("utf-8", errors="replace")

    def lookup_special_token(self, name: str) -> Optional[int]:
        """
        Look up a special token by its literal name.

        Parameters:
        - `name`: The marker text, e.g. "<|eot_id|>".

        Returns:
        - The identifier if `name` tokenizes to exactly one token whose special rendering is `name` itself,
          otherwise `None`.
        """

        ids = self.llm.tokenize(name.encode("utf-8"), add_bos=False, special=True)
        if len(ids) != 1:
            return None
        if self.llm.detokenize(ids, special=True) != name.encode("utf-8"):
            return None
        return ids[0]


class LlamaEngine:
    """
    Generation engine streaming token identifiers from llama.cpp.

    Parameters:
    - `llm`: A loaded `llama_cpp.Llama` instance.
    - `cfg`: Sampling settings.
    - `n_ctx`: The context window the model was loaded with.
    """

    def __init__(self, llm: Llama, cfg: GenerationConfig, n_ctx: int) -> None:
        self.llm = llm
        self.cfg = cfg
        self.n_ctx = n_ctx

    def generate(self, prompt_tokens: Sequence[int], max_new_tokens: int) -> Iterator[int]:
        """
        Stream newly generated token identifiers for a prompt.

        Parameters:
        - `prompt_tokens`: The tokenized prompt.
        - `max_new_tokens`: Upper bound on the number of tokens yielded.

        Yields:
        - Token identifiers in generation order. The stream ends after `max_new_tokens` tokens, when the context
          window is full, or when the caller closes it.

        Raises:
        - `EngineError`: If the prompt does not fit in the context window, or llama.cpp fails mid-stream.
        """

        room = self.n_ctx - len(prompt_tokens)
        if room <= 0:
            raise EngineError(f"Prompt of {len(prompt_tokens)} tokens does not fit the {self.n_ctx} token context window")
        if max_new_tokens > room:
            error(f"WARNING: we're getting close to the context window limit! Only {room} tokens left for the reply.")

        budget = min(max_new_tokens, room)
        debug(f"generate: {len(prompt_tokens)} prompt tokens, budget {budget}")

        produced = 0
        try:
            for tok in self.llm.generate(
                list(prompt_tokens),
                top_k=self.cfg.top_k,
                top_p=self.cfg.top_p,
                temp=self.cfg.temperature,
                repeat_penalty=self.cfg.repeat_penalty,
                reset=True,
            ):
                yield tok
                produced += 1
                if produced >= budget:
                    break
        except Exception as exc:
            raise EngineError(f"Generation failed after {produced} tokens: {exc}") from exc


class LocalChatModel:
    """
    A GGUF model loaded once via llama.cpp, providing the tokenizer and engine for a session.

    Parameters
    ----------
    model_path : str
        Filesystem path to the GGUF model. The file must exist.
    n_ctx : int, default 8192
        Context window for the model in tokens. Forwarded to `llama_cpp.Llama(n_ctx=...)`.
    n_batch : int, default 512
        Prompt processing batch size in tokens. Forwarded to `llama_cpp.Llama(n_batch=...)`.
    n_gpu_layers : int, default -1
        Number of layers to offload to GPU. Use -1 to offload as many as fit, or 0 for CPU only.
    verbose : bool, default False
        Verbosity flag passed to `llama_cpp.Llama(verbose=...)`.
    **llama_kwargs
        Any additional keyword arguments forwarded directly to `llama_cpp.Llama`, for example `seed` or `n_threads`.

    Raises
    ------
    FileNotFoundError
        If `model_path` does not exist.
    Exception
        Any error propagated from `llama_cpp.Llama` during model loading.
    """

    def __init__(
        self,
        model_path: str,
        *,
        n_ctx: int = 8 * 1024,
        n_batch: int = 512,
        n_gpu_layers: int = -1,
        verbose: bool = False,
        **llama_kwargs,
    ) -> None:
        if not os.path.exists(model_path):
            raise FileNotFoundError(f"Model path does not exist: {model_path}")

        self.model_path = model_path
        self.n_ctx = n_ctx
        self.llm = Llama(
            model_path=model_path,
            n_gpu_layers=n_gpu_layers,
            n_ctx=n_ctx,
            n_batch=n_batch,
            verbose=verbose,
            **llama_kwargs,
        )

    def tokenizer(self) -> LlamaTokenizer:
        return LlamaTokenizer(self.llm)

    def engine(self, cfg: Optional[GenerationConfig] = None) -> LlamaEngine:
        return LlamaEngine(self.llm, cfg or GenerationConfig(), self.n_ctx)


def download_model(repo_id: str, include: Union[str, Iterable[str]], models_path: str = "./models") -> Path:
    """
    Download a LLM model (.gguf file or files) into a local models folder.

    Downloads into `<models_path>/<repo_id>`, filters with `include` (same idea as `--include`), and returns the path
    to the downloaded file, or the first shard if present (`*-00001-of-*.gguf`). Files already present are not
    fetched again.

    Parameters
    ----------
    repo_id : str
        Hub repository ID, e.g. "bartowski/Meta-Llama-3.1-8B-Instruct-GGUF".
    include : str | Iterable[str]
        Glob pattern(s) to include, e.g. "*Q6_K.gguf".
    models_path : str, optional
        Base directory for all models. Defaults to "./models".

    Returns
    -------
    pathlib.Path
        Path to the selected file.

    Raises
    ------
    FileNotFoundError
        If nothing matches.
    """

    from huggingface_hub import snapshot_download

    patterns = [include] if isinstance(include, str) else list(include)
    base = Path(models_path).expanduser()
    out = base / repo_id
    out.mkdir(parents=True, exist_ok=True)

    echo(f"Fetching {patterns} from '{repo_id}' (this can take a few minutes)...")
    snapshot_download(
        repo_id=repo_id,
        local_dir=str(out),
        allow_patterns=patterns,
    )

    files = sorted({p for pat in patterns for p in out.rglob(pat) if p.is_file()})
    if not files:
        raise FileNotFoundError(f"No files matched {patterns} in {out}")

    first = next((p for p in files if re.search(r"-0*1-of-0*\d+\.gguf$", p.name, re.I)), None)
    chosen = first or next((p for p in files if p.suffix.lower() == ".gguf"), files[0])
    echo(f"Model file: {chosen}")

    return chosen
