#!/usr/bin/env python3
"""
Copyright 2025 7th software Ltd.

Licensed under the Apache License, Version 2.0 (the "License"); you may not use this file except in compliance with the
License. You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software distributed under the License is distributed on an
"AS IS" BASIS, WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied. See the License for the specific
language governing permissions and limitations under the License.

PARLEY is an interactive terminal chat with a local GGUF model.

It loads (or first downloads) the model, works out which chat format the model expects, resolves the tokens that mark
the end of an assistant turn, and then runs a read-generate-print loop. Replies are streamed token by token, with the
model's control markers and any trailing stop marker kept out of the output. An empty line or end of input ends the
session.

Examples:

    parley --model ./models/Meta-Llama-3.1-8B-Instruct-Q6_K.gguf
    parley --repo-id Qwen/Qwen2.5-7B-Instruct-GGUF --include "qwen2.5-7b-instruct-q4_k_m*.gguf" -f chatml
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence
import argparse

from parley_errors import StopResolutionError
from parley_log import echo, error, set_verbosity
from parley_session import ChatSession
from parley_stops import llm_formatters, resolve_family, resolve_stop_conditions


# Based upon meta-llama/Llama-3.1-8B-Instruct
#
# 8B parameters, 6-bit quantised, 6.6GB, context length 131072.
#
DEFAULT_REPO_ID = "bartowski/Meta-Llama-3.1-8B-Instruct-GGUF"
DEFAULT_INCLUDE = "*Q6_K.gguf"
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """
    Parse command-line arguments and return an argparse.Namespace object.

    Parameters:
    - argv: Optional list of strings to parse as command-line arguments. If not provided, sys.argv[1:] is used.

    Returns:
    - An argparse.Namespace object containing the parsed arguments.
    """

    formatters = llm_formatters() + ["auto"]

    p = argparse.ArgumentParser(description="PARLEY: interactive chat with a local LLM")
    p.add_argument("--model", "-m", default="", help="Path to a GGUF model file. Downloaded from --repo-id if omitted")
    p.add_argument("--repo-id", default=DEFAULT_REPO_ID, help="Hugging Face repository to download the model from")
    p.add_argument("--include", default=DEFAULT_INCLUDE, help="Glob selecting the GGUF file(s) in --repo-id")
    p.add_argument("--models-path", default="./models", help="Directory downloaded models are stored in")
    p.add_argument("--system-prompt", "-s", default=DEFAULT_SYSTEM_PROMPT, help="System prompt opening every session")
    p.add_argument("--format", "-f", default="auto", help=f"Chat format override. One of {formatters}")
    p.add_argument("--stop", action="append", default=[], help="Extra closing-tag string that ends a reply (repeatable)")
    p.add_argument("--max-new-tokens", "-M", type=int, default=512, help="Maximum number of tokens in one reply")
    p.add_argument("--temperature", "-T", type=float, default=0.3, help="Temperature value for the LLM")
    p.add_argument("--top-p", "-P", type=float, default=0.9, help="Top-p value for the LLM")
    p.add_argument("--top-k", "-K", type=int, default=60, help="Top-k value for the LLM")
    p.add_argument("--repeat-penalty", "-R", type=float, default=1.05, help="Repeat penalty value for the LLM")
    p.add_argument("--n-ctx", type=int, default=8 * 1024, help="Number of tokens to use as context")
    p.add_argument("--n-batch", type=int, default=512, help="Prompt processing batch size")
    p.add_argument("--n-gpu-layers", type=int, default=-1, help="Number of GPU layers to use")
    p.add_argument("--verbose", "-v", action="store_true", help="Output progress information to stdout")
    p.add_argument("--very-verbose", "-vv", action="store_true", help="Also trace every token and show llama.cpp logs")

    return p.parse_args(argv)


def _read_user_input() -> str:
    return input("You: ")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Main entry point. Prepares the model, resolves the chat format and stop conditions, then runs the chat loop.

    Parameters:
    - argv: Optional sequence of command-line arguments.

    Returns:
    - 0 on a normal exit, 1 if the model cannot be loaded or the format is unknown, 2 if the stop tokens cannot be
      resolved, 130 if interrupted.
    """

    args = _parse_args(argv)

    set_verbosity(2 if args.very_verbose else 1 if args.verbose else 0)

    # Imported here so that argument errors and --help do not pay for loading llama.cpp
    from parley_llm import GenerationConfig, LocalChatModel, download_model

    try:
        model_id = args.model or args.repo_id
        family = resolve_family(args.format, model_id)

        if args.model:
            model = Path(args.model)
        else:
            model = download_model(args.repo_id, args.include, args.models_path)

        echo("Loading the LLM...")
        llm = LocalChatModel(
            str(model),
            n_ctx=args.n_ctx,
            n_batch=args.n_batch,
            n_gpu_layers=args.n_gpu_layers,
            verbose=args.very_verbose,
        )
    except (FileNotFoundError, ValueError) as exc:
        error(f"Error: {exc}")
        return 1

    cfg = GenerationConfig(
        max_new_tokens=args.max_new_tokens,
        temperature=args.temperature,
        top_p=args.top_p,
        top_k=args.top_k,
        repeat_penalty=args.repeat_penalty,
    )

    tokenizer = llm.tokenizer()
    try:
        stops = resolve_stop_conditions(tokenizer, family, args.stop)
    except StopResolutionError as exc:
        error(f"Error: {exc}")
        return 2

    session = ChatSession(
        tokenizer,
        llm.engine(cfg),
        family,
        stops,
        system_prompt=args.system_prompt,
        max_new_tokens=cfg.max_new_tokens,
        reply_prefix="Assistant: ",
    )

    print("Model loaded. Type your message and press return (empty line to quit).\n")
    rc = session.run(_read_user_input)
    print("Bye!")
    return rc


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
