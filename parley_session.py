#!/usr/bin/env python3
"""
Copyright 2025 7th software Ltd.

Licensed under the Apache License, Version 2.0 (the "License"); you may not use this file except in compliance with the
License. You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software distributed under the License is distributed on an
"AS IS" BASIS, WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied. See the License for the specific
language governing permissions and limitations under the License.

This module runs one interactive chat session.

Each turn renders the history plus the new user message with the family's formatter, tokenizes it, asks the engine for
a bounded token stream and pipes that stream through a `TokenStreamFilter`. Fragments are written as soon as the
filter releases them. When the turn ends the user message and the trimmed reply are committed to the history together,
so a failed turn leaves the history exactly as it was.
"""

from __future__ import annotations

from enum import Enum
from typing import Callable, Iterator, Optional, Protocol, Sequence
import sys

from parley_errors import ParleyError
from parley_log import echo, error
from parley_prompt import ChatMessage, History, Role
from parley_stops import ChatFamily, StopConditions, Tokenizer
from parley_stream import TokenStreamFilter


class GenerationEngine(Protocol):
    def generate(self, prompt_tokens: Sequence[int], max_new_tokens: int) -> Iterator[int]:
        ...


class SessionState(str, Enum):
    AWAITING_INPUT = "awaiting_input"
    GENERATING = "generating"
    CLOSED = "closed"


def _write_stdout(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


class ChatSession:
    """
    An interactive conversation with a local model.

    Parameters:
    - `tokenizer`: Encodes prompts and decodes generated tokens.
    - `engine`: Produces the generated token stream.
    - `family`: The chat family selected for this session. Its formatter is used for every turn.
    - `stops`: The stop conditions resolved for this session.
    - `system_prompt`: Text of the system message that opens the history.
    - `max_new_tokens`: Token budget for one assistant turn.
    - `write`: Callable receiving each printable fragment. Defaults to writing to stdout.
    - `reply_prefix`: Written before each reply by `run`, e.g. "Assistant: ".
    """

    def __init__(
        self,
        tokenizer: Tokenizer,
        engine: GenerationEngine,
        family: ChatFamily,
        stops: StopConditions,
        *,
        system_prompt: str,
        max_new_tokens: int = 512,
        write: Optional[Callable[[str], None]] = None,
        reply_prefix: str = "",
    ) -> None:
        self.tokenizer = tokenizer
        self.engine = engine
        self.family = family
        self.stops = stops
        self.max_new_tokens = max_new_tokens
        self.write = write or _write_stdout
        self.reply_prefix = reply_prefix
        self.history = History(system_prompt)
        self.state = SessionState.AWAITING_INPUT

    def turn(self, user_input: str) -> str:
        """
        Run one user turn to completion.

        Parameters:
        - `user_input`: The user's message.

        Returns:
        - The assistant reply, trimmed, as committed to the history.

        Raises:
        - `TemplateError`, `DecodeError`, `EngineError`: The turn is aborted and the history is left unchanged.
          Fragments already written stay written.
        """

        user = ChatMessage(Role.USER, user_input)
        prompt = self.family.render(self.history.extended(user))
        prompt_tokens = self.tokenizer.encode(prompt)
        echo(f"Prompt is {len(prompt_tokens)} tokens")

        self.state = SessionState.GENERATING
        stream_filter = TokenStreamFilter(self.tokenizer, self.stops)
        fragments = None
        try:
            fragments = stream_filter.run(self.engine.generate(prompt_tokens, self.max_new_tokens))
            for fragment in fragments:
                self.write(fragment)
        finally:
            # closing the filter closes the engine stream too
            if fragments is not None:
                fragments.close()
            self.state = SessionState.AWAITING_INPUT

        reply = stream_filter.reply
        self.history.append(user)
        self.history.append(ChatMessage(Role.ASSISTANT, reply))
        echo(f"\nTurn ended ({stream_filter.state.value})")
        return reply

    def run(self, read_input: Callable[[], str]) -> int:
        """
        Run the chat loop until the user enters an empty line or input ends.

        Parameters:
        - `read_input`: Returns the next line of user input. Raising `EOFError` ends the session.

        Returns:
        - 0 when the session ends normally, 130 when it is interrupted.
        """

        while self.state != SessionState.CLOSED:
            try:
                user_input = read_input()
            except EOFError:
                user_input = ""
            except KeyboardInterrupt:
                self.state = SessionState.CLOSED
                return 130

            if not user_input:
                self.state = SessionState.CLOSED
                break

            try:
                if self.reply_prefix:
                    self.write(self.reply_prefix)
                self.turn(user_input)
            except ParleyError as exc:
                error(f"\nError: {exc}")
            except KeyboardInterrupt:
                self.state = SessionState.CLOSED
                self.write("\n")
                return 130
            self.write("\n\n")

        return 0
