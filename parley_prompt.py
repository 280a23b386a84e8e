#!/usr/bin/env python3
"""
Copyright 2025 7th software Ltd.

Licensed under the Apache License, Version 2.0 (the "License"); you may not use this file except in compliance with the
License. You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software distributed under the License is distributed on an
"AS IS" BASIS, WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied. See the License for the specific
language governing permissions and limitations under the License.

This module holds the conversation data model and the chat prompt formatters.

A conversation is a `History`: an append-only list of `ChatMessage` objects that always starts with a single system
message. A formatter turns a sequence of messages into the one prompt string a particular model family was trained
on. Formatters are pure functions, so the same history always renders to the same prompt, and they never look at
any session state.

Supported formats:

* Llama 2 chat ("llama2"): `[INST] ... [/INST]` blocks with the system prompt folded into the first block between
  `<<SYS>>` markers.
* Llama 3 Instruct ("llama3"): every message wrapped in `<|start_header_id|>role<|end_header_id|>` headers and closed
  with `<|eot_id|>`.
* ChatML ("chatml"), as used by Qwen: `<|im_start|>role` ... `<|im_end|>` blocks.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator, List, Sequence, Tuple

from parley_errors import TemplateError


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ChatMessage:
    """
    A single message in a conversation.

    Attributes
    ----------
    role : Role
        Who said it.
    content : str
        The message text, exactly as it should appear inside the prompt.
    """

    role: Role
    content: str


Messages = Sequence[ChatMessage]
Renderer = Callable[[Messages], str]


class History:
    """
    Ordered, append-only conversation history.

    The history is created with its system message and only ever grows. A system message can never be appended
    later, so role `system` appears at index 0 only.

    Parameters:
    - `system_prompt`: The text of the system message at index 0.
    """

    def __init__(self, system_prompt: str) -> None:
        self._messages: List[ChatMessage] = [ChatMessage(Role.SYSTEM, system_prompt)]

    def append(self, message: ChatMessage) -> None:
        """
        Append a user or assistant message.

        Raises:
        - `ValueError`: If `message` is a system message.
        """

        if message.role == Role.SYSTEM:
            raise ValueError("A system message may only appear at the start of the history")
        self._messages.append(message)

    def extended(self, *messages: ChatMessage) -> Tuple[ChatMessage, ...]:
        """Return a snapshot of the history followed by `messages`, leaving the history itself untouched."""

        return tuple(self._messages) + messages

    @property
    def messages(self) -> Tuple[ChatMessage, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[ChatMessage]:
        return iter(tuple(self._messages))


def _check_shape(messages: Messages) -> None:
    """
    Validate the shape every formatter relies on.

    Parameters:
    - `messages`: The conversation to be rendered.

    Raises:
    - `TemplateError`: If `messages` is empty or holds a system message anywhere other than index 0.
    """

    if not messages:
        raise TemplateError("Cannot build a prompt from an empty history")
    for i, m in enumerate(messages):
        if m.role == Role.SYSTEM and i != 0:
            raise TemplateError(f"System message found at index {i}; only index 0 may hold one")


def format_chat_llama2(messages: Messages) -> str:
    """
    Format a conversation into a Llama 2 chat prompt.

    The prompt is one running string: the begin token and first `[INST]` are emitted once, the system prompt (if it
    is the first message) is folded into the first instruction, each user message closes the current instruction and
    each assistant message closes its turn and opens the next instruction.

    With one system and one user message the result is exactly:

        <s>[INST] <<SYS>>\\n{system}\\n<</SYS>>\\n\\n{user} [/INST]

    Parameters:
    - `messages`: The conversation, oldest first.

    Returns:
    - The prompt string.

    Raises:
    - `TemplateError`: If the conversation is empty or misplaces its system message.
    """

    _check_shape(messages)

    parts: List[str] = ["<s>[INST] "]
    for i, m in enumerate(messages):
        if m.role == Role.SYSTEM:
            parts.append(f"<<SYS>>\n{m.content}\n<</SYS>>\n\n")
        elif m.role == Role.USER:
            parts.append(f"{m.content} [/INST]")
        elif m.role == Role.ASSISTANT:
            parts.append(f" {m.content}</s><s>[INST] ")
    return "".join(parts)


def format_chat_llama3(messages: Messages) -> str:
    """
    Format a conversation into a Llama 3 Instruct prompt.

    Every header is followed by a blank line (`<|end_header_id|>\\n\\n`), as in Meta's published template. Some
    older front-ends emit a single newline there.

    Parameters:
    - `messages`: The conversation, oldest first.

    Returns:
    - The prompt string. If the last message is from the user an open assistant header is appended so the model
      continues as the assistant.

    Raises:
    - `TemplateError`: If the conversation is empty or misplaces its system message.
    """

    _check_shape(messages)

    def block(role: str, content: str) -> str:
        return f"<|start_header_id|>{role}<|end_header_id|>\n\n{content}<|eot_id|>"

    parts: List[str] = ["<|begin_of_text|>"]
    for m in messages:
        parts.append(block(m.role.value, m.content))
    if messages[-1].role == Role.USER:
        # open assistant header for generation
        parts.append("<|start_header_id|>assistant<|end_header_id|>\n\n")
    return "".join(parts)


def format_chat_chatml(messages: Messages) -> str:
    """
    Format a conversation into a ChatML (Qwen) prompt.

    Parameters:
    - `messages`: The conversation, oldest first.

    Returns:
    - The prompt string, ending in an open assistant turn when the last message is from the user.
    """

    _check_shape(messages)

    parts: List[str] = [f"<|im_start|>{m.role.value}\n{m.content}<|im_end|>\n" for m in messages]
    if messages[-1].role == Role.USER:
        parts.append("<|im_start|>assistant\n")
    return "".join(parts)
