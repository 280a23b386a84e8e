#!/usr/bin/env python3
"""
Copyright 2025 7th software Ltd.

Licensed under the Apache License, Version 2.0 (the "License"); you may not use this file except in compliance with the
License. You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software distributed under the License is distributed on an
"AS IS" BASIS, WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied. See the License for the specific
language governing permissions and limitations under the License.

This module filters a stream of generated token identifiers into the text fragments that make up the visible reply.

The model does not announce the end of its reply in advance. It ends it with a stop token, or with a multi-token stop
sequence such as an encoded closing tag. A single stop token is easy: it is recognised the moment it arrives. A stop
sequence is not: its first token looks like ordinary output until the rest of the sequence turns up. So the filter
keeps a pending buffer of tokens that might still be the start of a stop sequence and only releases a token once no
stop sequence can begin with it.

For each new token:

1. A single-token stop ends the turn. The token itself is dropped, but whatever the buffer still holds can no longer
   grow into a stop sequence, so it is released in order first.
2. Otherwise the token is appended to the pending buffer.
3. If the buffer now begins with a complete stop sequence the turn ends and the buffer is dropped.
4. While the buffer is not a prefix of any stop sequence, its oldest token is released: decoded and emitted, unless
   it is a control token, which is dropped silently. Each release re-checks the rest of the buffer for a complete
   stop sequence.

When the engine runs out of tokens the remainder of the buffer is released in order, since nothing can arrive to
complete a stop sequence.

Released tokens go through one incremental UTF-8 decoder per turn. Byte-level vocabularies split a character such as
"é" over several tokens; its text is emitted once the last byte arrives instead of as replacement characters.
"""

from __future__ import annotations

from collections import deque
from enum import Enum
from typing import Deque, Iterable, Iterator, List, Tuple
import codecs

from parley_errors import DecodeError
from parley_log import debug
from parley_stops import StopConditions, Tokenizer


class FilterState(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    EXHAUSTED = "exhausted"


def is_prefix(head: Tuple[int, ...], seq: Tuple[int, ...]) -> bool:
    """Return True if `head` is a strict or equal prefix of `seq`."""

    return len(head) <= len(seq) and seq[:len(head)] == head


class TokenStreamFilter:
    """
    Turn a generated token stream into printable fragments, stopping exactly at the first stop condition.

    One filter handles one assistant turn. It owns the pending buffer, the UTF-8 decoder state and the fragments
    emitted so far.

    Parameters:
    - `tokenizer`: Used to turn each released token into bytes.
    - `stops`: The session's stop conditions.
    """

    def __init__(self, tokenizer: Tokenizer, stops: StopConditions) -> None:
        self.tokenizer = tokenizer
        self.stops = stops
        self.state = FilterState.RUNNING
        self.pending: Deque[int] = deque()
        self.fragments: List[str] = []
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def reply(self) -> str:
        """The text emitted so far, with leading and trailing whitespace removed."""

        return "".join(self.fragments).strip()

    def _holds_stop(self) -> bool:
        buf = tuple(self.pending)
        return any(is_prefix(seq, buf) for seq in self.stops.multi_token_stops)

    def _could_become_stop(self) -> bool:
        buf = tuple(self.pending)
        return any(is_prefix(buf, seq) for seq in self.stops.multi_token_stops)

    def _emit(self, fragment: str, out: List[str]) -> None:
        if fragment:
            self.fragments.append(fragment)
            out.append(fragment)

    def _end(self, state: FilterState, out: List[str]) -> None:
        # trailing bytes of an unfinished character come out as U+FFFD
        self._emit(self._utf8.decode(b"", final=True), out)
        self.state = state

    def _stop(self, reason: str, out: List[str]) -> None:
        debug(f"stop: {reason}, dropping {list(self.pending)}")
        self.pending.clear()
        self._end(FilterState.STOPPED, out)

    def _token_bytes(self, token: int) -> bytes:
        try:
            return self.tokenizer.decode_bytes([token])
        except DecodeError:
            raise
        except (ValueError, KeyError, IndexError, UnicodeDecodeError) as exc:
            raise DecodeError(f"Cannot decode token {token}: {exc}") from exc

    def _release(self, out: List[str]) -> None:
        """Release the oldest pending token, emitting its text unless it is a control token."""

        token = self.pending.popleft()
        if token in self.stops.control_token_ids:
            debug(f"token {token}: control, suppressed")
            return
        fragment = self._utf8.decode(self._token_bytes(token))
        debug(f"token {token}: emit {fragment!r}")
        self._emit(fragment, out)

    def _drain(self, out: List[str]) -> bool:
        """
        Release every pending token in order.

        Returns:
        - False if the remaining buffer turned out to begin with a complete stop sequence, in which case the filter
          has stopped. True once the buffer is empty.
        """

        while self.pending:
            if self._holds_stop():
                self._stop("stop sequence in residual buffer", out)
                return False
            self._release(out)
        return True

    def push(self, token: int) -> List[str]:
        """
        Feed one generated token.

        Parameters:
        - `token`: The next token identifier, in generation order.

        Returns:
        - The fragments that became safe to show, oldest first. Possibly empty.

        Raises:
        - `RuntimeError`: If the filter has already stopped or been exhausted.
        - `DecodeError`: If a released token cannot be decoded.
        """

        if self.state != FilterState.RUNNING:
            raise RuntimeError(f"Cannot push a token into a {self.state.value} filter")

        out: List[str] = []

        if token in self.stops.single_token_stops:
            debug(f"stop: stop token {token}, releasing {list(self.pending)}")
            if self._drain(out):
                self._end(FilterState.STOPPED, out)
            return out

        self.pending.append(token)
        if self._holds_stop():
            self._stop("stop sequence", out)
            return out

        while self.pending:
            if self._could_become_stop():
                debug(f"token {token}: holding {list(self.pending)}")
                break
            self._release(out)
            if self.pending and self._holds_stop():
                self._stop("stop sequence", out)
                break

        return out

    def finish(self) -> List[str]:
        """
        Release everything still pending because the engine has no more tokens.

        Returns:
        - The remaining fragments, oldest first. Empty if the filter had already stopped.
        """

        out: List[str] = []
        if self.state != FilterState.RUNNING:
            return out

        if self._drain(out):
            self._end(FilterState.EXHAUSTED, out)
        return out

    def run(self, tokens: Iterable[int]) -> Iterator[str]:
        """
        Filter a whole token stream, yielding fragments as soon as they are safe to show.

        The source is consumed strictly in order, one token at a time. Once a stop condition fires the source is
        closed (if it is a generator) without asking for another token.

        Parameters:
        - `tokens`: The engine's lazy token stream.

        Yields:
        - Printable text fragments, in generation order.
        """

        source = iter(tokens)
        try:
            for token in source:
                yield from self.push(token)
                if self.state == FilterState.STOPPED:
                    return
            yield from self.finish()
        finally:
            close = getattr(source, "close", None)
            if close is not None:
                close()
