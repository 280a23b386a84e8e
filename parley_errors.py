#!/usr/bin/env python3
"""
Copyright 2025 7th software Ltd.

Licensed under the Apache License, Version 2.0 (the "License"); you may not use this file except in compliance with the
License. You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software distributed under the License is distributed on an
"AS IS" BASIS, WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied. See the License for the specific
language governing permissions and limitations under the License.

Exception types raised by PARLEY. Every error a chat turn can hit derives from `ParleyError`, so the session loop can
report it and carry on with the next turn.
"""

from __future__ import annotations


class ParleyError(Exception):
    """Base class for all PARLEY errors."""


class TemplateError(ParleyError):
    """The conversation history does not have the shape a prompt template expects."""


class StopResolutionError(ParleyError):
    """
    A required special token could not be resolved by any strategy.

    Raised once, at session start-up. Without the end-of-turn and header markers the stream filter cannot know where
    an assistant turn ends, so no session is started.
    """


class DecodeError(ParleyError):
    """A generated token identifier could not be converted to text."""


class EngineError(ParleyError):
    """The generation engine failed, or refused the request, part way through a turn."""
