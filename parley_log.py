#!/usr/bin/env python3
"""
Copyright 2025 7th software Ltd.

Licensed under the Apache License, Version 2.0 (the "License"); you may not use this file except in compliance with the
License. You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software distributed under the License is distributed on an
"AS IS" BASIS, WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied. See the License for the specific
language governing permissions and limitations under the License.

This module provides the console logging and verbosity control used throughout PARLEY. It defines four functions:
`echo`, `debug`, `error`, and `set_verbosity`.

Verbosity is an integer level held in the module global `VERBOSITY`:

* 0 - quiet. Only errors are written (to stderr).
* 1 - progress. `echo` messages are written to stdout.
* 2 - trace. `debug` messages are also written, to stderr, so that token-level tracing never interleaves with the
      assistant reply streamed on stdout.
"""

from __future__ import annotations

import sys


VERBOSITY = 0


def echo(*args, **kwargs):
    """
    Write progress messages to stdout if the verbosity level is at least 1.

    Parameters:
    - `*args`: The message(s) to be printed.
    - `**kwargs`: Additional keyword arguments to pass to the `print` function.

    Notes:
    The `flush` argument is always set to `True` so that progress appears before a long model load or generation.
    """

    if VERBOSITY >= 1:
        kwargs["flush"] = True
        print(*args, **kwargs)


def debug(*args):
    """
    Write a trace message to stderr if the verbosity level is at least 2.

    Parameters:
    - `*args`: Values joined with spaces into a single line.
    """

    if VERBOSITY >= 2:
        sys.stderr.write(" ".join(str(a) for a in args) + "\n")
        sys.stderr.flush()


def error(*args, **kwargs):
    """
    Writes an error message to stderr.

    Parameters:
    - `*args`: Variable number of arguments to be joined into a single error message string.
    - `**kwargs`: Not used.

    Notes:
    This function always writes to stderr, regardless of the current verbosity level.
    """

    msg = " ".join(str(a) for a in args)
    sys.stderr.write(msg + "\n")
    sys.stderr.flush()


def set_verbosity(level: int):
    """
    Set the program verbosity level.

    Parameters:
    - `level`: 0 for quiet, 1 for progress messages, 2 for progress plus token tracing. Booleans are accepted and
      map to 0 and 1.
    """

    global VERBOSITY

    VERBOSITY = int(level)
