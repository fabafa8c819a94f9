# Character source with a bounded pushback buffer, used by the markup
# parser to look ahead in its input.
#
# Copyright (c) 2020-2022 Tatu Ylonen.  See file LICENSE and https://ylonen.org

import io
from typing import List, Optional, TextIO, Union

from .common import (PUSHBACK_BUFFER_SIZE, PushbackOverflowError,
                     WikiMarkupError)


class PushbackSource:
    """Reads characters one at a time from a string or a text stream.
    Characters that have been read can be pushed back; they are returned
    again, most recently pushed first, before anything further is read
    from the stream."""
    __slots__ = (
        "stream",	 # Underlying text stream
        "pushback",	 # Pushed back characters, last one is read first
        "capacity",	 # Maximum number of pushed back characters
        "pos",		 # Number of characters consumed so far
    )

    def __init__(self, stream: Union[str, TextIO],
                 capacity: int = PUSHBACK_BUFFER_SIZE) -> None:
        assert isinstance(capacity, int) and capacity > 0
        if isinstance(stream, str):
            stream = io.StringIO(stream)
        self.stream = stream
        self.pushback: List[str] = []
        self.capacity = capacity
        self.pos = 0

    def next_char(self) -> Optional[str]:
        """Returns the next character, or None at end of input."""
        if self.pushback:
            self.pos += 1
            return self.pushback.pop()
        try:
            ch = self.stream.read(1)
        except (OSError, UnicodeDecodeError) as e:
            raise WikiMarkupError("Error reading markup at position {}: {}"
                                  .format(self.pos, e)) from e
        if not ch:
            return None
        self.pos += 1
        return ch

    def push_back(self, ch: Optional[str]) -> None:
        """Returns ``ch`` to the input.  Pushing back None (end of input)
        does nothing."""
        if ch is None:
            return
        assert isinstance(ch, str) and len(ch) == 1
        if len(self.pushback) >= self.capacity:
            raise PushbackOverflowError("Pushback buffer overflow "
                                        "({} characters)"
                                        .format(self.capacity))
        self.pushback.append(ch)
        self.pos -= 1

    def push_back_str(self, text: str) -> None:
        """Returns ``text`` to the input so that it is read again in its
        original order."""
        for ch in reversed(text):
            self.push_back(ch)

    def read_line(self) -> str:
        """Reads up to and including the next newline, or to the end of
        input."""
        parts = []
        while True:
            ch = self.next_char()
            if ch is None:
                break
            parts.append(ch)
            if ch == "\n":
                break
        return "".join(parts)

    def peek_line(self) -> str:
        """Returns the rest of the current line without consuming it.  The
        terminating newline is not included.  Raises PushbackOverflowError
        if the line does not fit in the pushback buffer."""
        line = self.read_line()
        self.push_back_str(line)
        return line.rstrip("\r\n") if line.endswith("\n") else line
