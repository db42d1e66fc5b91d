"""Strip the "[Speaker Name]:" label models sometimes echo from the history format."""

import re

# A bracket that has not closed with "]:" by this many characters is treated as content.
PREFIX_SCAN_LIMIT = 150

_LABEL_RE = re.compile(r"^\[.*?\]:\s*")


def strip_speaker_label(text: str) -> str:
    """Remove a leading bracketed label from finished text and trim it."""
    return _LABEL_RE.sub("", text, count=1).strip()


class PrefixStripper:
    """Streaming filter that holds back only the first few deltas of a turn.

    Text that does not open with ``[`` is released immediately. Otherwise
    deltas are buffered until either ``]:`` shows up (the label and the
    whitespace after it are dropped) or the buffer reaches
    ``PREFIX_SCAN_LIMIT`` characters (released unchanged). After that every
    delta passes through verbatim.
    """

    def __init__(self, scan_limit: int = PREFIX_SCAN_LIMIT) -> None:
        self._scan_limit = scan_limit
        self._buffer = ""
        self._passthrough = False
        self._trim_leading = False

    @property
    def buffering(self) -> bool:
        return not self._passthrough and bool(self._buffer)

    def feed(self, delta: str) -> str:
        """Consume one raw delta; return the cleaned text ready to emit (may be empty)."""
        if self._passthrough:
            if self._trim_leading:
                delta = delta.lstrip()
                if delta:
                    self._trim_leading = False
            return delta

        self._buffer += delta
        if not self._buffer.startswith("["):
            return self._release(self._buffer)

        closing = self._buffer.find("]:")
        if closing != -1:
            remaining = self._buffer[closing + 2:].lstrip()
            self._trim_leading = not remaining
            return self._release(remaining)

        if len(self._buffer) >= self._scan_limit:
            return self._release(self._buffer)
        return ""

    def flush(self) -> str:
        """Return whatever is still held back once the stream has ended."""
        if self._passthrough:
            return ""
        return self._release(self._buffer)

    def _release(self, text: str) -> str:
        self._passthrough = True
        self._buffer = ""
        return text
