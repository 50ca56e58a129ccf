"""
Separation of "thinking" markup from the visible answer.

Reasoning models emit a leading ``<think>...</think>`` block in the same token
stream as the answer. ``ThinkingStreamDecoder`` removes it incrementally for
streamed responses; ``strip_thinking`` runs the same decoder over a complete
response body.
"""
from enum import Enum
from typing import Optional

THINK_OPEN = '<think>'
THINK_CLOSE = '</think>'


class DecoderState(str, Enum):
    INITIAL = 'initial'
    SKIPPING_THINK = 'skipping_think'
    STREAMING = 'streaming'


class ThinkingStreamDecoder:
    """Incremental state machine over token deltas.

    ``feed`` returns the text to emit for a delta, or ``None`` when nothing
    is visible yet. Once ``STREAMING`` is reached every delta passes through
    unchanged, except that leading whitespace of the answer is dropped.
    """

    def __init__(self):
        self.state = DecoderState.INITIAL
        self._buffer = ''
        self._emitted = False

    def feed(self, delta: str) -> Optional[str]:
        if not delta:
            return None

        if self.state == DecoderState.STREAMING:
            return self._emit(delta)

        self._buffer += delta

        if self.state == DecoderState.INITIAL:
            head = self._buffer.lstrip()
            if not head:
                return None
            if head.startswith(THINK_OPEN):
                self.state = DecoderState.SKIPPING_THINK
            elif THINK_OPEN.startswith(head):
                # Partial opening marker, wait for more tokens
                return None
            else:
                self.state = DecoderState.STREAMING
                pending, self._buffer = self._buffer, ''
                return self._emit(pending)

        # SKIPPING_THINK
        end = self._buffer.find(THINK_CLOSE)
        if end == -1:
            return None
        self.state = DecoderState.STREAMING
        remainder = self._buffer[end + len(THINK_CLOSE):]
        self._buffer = ''
        return self._emit(remainder)

    def flush(self) -> str:
        """Return whatever is still buffered when the stream ends"""
        pending, self._buffer = self._buffer, ''
        if self.state == DecoderState.INITIAL:
            self.state = DecoderState.STREAMING
            return self._emit(pending) or ''
        # An unterminated think block has no visible answer
        return ''

    def _emit(self, text: str) -> Optional[str]:
        if not self._emitted:
            text = text.lstrip()
            if not text:
                return None
            self._emitted = True
        return text


def strip_thinking(content: str) -> str:
    """Remove a leading thinking block from a complete response and trim it"""
    decoder = ThinkingStreamDecoder()
    visible = (decoder.feed(content or '') or '') + decoder.flush()
    return visible.strip()
