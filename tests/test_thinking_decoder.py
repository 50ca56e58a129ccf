"""
Test the streaming thinking-block decoder and the one-shot strip
"""
import unittest
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from genai.models.thinking import DecoderState, ThinkingStreamDecoder, strip_thinking


def decode(deltas):
    decoder = ThinkingStreamDecoder()
    emitted = [out for out in (decoder.feed(d) for d in deltas) if out]
    if tail := decoder.flush():
        emitted.append(tail)
    return emitted, decoder


class TestThinkingStreamDecoder(unittest.TestCase):
    """Delta-by-delta decoding"""

    def test_think_block_is_skipped(self):
        emitted, decoder = decode(["<think>", "reasoning", "</think>", "Hello", ", world"])
        self.assertEqual(''.join(emitted), "Hello, world")
        self.assertEqual(emitted, ["Hello", ", world"])
        self.assertEqual(decoder.state, DecoderState.STREAMING)

    def test_plain_stream_passes_through(self):
        emitted, _ = decode(["The ", "cat ", "sat."])
        self.assertEqual(emitted, ["The ", "cat ", "sat."])

    def test_leading_whitespace_waits_in_initial(self):
        decoder = ThinkingStreamDecoder()
        self.assertIsNone(decoder.feed("\n  "))
        self.assertEqual(decoder.state, DecoderState.INITIAL)
        self.assertEqual(decoder.feed("Hi"), "Hi")
        self.assertEqual(decoder.state, DecoderState.STREAMING)

    def test_marker_split_across_deltas(self):
        emitted, _ = decode(["<th", "ink>plan", "</thi", "nk>\n\nAnswer", " here"])
        self.assertEqual(''.join(emitted), "Answer here")

    def test_remainder_after_close_is_left_trimmed(self):
        decoder = ThinkingStreamDecoder()
        decoder.feed("<think>x")
        self.assertEqual(decoder.feed("</think>  \n Visible"), "Visible")

    def test_streaming_emits_later_deltas_verbatim(self):
        decoder = ThinkingStreamDecoder()
        decoder.feed("Start")
        self.assertEqual(decoder.feed("  <think>not special</think>"), "  <think>not special</think>")

    def test_unterminated_think_emits_nothing(self):
        emitted, decoder = decode(["<think>", "still thinking"])
        self.assertEqual(emitted, [])
        self.assertEqual(decoder.state, DecoderState.SKIPPING_THINK)

    def test_short_answer_flushed_at_end(self):
        emitted, _ = decode(["<"])
        self.assertEqual(emitted, ["<"])


class TestStripThinking(unittest.TestCase):
    """Whole-body stripping for single-shot responses"""

    def test_strip(self):
        self.assertEqual(strip_thinking("<think>hmm</think>\n42"), "42")

    def test_no_think_block(self):
        self.assertEqual(strip_thinking("  Yes.  "), "Yes.")

    def test_empty(self):
        self.assertEqual(strip_thinking(""), "")
        self.assertEqual(strip_thinking(None), "")


if __name__ == '__main__':
    unittest.main()
