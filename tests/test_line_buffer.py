from __future__ import annotations

from gridbridge.engine.line_buffer import LineBuffer


def test_partial_lines_are_held_across_chunks() -> None:
    buf = LineBuffer()
    assert buf.feed(b'{"type": "ass') == []
    assert buf.pending_bytes == 13
    assert buf.feed(b'istant"}\n{"type"') == ['{"type": "assistant"}']
    assert buf.feed(b': "result"}\r\n') == ['{"type": "result"}']
    assert buf.pending_bytes == 0


def test_multibyte_sequence_split_across_chunks() -> None:
    buf = LineBuffer()
    encoded = "héllo\n".encode("utf-8")
    assert buf.feed(encoded[:2]) == []
    assert buf.feed(encoded[2:]) == ["héllo"]


def test_flush_returns_unterminated_tail() -> None:
    buf = LineBuffer()
    buf.feed(b"a\nb\nlast")
    assert buf.flush() == ["last"]
    assert buf.flush() == []
    assert buf.feed(b"") == []
