from __future__ import annotations

from agentdesk.engine.framing import LineFramer


def test_splits_complete_lines() -> None:
    framer = LineFramer()
    assert framer.feed(b'{"a":1}\n{"b":2}\n') == ['{"a":1}', '{"b":2}']
    assert framer.pending == ""


def test_partial_line_is_buffered_until_terminated() -> None:
    framer = LineFramer()
    assert framer.feed(b'{"type":"sys') == []
    assert framer.feed(b'tem"}\n{"ty') == ['{"type":"system"}']
    assert framer.pending == '{"ty'
    assert framer.feed(b'pe":"x"}\n') == ['{"type":"x"}']


def test_concatenation_of_outputs_equals_input_prefix() -> None:
    data = b"one\ntwo\nthree\nfour"
    for cut in range(len(data) + 1):
        framer = LineFramer()
        lines = framer.feed(data[:cut]) + framer.feed(data[cut:])
        assert lines == ["one", "two", "three"]
        assert framer.pending == "four"


def test_multibyte_character_split_across_chunks() -> None:
    encoded = "héllo ✓\n".encode("utf-8")
    split = encoded.index("✓".encode("utf-8")) + 1
    framer = LineFramer()
    assert framer.feed(encoded[:split]) == []
    assert framer.feed(encoded[split:]) == ["héllo ✓"]


def test_crlf_is_stripped() -> None:
    framer = LineFramer()
    assert framer.feed(b"a\r\nb\r\n") == ["a", "b"]


def test_flush_returns_unterminated_tail() -> None:
    framer = LineFramer()
    framer.feed(b'done\n{"type":"result"}')
    assert framer.flush() == ['{"type":"result"}']
    assert framer.flush() == []


def test_accepts_text_chunks() -> None:
    framer = LineFramer()
    assert framer.feed("x\ny") == ["x"]
    assert framer.flush() == ["y"]
