from __future__ import annotations

import pytest

from codeindex.indexing.chunker import LineChunker, decode_source, looks_binary


def _lines(count: int) -> str:
    return "".join(f"line {number}\n" for number in range(1, count + 1))


def test_chunker_splits_into_windows_with_line_ranges() -> None:
    chunker = LineChunker(chunk_lines=4)

    chunks = chunker.chunk_text("src/app.py", _lines(10))

    assert [chunk.index for chunk in chunks] == [0, 1, 2]
    assert [(c.start_line, c.end_line) for c in chunks] == [
        (1, 4),
        (5, 8),
        (9, 10),
    ]
    assert chunks[0].text == "line 1\nline 2\nline 3\nline 4\n"
    assert all(chunk.source_path == "src/app.py" for chunk in chunks)


def test_chunker_overlap_repeats_trailing_lines() -> None:
    chunker = LineChunker(chunk_lines=4, overlap=2)

    chunks = chunker.chunk_text("a.py", _lines(8))

    assert [(c.start_line, c.end_line) for c in chunks] == [
        (1, 4),
        (3, 6),
        (5, 8),
    ]


def test_chunker_is_deterministic() -> None:
    chunker = LineChunker(chunk_lines=3)
    text = _lines(7)

    first = chunker.chunk_text("a.py", text)
    second = chunker.chunk_text("a.py", text)

    assert [c.point_id for c in first] == [c.point_id for c in second]
    assert [c.content_hash for c in first] == [c.content_hash for c in second]


def test_whitespace_windows_do_not_consume_an_index() -> None:
    chunker = LineChunker(chunk_lines=2)

    chunks = chunker.chunk_text("a.py", "one\ntwo\n\n   \nthree\n")

    assert [chunk.index for chunk in chunks] == [0, 1]
    assert chunks[1].text == "three\n"


def test_empty_and_binary_inputs_yield_nothing() -> None:
    chunker = LineChunker()

    assert chunker.chunk_text("a.py", "") == ()
    assert chunker.chunk_bytes("img.png", b"\x89PNG\x00\x00data") == ()
    assert looks_binary(b"ab\x00cd")
    assert not looks_binary(b"plain text")


def test_decode_source_replaces_invalid_bytes_and_bom() -> None:
    assert decode_source(b"\xef\xbb\xbfok") == "ok"
    assert decode_source(b"bad \xff byte") == "bad \ufffd byte"


def test_version_tracks_settings() -> None:
    assert LineChunker(chunk_lines=10).version != LineChunker().version


@pytest.mark.parametrize(
    ("lines", "overlap"),
    [(0, 0), (5, 5), (5, -1)],
)
def test_chunker_rejects_invalid_windows(lines: int, overlap: int) -> None:
    with pytest.raises(ValueError):
        LineChunker(chunk_lines=lines, overlap=overlap)
