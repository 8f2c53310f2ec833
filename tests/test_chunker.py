# =============================================================================
# Unit Tests — Chunker Service
# =============================================================================
#
# Tests the recursive splitter and per-page chunking without external
# dependencies. No API keys, databases, or network calls needed.
# =============================================================================

import re

import pytest
from langchain_text_splitters import RecursiveCharacterTextSplitter

from app.services.chunker import RecursiveTextSplitter, chunk_pages, count_tokens

SENTENCE = "Deposits grew steadily this quarter. "


def _text(length: int) -> str:
    return (SENTENCE * (length // len(SENTENCE) + 1))[:length]


class TestRecursiveTextSplitter:
    """Tests for RecursiveTextSplitter.split_text()."""

    def test_empty_and_blank_text_produce_no_chunks(self):
        splitter = RecursiveTextSplitter(chunk_size=64, chunk_overlap=10)
        assert splitter.split_text("") == []
        assert splitter.split_text("   \n\n  ") == []

    def test_short_text_is_one_chunk(self):
        splitter = RecursiveTextSplitter(chunk_size=512, chunk_overlap=100)
        assert splitter.split_text("Net interest margin expanded.") == ["Net interest margin expanded."]

    def test_chunks_respect_character_size(self):
        splitter = RecursiveTextSplitter(chunk_size=200, chunk_overlap=40)
        chunks = splitter.split_text(_text(2000))
        assert len(chunks) > 1
        assert all(len(c) <= 200 for c in chunks)

    def test_consecutive_chunks_overlap(self):
        text = "".join(f"Sentence number {i} ends here. " for i in range(40))
        splitter = RecursiveTextSplitter(chunk_size=200, chunk_overlap=80)
        chunks = splitter.split_text(text)
        assert len(chunks) > 2
        # The last sentence of one window reappears in the next
        for first, second in zip(chunks, chunks[1:]):
            last = re.findall(r"Sentence number \d+ ends", first)[-1]
            assert last in second

    def test_prefers_paragraph_boundaries(self):
        para_a = "A" * 150
        para_b = "B" * 150
        splitter = RecursiveTextSplitter(chunk_size=200, chunk_overlap=0)
        chunks = splitter.split_text(f"{para_a}\n\n{para_b}")
        assert chunks == [para_a, para_b]

    def test_unbroken_text_falls_back_to_characters(self):
        splitter = RecursiveTextSplitter(chunk_size=100, chunk_overlap=0)
        chunks = splitter.split_text("x" * 350)
        assert [len(c) for c in chunks] == [100, 100, 100, 50]

    def test_token_unit_measures_with_tiktoken(self):
        splitter = RecursiveTextSplitter(chunk_size=32, chunk_overlap=4, length_unit="tokens")
        chunks = splitter.split_text(_text(3000))
        assert len(chunks) > 1
        assert all(count_tokens(c) <= 32 for c in chunks)

    def test_matches_langchain_recursive_splitter(self):
        text = "\n\n".join(_text(700) for _ in range(3))
        expected = RecursiveCharacterTextSplitter(
            chunk_size=256, chunk_overlap=50, length_function=len,
            separators=["\n\n", "\n", ". ", " ", ""],
        ).split_text(text)
        assert RecursiveTextSplitter(chunk_size=256, chunk_overlap=50).split_text(text) == expected

    @pytest.mark.parametrize(
        "size, overlap, unit",
        [(0, 0, "characters"), (100, 100, "characters"), (100, -1, "characters"), (100, 10, "words")],
    )
    def test_invalid_configuration_raises(self, size, overlap, unit):
        with pytest.raises(ValueError):
            RecursiveTextSplitter(chunk_size=size, chunk_overlap=overlap, length_unit=unit)


class TestChunkPages:
    """Tests for chunk_pages()."""

    def test_three_page_1800_char_document(self):
        pages = [(1, _text(900)), (2, _text(500)), (3, _text(400))]
        assert sum(len(t) for _, t in pages) == 1800

        chunks = chunk_pages(pages, chunk_size=512, chunk_overlap=100, length_unit="characters")

        assert 4 <= len(chunks) <= 5
        assert [c.chunk_index for c in chunks] == list(range(len(chunks)))
        assert {c.page_number for c in chunks} == {1, 2, 3}

    def test_every_chunk_has_single_page_number(self):
        chunks = chunk_pages(
            [(1, "Page one content."), (2, "Page two content.")],
            chunk_size=512, chunk_overlap=0, length_unit="characters",
        )
        assert [(c.page_number, c.content) for c in chunks] == [
            (1, "Page one content."),
            (2, "Page two content."),
        ]

    def test_token_count_and_char_length_recorded(self):
        chunks = chunk_pages([(1, "Revenue grew by 15% year over year.")], chunk_size=512, chunk_overlap=0)
        assert chunks[0].token_count == count_tokens(chunks[0].content)
        assert chunks[0].metadata["char_length"] == len(chunks[0].content)

    def test_blank_pages_are_skipped(self):
        chunks = chunk_pages([(1, ""), (2, "Some text."), (3, "  ")], chunk_size=512, chunk_overlap=0)
        assert len(chunks) == 1
        assert chunks[0].page_number == 2
        assert chunks[0].chunk_index == 0
