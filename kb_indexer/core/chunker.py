import logging
from collections import deque
from typing import List, Optional

from kb_indexer.core.change_detector import content_hash
from kb_indexer.models.document import ContentChunk, ChunkMetadata
from kb_indexer.utils.text_utils import (
    split_paragraphs,
    split_sentences,
    split_fixed_stride,
    extract_headings,
    extract_keywords,
)

logger = logging.getLogger(__name__)

PARAGRAPH_SEPARATOR = "\n\n"

FORM_INDICATORS = (
    "confirm password",
    "i accept the terms of use",
    "privacy policy",
    "required fields",
    "submit",
)
FORM_INDICATOR_THRESHOLD = 3
FORM_CHUNK_MAX_LENGTH = 2000
MIN_UNIQUE_WORD_RATIO = 0.3
REPETITION_MIN_WORDS = 10


def is_low_quality_chunk(text: str) -> bool:
    """
    Detects form boilerplate and highly repetitive text.
    """
    lower_text = text.lower()

    indicator_count = sum(1 for indicator in FORM_INDICATORS if indicator in lower_text)
    if indicator_count >= FORM_INDICATOR_THRESHOLD and len(text) < FORM_CHUNK_MAX_LENGTH:
        return True

    words = text.split()
    if len(words) > REPETITION_MIN_WORDS:
        unique_ratio = len({w.lower() for w in words}) / len(words)
        if unique_ratio < MIN_UNIQUE_WORD_RATIO:
            return True

    return False


class Chunker:
    """
    Splits source text into overlapping, size-bounded chunks for embedding.

    Paragraphs are accumulated greedily up to ``max_chunk_size`` characters.
    Each new chunk starts with the last ``overlap`` characters of the previous
    one, so every sealed chunk is between ``min_chunk_size`` and
    ``max_chunk_size + overlap`` characters long. The final chunk of a source
    may fall outside those bounds when an undersized tail is merged into it,
    or when the source is too short to reach ``min_chunk_size`` at all.
    """
    def __init__(self, max_chunk_size: int = 800, min_chunk_size: int = 200, overlap: int = 100):
        if overlap < 0 or overlap >= max_chunk_size:
            raise ValueError("overlap must be non-negative and smaller than max_chunk_size")
        if min_chunk_size > max_chunk_size:
            raise ValueError("min_chunk_size cannot exceed max_chunk_size")
        self.max_chunk_size = max_chunk_size
        self.min_chunk_size = min_chunk_size
        self.overlap = overlap

    def chunk(self, text: str, title: Optional[str] = None) -> List[ContentChunk]:
        """
        Chunks ``text`` and returns quality-filtered chunks indexed ``0..k-1``.
        Empty input yields an empty list.
        """
        if not text or not text.strip():
            return []

        pieces = self._split_oversized(split_paragraphs(text))
        raw_chunks = self._accumulate(pieces)

        kept = [c for c in raw_chunks if not is_low_quality_chunk(c)]
        if len(kept) < len(raw_chunks):
            logger.info(f"Dropped {len(raw_chunks) - len(kept)} low-quality chunks out of {len(raw_chunks)}.")

        return [self._create_chunk(chunk_text, index, title) for index, chunk_text in enumerate(kept)]

    def _split_oversized(self, paragraphs: List[str]) -> List[str]:
        """Re-splits paragraphs longer than max_chunk_size, by sentence first and by character stride otherwise."""
        pieces: List[str] = []
        for paragraph in paragraphs:
            if len(paragraph) <= self.max_chunk_size:
                pieces.append(paragraph)
                continue

            sentences = split_sentences(paragraph)
            if len(sentences) <= 1:
                pieces.extend(split_fixed_stride(paragraph, self.max_chunk_size, self.overlap))
                continue

            for sentence in sentences:
                if len(sentence) > self.max_chunk_size:
                    pieces.extend(split_fixed_stride(sentence, self.max_chunk_size, self.overlap))
                else:
                    pieces.append(sentence)
        return pieces

    def _accumulate(self, pieces: List[str]) -> List[str]:
        chunks: List[str] = []
        queue = deque(pieces)
        current = ""

        while queue:
            piece = queue.popleft()

            if not current:
                current = piece
                continue

            if len(current) + len(PARAGRAPH_SEPARATOR) + len(piece) <= self.max_chunk_size:
                current += PARAGRAPH_SEPARATOR + piece
                continue

            if len(current) >= self.min_chunk_size:
                chunks.append(current)
                current = self._overlap_seed(current, piece) + piece
                continue

            # Buffer is undersized: append anyway, but only as much as keeps the chunk within bounds.
            if len(current) + len(PARAGRAPH_SEPARATOR) + len(piece) <= self.max_chunk_size + self.overlap:
                current += PARAGRAPH_SEPARATOR + piece
                continue

            room = self.max_chunk_size - len(current) - len(PARAGRAPH_SEPARATOR)
            if room <= 0:
                chunks.append(current)
                current = piece
                continue
            split_point = piece.rfind(" ", 0, room)
            if split_point == -1 or split_point < room * 0.8:
                split_point = room
            head, tail = piece[:split_point].rstrip(), piece[split_point:].strip()
            current += PARAGRAPH_SEPARATOR + head
            if tail:
                queue.appendleft(tail)

        if len(current) >= self.min_chunk_size:
            chunks.append(current)
        elif chunks:
            chunks[-1] += PARAGRAPH_SEPARATOR + current
        elif current:
            chunks.append(current)

        return chunks

    def _overlap_seed(self, sealed: str, next_piece: str) -> str:
        """Tail of the sealed chunk that starts the next buffer, shortened if the next piece is long."""
        if self.overlap == 0:
            return ""
        budget = self.max_chunk_size + self.overlap - len(PARAGRAPH_SEPARATOR) - len(next_piece)
        seed_length = min(self.overlap, budget)
        if seed_length <= 0:
            return ""
        return sealed[-seed_length:] + PARAGRAPH_SEPARATOR

    def _create_chunk(self, text: str, index: int, title: Optional[str]) -> ContentChunk:
        return ContentChunk(
            text=text,
            index=index,
            content_hash=content_hash(text),
            metadata=ChunkMetadata(
                title=title,
                headings=extract_headings(text),
                keywords=extract_keywords(text),
            ),
        )
