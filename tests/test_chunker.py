import hashlib
import itertools
import pytest
from kb_indexer.core.chunker import Chunker, is_low_quality_chunk

def make_text(sentences_per_paragraph, words_per_sentence=8):
    """Builds paragraphs of sentences made of distinct words, so no chunk looks repetitive."""
    counter = itertools.count()
    paragraphs = []
    for n_sentences in sentences_per_paragraph:
        sentences = []
        for s in range(n_sentences):
            words = [f"word{next(counter)}" for _ in range(words_per_sentence + s % 4)]
            sentences.append(" ".join(words).capitalize() + ".")
        paragraphs.append(" ".join(sentences))
    return "\n\n".join(paragraphs)

@pytest.fixture
def chunker():
    return Chunker(max_chunk_size=800, min_chunk_size=200, overlap=100)

def test_empty_text_yields_no_chunks(chunker):
    assert chunker.chunk("") == []
    assert chunker.chunk("   \n\n  \n") == []

def test_short_text_is_a_single_chunk(chunker):
    """A lone paragraph under the minimum size is still kept."""
    chunks = chunker.chunk("Our office is open Monday to Friday.", title="Hours")

    assert len(chunks) == 1
    assert chunks[0].index == 0
    assert chunks[0].text == "Our office is open Monday to Friday."
    assert chunks[0].metadata.title == "Hours"
    assert chunks[0].content_hash == hashlib.md5(chunks[0].text.encode("utf-8")).hexdigest()

def test_chunks_respect_size_bounds(chunker):
    """Every chunk but the last lies within [min, max + overlap]."""
    unpunctuated = " ".join(f"token{n}" for n in range(300))
    text = "\n\n".join([
        make_text([3, 5, 2, 6, 4, 1, 7]),
        make_text([30]), # one paragraph well over max_chunk_size, split by sentence
        unpunctuated, # no sentence boundaries, split by character stride
        make_text([2, 3, 5]),
    ])

    chunks = chunker.chunk(text)

    assert len(chunks) > 3
    for chunk in chunks[:-1]:
        assert 200 <= len(chunk.text) <= 800 + 100
    # The last chunk may have absorbed an undersized tail.
    assert len(chunks[-1].text) <= 800 + 100 + 2 + 200

def test_consecutive_chunks_overlap(chunker):
    chunks = chunker.chunk(make_text([3, 5, 2, 6, 4, 1, 7, 3, 3, 5]))

    assert len(chunks) > 2
    for previous, current in zip(chunks, chunks[1:]):
        assert current.text.startswith(previous.text[-100:])

def test_indices_are_contiguous(chunker):
    chunks = chunker.chunk(make_text([4] * 20))

    assert [c.index for c in chunks] == list(range(len(chunks)))

def test_undersized_tail_is_merged_into_previous_chunk():
    chunker = Chunker(max_chunk_size=200, min_chunk_size=100, overlap=0)
    first = "A" * 150
    second = "B" * 190
    tail = "C" * 20

    chunks = chunker.chunk(f"{first}\n\n{second}\n\n{tail}")

    assert [c.text for c in chunks] == [first, f"{second}\n\n{tail}"]
    assert chunks[-1].content_hash == hashlib.md5(chunks[-1].text.encode("utf-8")).hexdigest()

def test_fingerprint_is_deterministic(chunker):
    text = make_text([3, 4, 5, 6])

    first = chunker.chunk(text)
    second = chunker.chunk(text)

    assert [c.content_hash for c in first] == [c.content_hash for c in second]

def test_headings_and_keywords_metadata(chunker):
    text = (
        "# Installation Guide\n"
        "Install the \"Acme Widget\" with the setup-wizard on any Linux host.\n"
        "## Requirements\n"
        "The widget needs Python and a working SMTP relay. The widget reports status."
    )

    chunk = chunker.chunk(text)[0]

    assert chunk.metadata.headings == ["Installation Guide", "Requirements"]
    assert "acme widget" in chunk.metadata.keywords
    assert "smtp" in chunk.metadata.keywords
    assert "setup-wizard" in chunk.metadata.keywords
    assert "widget" in chunk.metadata.keywords
    assert len(chunk.metadata.keywords) <= 20

@pytest.mark.parametrize("kwargs", [
    {"max_chunk_size": 100, "min_chunk_size": 50, "overlap": 100},
    {"max_chunk_size": 100, "min_chunk_size": 50, "overlap": 150},
    {"max_chunk_size": 100, "min_chunk_size": 150, "overlap": 10},
    {"max_chunk_size": 100, "min_chunk_size": 50, "overlap": -1},
])
def test_invalid_configuration_is_rejected(kwargs):
    with pytest.raises(ValueError):
        Chunker(**kwargs)

def test_form_boilerplate_is_low_quality():
    text = (
        "Create your account. Confirm password. I accept the terms of use. "
        "See our privacy policy. Required fields are marked. Submit."
    ) + " Filler sentence with plenty of distinct words included here." * 25

    assert len(text) < 2000
    assert is_low_quality_chunk(text)

def test_long_text_with_form_phrases_is_kept():
    text = "Confirm password, privacy policy and submit buttons are described below. " + make_text([40])

    assert len(text) >= 2000
    assert not is_low_quality_chunk(text)

def test_repetitive_text_is_low_quality():
    assert is_low_quality_chunk("buy now " * 30)
    assert not is_low_quality_chunk("buy now")  # too short to judge
    assert not is_low_quality_chunk(make_text([3]))

def test_low_quality_chunks_are_dropped_and_reindexed():
    chunker = Chunker(max_chunk_size=200, min_chunk_size=50, overlap=20)
    intro = (
        "Our support team answers questions about billing, onboarding and integrations. "
        "Reach them through the dashboard or by email during business hours."
    )
    boilerplate = (
        "Please submit this form. Confirm password in the second box. "
        "Read our privacy policy. Required fields are marked."
    )
    outro = (
        "Enterprise customers get a dedicated account manager and quarterly reviews. "
        "Ask sales about volume discounts for larger teams and agencies."
    )

    chunks = chunker.chunk("\n\n".join([intro, boilerplate, outro]))

    assert len(chunks) == 2
    assert [c.index for c in chunks] == [0, 1]
    assert chunks[0].text == intro
    assert outro in chunks[1].text
    assert all("Confirm password" not in c.text for c in chunks)
