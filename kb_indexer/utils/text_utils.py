import re
from typing import List, Tuple
from urllib.parse import urljoin, urlparse
from bs4 import BeautifulSoup

STRIPPED_TAGS = ['script', 'style', 'noscript', 'iframe']
MAIN_CONTENT_SELECTORS = ['main', 'article', '[role="main"]']

HEADING_PATTERN = re.compile(r'^#{1,6}\s+(.+)$')
PARAGRAPH_SPLIT_PATTERN = re.compile(r'\n\n+')
SENTENCE_SPLIT_PATTERN = re.compile(r'[.!?]+\s+')

STOP_WORDS = frozenset({
    'the', 'is', 'at', 'which', 'on', 'and', 'or', 'to', 'for', 'of', 'in', 'a', 'an',
    'with', 'by', 'from', 'as', 'this', 'that', 'it', 'be', 'are', 'was', 'were',
    'will', 'would', 'should', 'could', 'may', 'might', 'can', 'have', 'has', 'had',
})
MAX_KEYWORDS = 20


def normalize_whitespace(text: str) -> str:
    """Collapses every run of whitespace to a single space."""
    return re.sub(r'\s+', ' ', text).strip()


def extract_main_content(html_content: str) -> Tuple[str, str]:
    """
    Extracts (title, text) from an HTML page.

    Scripts, styles, noscript and iframe elements are removed. The title is the
    document <title>, falling back to the first <h1>. The text comes from the
    first semantic main-content container, or the whole body when none exists.
    Whitespace is collapsed but the text is not truncated.
    """
    if not html_content:
        return "", ""

    soup = BeautifulSoup(html_content, 'html.parser')

    for element in soup(STRIPPED_TAGS):
        element.decompose()

    title = soup.title.get_text(strip=True) if soup.title else ""
    if not title:
        first_h1 = soup.find('h1')
        title = first_h1.get_text(" ", strip=True) if first_h1 else ""

    main = soup.select_one(", ".join(MAIN_CONTENT_SELECTORS))

    if main is not None:
        text = main.get_text(" ")
    elif soup.body is not None:
        text = soup.body.get_text(" ")
    else:
        text = soup.get_text(" ")

    return normalize_whitespace(title), normalize_whitespace(text)


def extract_links(html_content: str, base_url: str) -> List[str]:
    """Absolute http(s) links of a page, fragments dropped, in document order without duplicates."""
    if not html_content:
        return []
    soup = BeautifulSoup(html_content, 'html.parser')
    links = []
    seen = set()
    for a_tag in soup.find_all('a', href=True):
        try:
            full_url = urljoin(base_url, a_tag['href'].strip())
            parsed_url = urlparse(full_url)
        except ValueError:
            continue
        if parsed_url.scheme not in ('http', 'https'):
            continue
        clean_url = parsed_url._replace(fragment='').geturl()
        if clean_url not in seen:
            seen.add(clean_url)
            links.append(clean_url)
    return links


def split_paragraphs(text: str) -> List[str]:
    """Splits text on blank lines, dropping empty paragraphs."""
    return [p.strip() for p in PARAGRAPH_SPLIT_PATTERN.split(text) if p.strip()]


def split_sentences(paragraph: str) -> List[str]:
    """Splits on sentence terminators followed by whitespace. Each piece is re-terminated with a period."""
    return [s.strip() + '.' for s in SENTENCE_SPLIT_PATTERN.split(paragraph) if s.strip()]


def split_fixed_stride(text: str, size: int, overlap: int) -> List[str]:
    """Character split advancing ``size - overlap`` per window."""
    step = size - overlap
    pieces = []
    for start in range(0, len(text), step):
        piece = text[start:start + size].strip()
        if piece:
            pieces.append(piece)
    return pieces


def extract_headings(text: str) -> List[str]:
    """Returns markdown-style headings (``# Heading``) found at the start of any line."""
    headings = []
    for line in text.split('\n'):
        match = HEADING_PATTERN.match(line)
        if match:
            headings.append(match.group(1).strip())
    return headings


def extract_keywords(text: str) -> List[str]:
    """
    Extracts auxiliary lexical keywords from text.

    Collects capitalized phrases, all-caps acronyms, quoted terms, hyphenated
    compounds and long words that appear more than once, in that order,
    lower-cased and de-duplicated. At most 20 keywords are returned.
    """
    keywords = {}

    for match in re.findall(r'\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b', text):
        clean = match.lower().strip()
        if len(clean) > 2 and clean not in STOP_WORDS:
            keywords[clean] = None

    for match in re.findall(r'\b[A-Z]{2,}\b', text):
        keywords[match.lower()] = None

    for match in re.findall(r'"([^"]+)"', text):
        clean = match.lower().strip()
        if len(clean) > 2 and clean not in STOP_WORDS:
            keywords[clean] = None

    for match in re.findall(r'\b[a-z]+-[a-z]+(?:-[a-z]+)*\b', text, flags=re.IGNORECASE):
        clean = match.lower()
        if len(clean) > 3:
            keywords[clean] = None

    word_freq = {}
    for match in re.findall(r'\b[a-z]{5,}\b', text, flags=re.IGNORECASE):
        clean = match.lower()
        if clean not in STOP_WORDS:
            word_freq[clean] = word_freq.get(clean, 0) + 1
    for word, count in word_freq.items():
        if count >= 2:
            keywords[word] = None

    return list(keywords)[:MAX_KEYWORDS]


def content_size_mb(content: str) -> float:
    """UTF-8 byte size of ``content`` in megabytes."""
    return len(content.encode('utf-8')) / (1024 * 1024)
