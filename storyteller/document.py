"""Split plain text into narratable sentences with a page index."""

import re

from storyteller.models import Document

PAGE_BREAK = "\f"

# Sentence = run up to terminal punctuation (plus an optional closing quote), or the trailing fragment
_SENTENCE_RE = re.compile(r"""[^.!?]+[.!?]+["'”’]?|[^.!?]+$""")


def split_sentences(text: str) -> list[str]:
    """Collapse whitespace and split text into non-empty sentences."""
    clean = re.sub(r"\s+", " ", text)
    sentences = [match.group(0).strip() for match in _SENTENCE_RE.finditer(clean)]
    return [s for s in sentences if s]


def load_document(text: str) -> Document:
    """Build a Document from text where form feeds separate pages.

    page_mapping[p] is the index of the first sentence of page p; a page with
    no sentences maps to the index the next sentence will get.
    """
    document = Document()
    for page in text.split(PAGE_BREAK):
        document.page_mapping.append(len(document.segments))
        document.segments.extend(split_sentences(page))
    return document


def read_document(path: str) -> Document:
    with open(path, encoding="utf-8") as f:
        return load_document(f.read())
