import re

BOOK = r"(?P<book>(?:[1-3]\s*)?[A-Za-z]+(?:\s+of\s+[A-Za-z]+)?)"

FULL_REFERENCE = re.compile(
    BOOK + r"\s*(?P<chapter>\d+)\s*:\s*(?P<verse>\d+)(?:\s*[-–]\s*(?P<verse_end>\d+))?",
    flags=re.IGNORECASE,
)
SPOKEN_REFERENCE = re.compile(
    BOOK
    + r"\s*(?:chapter\s*)?(?P<chapter>\d+)(?:\s*(?:verses?|vs?)\.?\s*|\s+)(?P<verse>\d+)",
    flags=re.IGNORECASE,
)
CHAPTER_REFERENCE = re.compile(BOOK + r"\s*(?P<chapter>\d+)", flags=re.IGNORECASE)


def _book(match: re.Match) -> str:
    return " ".join(match.group("book").split())


def extract_verse_reference(text: str) -> str:
    """Pull a lookup-ready reference out of loosely written verse text.

    Tried in order: ``Book C:V[-V]``, ``Book C verse V`` or ``Book C V``
    (rewritten as ``Book C:V``), bare ``Book C``; otherwise the first three
    words.
    """
    raw = (text or "").strip()

    m = FULL_REFERENCE.match(raw)
    if m:
        reference = f"{_book(m)} {m.group('chapter')}:{m.group('verse')}"
        if m.group("verse_end"):
            reference += f"-{m.group('verse_end')}"
        return reference

    m = SPOKEN_REFERENCE.match(raw)
    if m:
        return f"{_book(m)} {m.group('chapter')}:{m.group('verse')}"

    m = CHAPTER_REFERENCE.match(raw)
    if m:
        return f"{_book(m)} {m.group('chapter')}"

    return " ".join(raw.split(" ")[:3])
