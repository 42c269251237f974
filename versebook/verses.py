import time
from typing import List, Optional

import requests

from versebook.config import ESV_API_KEY, ESV_BASE_URL, ESV_TIMEOUT_SEC
from versebook.events import log_api_event
from versebook.ref_parser import extract_verse_reference

VERSE_ERROR_TEXT = "Error loading verse content. Please try again."
VERSE_MISSING_TEXT = "Verse text not available"
SEARCH_PAGE_SIZE = 5


def _esv_get(path: str, params: dict) -> dict:
    res = requests.get(
        f"{ESV_BASE_URL}{path}",
        params=params,
        headers={"Authorization": f"Token {ESV_API_KEY}"},
        timeout=ESV_TIMEOUT_SEC,
    )
    res.raise_for_status()
    return res.json()


def get_passage(reference: str) -> Optional[str]:
    """Passage text for ``reference`` as returned by the ESV API."""
    data = _esv_get(
        "/passage/text/",
        {
            "q": reference,
            "include-passage-references": "true",
            "include-verse-numbers": "true",
            "include-footnotes": "false",
            "include-headings": "false",
        },
    )
    passages = data.get("passages") or []
    return passages[0] if passages else None


def search(query: str) -> List[dict]:
    start = time.perf_counter()
    try:
        data = _esv_get("/passage/search/", {"q": query, "page-size": SEARCH_PAGE_SIZE})
    except (requests.RequestException, ValueError) as exc:
        log_api_event("verse_search_failed", {"error": type(exc).__name__})
        return []
    results = data.get("results") or []
    log_api_event(
        "verse_search",
        {
            "q_len": len(query or ""),
            "total": len(results),
            "elapsed_ms": int((time.perf_counter() - start) * 1000),
        },
    )
    return results


def resolve(reference: str) -> str:
    """Passage text for a free-text reference; never raises."""
    lookup = extract_verse_reference(reference)
    start = time.perf_counter()
    try:
        text = get_passage(lookup)
    except requests.HTTPError as exc:
        status = exc.response.status_code if exc.response is not None else None
        log_api_event("verse_resolve_failed", {"error": "http_error", "status": status})
        return VERSE_ERROR_TEXT
    except (requests.RequestException, ValueError) as exc:
        log_api_event("verse_resolve_failed", {"error": type(exc).__name__})
        return VERSE_ERROR_TEXT
    log_api_event(
        "verse_resolve",
        {"found": bool(text), "elapsed_ms": int((time.perf_counter() - start) * 1000)},
    )
    return text or VERSE_MISSING_TEXT


def find_related_verses(content: str) -> List[str]:
    """Top matching passage for the longer words of ``content``."""
    stop_words = {"about", "these", "those", "their", "would", "could", "should"}
    terms = [w for w in (content or "").split(" ") if len(w) > 4 and w.lower() not in stop_words]
    key_terms = " ".join(terms[:3])
    if not key_terms:
        return []
    results = search(key_terms)
    if not results:
        return []
    reference = results[0].get("reference")
    if not reference:
        return []
    passage = resolve(reference)
    if passage in (VERSE_ERROR_TEXT, VERSE_MISSING_TEXT):
        return []
    return [passage]
