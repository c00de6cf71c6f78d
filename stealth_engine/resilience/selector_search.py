"""Alternative selector search over a DOM snapshot.

When a selector stops matching, three searches run against the page HTML in
order: elements whose text contains the expected content, classes similar to
the failed selector's class, and repeated element groups under common page
landmarks. Candidates are returned highest confidence first.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass

from bs4 import BeautifulSoup, Tag

logger = logging.getLogger(__name__)

TEXT_MATCH_CONFIDENCE = 0.8
CLASS_SIMILARITY_CONFIDENCE = 0.6
STRUCTURAL_CONFIDENCE = 0.5

LANDMARK_SELECTORS: tuple[str, ...] = (
    "main",
    "article",
    '[role="main"]',
    ".content",
    "#content",
    ".container",
)

_CLASS_IN_SELECTOR = re.compile(r"\.([A-Za-z0-9_-]+)")


@dataclass(frozen=True)
class SelectorCandidate:
    selector: str
    method: str  # text, class, structure
    confidence: float


def find_alternative_selectors(
    html: str,
    failed_selector: str | None,
    expected_content: str | None = None,
) -> list[SelectorCandidate]:
    """Return replacement candidates for *failed_selector*, best first."""
    soup = BeautifulSoup(html, "html.parser")
    candidates: list[SelectorCandidate] = []

    if expected_content:
        candidates.extend(_text_matches(soup, expected_content))

    if failed_selector:
        match = _CLASS_IN_SELECTOR.search(failed_selector)
        if match:
            candidates.extend(_similar_classes(soup, match.group(1)))

    candidates.extend(_structural_matches(soup))

    seen: set[str] = set()
    unique: list[SelectorCandidate] = []
    for candidate in sorted(candidates, key=lambda c: c.confidence, reverse=True):
        if candidate.selector in seen or candidate.selector == failed_selector:
            continue
        seen.add(candidate.selector)
        unique.append(candidate)

    logger.debug("Found %d alternative selectors for %r", len(unique), failed_selector)
    return unique


def _text_matches(soup: BeautifulSoup, expected: str) -> list[SelectorCandidate]:
    results = []
    for element in soup.find_all(True):
        if expected not in element.get_text(" ", strip=True):
            continue
        # Keep only the innermost elements holding the text
        if any(expected in child.get_text(" ", strip=True) for child in element.find_all(True)):
            continue
        results.append(SelectorCandidate(_css_path(element), "text", TEXT_MATCH_CONFIDENCE))
    return results


def _similar_classes(soup: BeautifulSoup, base: str) -> list[SelectorCandidate]:
    found: list[str] = []
    for element in soup.find_all(class_=True):
        for cls in element.get("class", []):
            if cls and (base in cls or cls in base) and cls not in found:
                found.append(cls)
    return [SelectorCandidate(f".{cls}", "class", CLASS_SIMILARITY_CONFIDENCE) for cls in found]


def _structural_matches(soup: BeautifulSoup) -> list[SelectorCandidate]:
    results = []
    for landmark in LANDMARK_SELECTORS:
        parent = soup.select_one(landmark)
        if parent is None:
            continue
        groups = Counter(
            (child.name, (child.get("class") or [None])[0])
            for child in parent.find_all(True)
        )
        for (tag, cls), count in groups.items():
            if count <= 1:
                continue
            selector = f"{landmark} {tag}.{cls}" if cls else f"{landmark} {tag}"
            results.append(SelectorCandidate(selector, "structure", STRUCTURAL_CONFIDENCE))
    return results


def _css_path(element: Tag) -> str:
    """Short CSS path to *element*, anchored at the nearest id."""
    parts: list[str] = []
    node: Tag | None = element
    while node is not None and node.name not in ("[document]", "html"):
        if node.get("id"):
            parts.append(f"#{node['id']}")
            break
        part = node.name
        classes = node.get("class") or []
        if classes:
            part += f".{classes[0]}"
        parent = node.parent
        if parent is not None and node.name != "body":
            same = parent.find_all(node.name, recursive=False)
            if len(same) > 1:
                # Tag equality is structural, compare by identity
                position = next(i for i, sibling in enumerate(same) if sibling is node)
                part += f":nth-of-type({position + 1})"
        parts.append(part)
        node = parent if isinstance(parent, Tag) else None
    return " > ".join(reversed(parts))
