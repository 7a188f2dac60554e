# collector/selectors.py
"""
Ordered fallback extraction patterns.

A pattern list is tried strictly in order and the first pattern that
structurally matches the document wins. Pattern syntax depends on the
document type:

- BeautifulSoup documents: ``"css selector"`` (text of the first element),
  ``"css selector@attr"`` (attribute value) or ``"@attr"`` (attribute of the
  document node itself).
- JSON documents (dict/list): dotted paths such as ``"data.items"`` or
  ``"authors.0.name"``.

Every function here is pure: no mutation of the document, no logging.
"""
from dataclasses import dataclass
from typing import Any

from bs4.element import Tag


@dataclass(frozen=True)
class Match:
    value: Any
    index: int


class _NoMatch:
    def __bool__(self):
        return False

    def __repr__(self):
        return "NO_MATCH"


NO_MATCH = _NoMatch()


def split_pattern(pattern):
    """Split ``"css@attr"`` into ``("css", "attr")``; attr is None for plain selectors."""
    css, sep, attr = pattern.rpartition("@")
    if not sep or not attr or "]" in attr or " " in attr:
        return pattern.strip(), None
    return css.strip(), attr.strip()


def _walk_json(node, path):
    for step in path.split("."):
        if step == "":
            continue
        if isinstance(node, dict):
            if step not in node:
                return NO_MATCH
            node = node[step]
        elif isinstance(node, list):
            try:
                node = node[int(step)]
            except (ValueError, IndexError):
                return NO_MATCH
        else:
            return NO_MATCH
    return node


def _html_node(document, css):
    if not css:
        return document
    return document.select_one(css)


def _is_json(document):
    return isinstance(document, (dict, list))


def select_node(document, pattern):
    """Return the node a single pattern points at, or NO_MATCH."""
    if _is_json(document):
        return _walk_json(document, pattern)
    if not isinstance(document, Tag):
        return NO_MATCH
    css, _ = split_pattern(pattern)
    node = _html_node(document, css)
    return NO_MATCH if node is None else node


def extract_value(document, pattern):
    """Return the scalar value a single pattern yields, or NO_MATCH."""
    if _is_json(document):
        value = _walk_json(document, pattern)
        if value is NO_MATCH or isinstance(value, (dict, list)):
            return NO_MATCH
        return value
    if not isinstance(document, Tag):
        # a scalar item from a JSON list has no fields to address
        return NO_MATCH
    css, attr = split_pattern(pattern)
    node = _html_node(document, css)
    if node is None:
        return NO_MATCH
    if attr is None:
        return node.get_text(" ", strip=True)
    value = node.get(attr)
    if value is None:
        return NO_MATCH
    if isinstance(value, list):  # multi-valued attributes such as class
        value = " ".join(value)
    return value.strip()


def resolve(document, patterns):
    """
    Resolve a field value using an ordered list of candidate patterns.

    Args:
        document: BeautifulSoup Tag or parsed JSON (dict/list)
        patterns (list[str]): Candidate patterns, most reliable first

    Returns:
        Match or NO_MATCH: Match(value, index) for the earliest pattern that
        matches; a later pattern is never preferred over an earlier one.
    """
    for index, pattern in enumerate(patterns):
        value = extract_value(document, pattern)
        if value is not NO_MATCH:
            return Match(value, index)
    return NO_MATCH


def resolve_node(document, patterns):
    """Like resolve(), but the Match value is the matched node itself."""
    for index, pattern in enumerate(patterns):
        node = select_node(document, pattern)
        if node is not NO_MATCH and node is not None:
            return Match(node, index)
    return NO_MATCH


def resolve_items(container, patterns):
    """
    Locate the repeated item nodes inside a list container.

    The first pattern producing at least one item wins. When no pattern finds
    anything the result is an empty Match (index -1): a located container
    with no items is a legitimately empty listing, not a failure.
    """
    for index, pattern in enumerate(patterns):
        if _is_json(container):
            items = _walk_json(container, pattern)
            if items is NO_MATCH:
                continue
            if not isinstance(items, list):
                items = [items]
        elif isinstance(container, Tag):
            items = container.select(pattern)
        else:
            items = []
        if items:
            return Match(list(items), index)
    return Match([], -1)
