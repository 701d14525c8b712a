"""Target descriptors and a small selector matcher for page snapshots."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from llamaclick.browser.types import ElementInfo, PageState


class TargetKind(str, Enum):
    SEMANTIC = "semantic"
    CSS = "css"
    XPATH = "xpath"
    TEXT = "text"
    ID = "id"
    NAME = "name"


_PREFIXES = {
    "css=": TargetKind.CSS,
    "xpath=": TargetKind.XPATH,
    "text=": TargetKind.TEXT,
    "id=": TargetKind.ID,
    "name=": TargetKind.NAME,
}


@dataclass(frozen=True)
class TargetDescriptor:
    kind: TargetKind
    value: str

    @property
    def is_semantic(self) -> bool:
        return self.kind is TargetKind.SEMANTIC

    def to_query(self) -> str:
        """Render as a selector string Playwright understands."""
        if self.kind is TargetKind.SEMANTIC:
            return self.value
        if self.kind is TargetKind.CSS:
            return f"css={self.value}"
        if self.kind is TargetKind.XPATH:
            return f"xpath={self.value}"
        if self.kind is TargetKind.TEXT:
            return f"text={self.value}"
        if self.kind is TargetKind.ID:
            return f'css=[id="{self.value}"]'
        return f'css=[name="{self.value}"]'

    def __str__(self) -> str:
        if self.kind is TargetKind.SEMANTIC:
            return self.value
        if self.kind is TargetKind.CSS:
            return self.value
        return f"{self.kind.value}={self.value}"


def parse_target(raw: str) -> TargetDescriptor:
    text = raw.strip()
    lowered = text.lower()
    for prefix, kind in _PREFIXES.items():
        if lowered.startswith(prefix):
            return TargetDescriptor(kind, text[len(prefix):].strip())
    if text.startswith(("//", "(//")):
        return TargetDescriptor(TargetKind.XPATH, text)
    if text.startswith(("#", ".", "[")) and " " not in text:
        return TargetDescriptor(TargetKind.CSS, text)
    if _looks_like_css(text):
        return TargetDescriptor(TargetKind.CSS, text)
    return TargetDescriptor(TargetKind.SEMANTIC, text)


# ---------------------------------------------------------------------------
# Compound CSS (no combinators) matched against described elements
# ---------------------------------------------------------------------------

_TAG_RE = re.compile(r"[a-zA-Z][\w-]*|\*")
_PART_RE = re.compile(
    r"#(?P<id>[\w-]+)"
    r"|\.(?P<cls>[\w-]+)"
    r"|\[(?P<attr>[\w:-]+)\s*(?:(?P<op>[*^$]?=)\s*(?P<val>\"[^\"]*\"|'[^']*'|[^\]]*))?\]"
)


@dataclass(frozen=True)
class _Compound:
    tag: str | None
    ids: tuple[str, ...]
    classes: tuple[str, ...]
    attrs: tuple[tuple[str, str | None, str | None], ...]


def _parse_compound(selector: str) -> _Compound | None:
    pos = 0
    tag = None
    m = _TAG_RE.match(selector)
    if m:
        tag = None if m.group(0) == "*" else m.group(0).lower()
        pos = m.end()
    ids: list[str] = []
    classes: list[str] = []
    attrs: list[tuple[str, str | None, str | None]] = []
    while pos < len(selector):
        m = _PART_RE.match(selector, pos)
        if not m:
            return None
        if m.group("id"):
            ids.append(m.group("id"))
        elif m.group("cls"):
            classes.append(m.group("cls"))
        else:
            val = m.group("val")
            if val is not None:
                val = val.strip().strip("\"'")
            attrs.append((m.group("attr").lower(), m.group("op"), val))
        pos = m.end()
    if tag is None and not (ids or classes or attrs):
        return None
    return _Compound(tag, tuple(ids), tuple(classes), tuple(attrs))


def _looks_like_css(text: str) -> bool:
    if " " in text or not any(c in text for c in "#.["):
        return False
    return _parse_compound(text) is not None


def _attr_matches(actual: str | None, op: str | None, expected: str | None) -> bool:
    if actual is None:
        return False
    if op is None:
        return True
    assert expected is not None
    if op == "=":
        return actual == expected
    if op == "*=":
        return expected in actual
    if op == "^=":
        return actual.startswith(expected)
    return actual.endswith(expected)


def _compound_matches(el: ElementInfo, sel: _Compound) -> bool:
    if sel.tag and el.tag.lower() != sel.tag:
        return False
    if any(el.attributes.get("id") != i for i in sel.ids):
        return False
    classes = el.classes
    if any(c not in classes for c in sel.classes):
        return False
    for name, op, expected in sel.attrs:
        actual = el.value if name == "value" and el.value is not None else el.attributes.get(name)
        if not _attr_matches(actual, op, expected):
            return False
    return True


def select(page: PageState, raw: str) -> list[ElementInfo] | None:
    """Return matching snapshot elements in document order.

    ``None`` means the selector cannot be evaluated against a snapshot
    (xpath, combinators, or a semantic phrase).
    """
    desc = parse_target(raw)
    if desc.kind is TargetKind.ID:
        return [el for el in page.elements if el.attributes.get("id") == desc.value]
    if desc.kind is TargetKind.NAME:
        return [el for el in page.elements if el.attributes.get("name") == desc.value]
    if desc.kind is TargetKind.TEXT:
        needle = desc.value.strip("\"'").lower()
        return [el for el in page.elements if needle in el.text.lower()]
    if desc.kind is TargetKind.CSS:
        compound = _parse_compound(desc.value)
        if compound is None:
            return None
        return [el for el in page.elements if _compound_matches(el, compound)]
    return None
