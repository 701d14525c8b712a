"""Resolve a target descriptor to one element on the current page."""

from __future__ import annotations

import re
from dataclasses import dataclass
from difflib import SequenceMatcher

from llamaclick.browser.base import BrowserBackend
from llamaclick.browser.selectors import TargetDescriptor, parse_target
from llamaclick.browser.types import ElementHandle, ElementInfo
from llamaclick.errors import LocatorAmbiguous, LocatorNotFound, ProviderError, StaleElementError
from llamaclick.models import ActionKind
from llamaclick.utils.logging import get_logger

log = get_logger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9]+")

# Words that describe what kind of element is meant rather than which one
ROLE_WORDS = {
    "button": {"button"},
    "btn": {"button"},
    "link": {"a", "link"},
    "field": {"input", "textarea", "textbox"},
    "input": {"input", "textarea", "textbox"},
    "textbox": {"input", "textarea", "textbox"},
    "box": {"input", "textarea", "textbox"},
    "dropdown": {"select", "combobox", "listbox"},
    "select": {"select", "combobox", "listbox"},
    "menu": {"select", "menu", "menuitem", "combobox"},
    "checkbox": {"checkbox"},
    "tab": {"tab"},
    "heading": {"h1", "h2", "h3", "h4"},
}

FILLER_WORDS = {"the", "a", "an", "labeled", "labelled", "called", "named", "with", "text", "on", "in", "for", "of", "to"}

_ACTION_FIT = {
    ActionKind.CLICK: {"button", "a", "summary", "option", "label", "link", "tab", "menuitem", "checkbox", "radio"},
    ActionKind.FILL: {"input", "textarea", "textbox", "combobox"},
    ActionKind.SELECT: {"select", "combobox", "listbox"},
}

_TEXT_FIELDS = ("aria-label", "placeholder", "title", "name", "alt", "id")


@dataclass(frozen=True)
class ResolvedTarget:
    handle: ElementHandle
    info: ElementInfo
    score: float
    descriptor: TargetDescriptor


def _tokens(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


def content_tokens(phrase: str) -> list[str]:
    """Tokens that identify the element, without role and filler words."""
    tokens = _tokens(phrase)
    content = [t for t in tokens if t not in ROLE_WORDS and t not in FILLER_WORDS]
    return content or tokens


def _field_similarity(query: list[str], value: str) -> float:
    if not value:
        return 0.0
    field_tokens = set(_tokens(value))
    if not field_tokens:
        return 0.0
    overlap = sum(1 for t in query if t in field_tokens) / len(query)
    ratio = SequenceMatcher(None, " ".join(query), " ".join(_tokens(value))).ratio()
    return 0.6 * overlap + 0.4 * ratio


def text_similarity(phrase: str, el: ElementInfo) -> float:
    query = content_tokens(phrase)
    if not query:
        return 0.0
    values = [el.text] + [el.attributes.get(name, "") for name in _TEXT_FIELDS]
    if el.value and el.tag == "input" and el.attributes.get("type") in ("submit", "button"):
        values.append(el.value)
    return max(_field_similarity(query, v) for v in values)


def _kinds(el: ElementInfo) -> set[str]:
    kinds = {el.tag.lower()}
    if el.role:
        kinds.add(el.role.lower())
    if el.tag == "input":
        input_type = el.attributes.get("type", "text").lower()
        if input_type in ("submit", "button", "reset", "image"):
            kinds.add("button")
        elif input_type in ("checkbox", "radio"):
            kinds.add(input_type)
        else:
            kinds.add("textbox")
    return kinds


def structural_salience(phrase: str, el: ElementInfo, action: ActionKind | None) -> float:
    """0.0 - 0.3 bonus for elements whose shape fits the request."""
    kinds = _kinds(el)
    score = 0.0
    fit = _ACTION_FIT.get(action) if action else None
    if fit and kinds & fit:
        score += 0.15
    hinted = [ROLE_WORDS[t] for t in _tokens(phrase) if t in ROLE_WORDS]
    if hinted and any(kinds & hint for hint in hinted):
        score += 0.05
    if el.visible:
        score += 0.05
    if el.enabled:
        score += 0.05
    return score


def score_candidate(phrase: str, el: ElementInfo, action: ActionKind | None = None) -> float:
    similarity = text_similarity(phrase, el)
    return round(similarity * (0.7 + structural_salience(phrase, el, action)), 6)


def rank(
    phrase: str, elements: list[ElementInfo], action: ActionKind | None = None
) -> list[tuple[float, ElementInfo]]:
    """Highest score first; equal scores keep document order."""
    scored = [(score_candidate(phrase, el, action), el) for el in elements]
    scored.sort(key=lambda pair: (-pair[0], pair[1].index))
    return scored


async def locate(
    browser: BrowserBackend,
    target: str,
    *,
    action: ActionKind | None = None,
    threshold: float = 0.35,
    margin: float = 0.05,
    require_unique: bool = False,
) -> ResolvedTarget:
    descriptor = parse_target(target)
    try:
        handles = await browser.find_candidates(descriptor.to_query())
    except ProviderError as e:
        raise LocatorNotFound(f"candidate lookup failed: {e}", target) from e

    if not descriptor.is_semantic:
        for handle in sorted(handles, key=lambda h: h.index):
            try:
                info = await browser.describe(handle)
            except StaleElementError:
                continue
            except ProviderError as e:
                raise LocatorNotFound(f"describe failed: {e}", target) from e
            return ResolvedTarget(handle, info, 1.0, descriptor)
        raise LocatorNotFound(f"no element matches {descriptor}", target)

    elements: list[ElementInfo] = []
    for handle in handles:
        try:
            elements.append(await browser.describe(handle))
        except StaleElementError:
            continue
        except ProviderError as e:
            raise LocatorNotFound(f"describe failed: {e}", target) from e

    ranked = rank(descriptor.value, elements, action)
    if not ranked or ranked[0][0] < threshold:
        best = ranked[0][0] if ranked else 0.0
        raise LocatorNotFound(
            f"no candidate for {descriptor.value!r} clears threshold {threshold} (best {best:.3f})",
            target,
        )

    top_score, top = ranked[0]
    if require_unique and len(ranked) > 1 and top_score - ranked[1][0] <= margin:
        raise LocatorAmbiguous(
            f"{descriptor.value!r} matches several elements within {margin}",
            target,
            scores=(top_score, ranked[1][0]),
        )

    log.debug("target_resolved", target=target, tag=top.tag, index=top.index, score=top_score)
    return ResolvedTarget(top.handle, top, top_score, descriptor)
