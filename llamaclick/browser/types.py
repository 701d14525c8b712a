"""Browser-facing data types."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ElementHandle:
    """Opaque reference to one element, valid until the DOM replaces it."""

    id: str
    index: int  # document order


@dataclass(frozen=True)
class ElementInfo:
    handle: ElementHandle
    tag: str
    text: str = ""
    role: str = ""
    attributes: dict[str, str] = field(default_factory=dict)
    value: str | None = None
    visible: bool = True
    enabled: bool = True

    @property
    def index(self) -> int:
        return self.handle.index

    @property
    def classes(self) -> list[str]:
        return self.attributes.get("class", "").split()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.handle.id,
            "index": self.handle.index,
            "tag": self.tag,
            "text": self.text[:200],
            "role": self.role,
            "attributes": dict(self.attributes),
            "value": self.value,
            "visible": self.visible,
            "enabled": self.enabled,
        }


@dataclass(frozen=True)
class PageState:
    """Point-in-time view of the page used for verification and extraction."""

    url: str
    title: str = ""
    text: str = ""
    elements: tuple[ElementInfo, ...] = ()

    def summary(self, max_elements: int = 60) -> str:
        lines = [f"URL: {self.url}", f"Title: {self.title}", "Interactive elements:"]
        for el in self.elements[:max_elements]:
            label = el.text or el.attributes.get("aria-label") or el.attributes.get("placeholder", "")
            lines.append(f"  [{el.index}] <{el.tag}> {label[:60]}")
        return "\n".join(lines)
