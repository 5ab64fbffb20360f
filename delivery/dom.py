"""
Minimal document model used by the delivery engine.

Only the surface the engine touches is modelled: a tree of elements with tag,
attributes, classes, a ``data-*`` map, inline style, computed style and a
rendered width. A browser bridge exposes the same methods over a live page.
Lookups take predicates rather than CSS selectors.
"""
from __future__ import annotations

from typing import Callable, Dict, Iterable, Iterator, List, Optional, Set

Predicate = Callable[["Element"], bool]

# Computed display of elements with no explicit styling
_INLINE_TAGS = {"A", "SPAN", "IMG", "PICTURE", "B", "I", "EM", "STRONG", "LABEL"}


class Element:
    def __init__(
        self,
        tag: str,
        attrs: Optional[Dict[str, str]] = None,
        classes: Iterable[str] = (),
        computed: Optional[Dict[str, str]] = None,
        width: float = 0,
        children: Iterable["Element"] = (),
    ):
        self.tag = tag.upper()
        self.attrs: Dict[str, str] = dict(attrs or {})
        self.classes: List[str] = list(classes)
        self.dataset: Dict[str, str] = {}
        self.style: Dict[str, str] = {}
        self.computed: Dict[str, str] = dict(computed or {})
        self.width = width
        self.inner_html = ""
        self.parent: Optional[Element] = None
        self.children: List[Element] = []
        for child in children:
            self.append(child)

    def __repr__(self) -> str:
        return f"<{self.tag.lower()} class={' '.join(self.classes)!r}>"

    # --- tree ---

    def append(self, child: "Element") -> "Element":
        if child.parent is not None:
            child.remove()
        child.parent = self
        self.children.append(child)
        return child

    def remove(self) -> None:
        if self.parent is not None:
            self.parent.children.remove(self)
            self.parent = None

    def descendants(self) -> Iterator["Element"]:
        for child in list(self.children):
            yield child
            yield from child.descendants()

    def query_all(self, predicate: Predicate) -> List["Element"]:
        return [el for el in self.descendants() if predicate(el)]

    def query(self, predicate: Predicate) -> Optional["Element"]:
        for el in self.descendants():
            if predicate(el):
                return el
        return None

    def closest(self, predicate: Predicate) -> Optional["Element"]:
        """Nearest inclusive ancestor matching ``predicate``."""
        node: Optional[Element] = self
        while node is not None:
            if predicate(node):
                return node
            node = node.parent
        return None

    # --- attributes and style ---

    @property
    def id(self) -> str:
        return self.attrs.get("id", "")

    def get_attribute(self, name: str) -> Optional[str]:
        return self.attrs.get(name)

    def has_class(self, *names: str) -> bool:
        return any(name in self.classes for name in names)

    def computed_style(self, prop: str) -> str:
        """Inline style wins over the stylesheet value, then the tag default."""
        if prop in self.style:
            return self.style[prop]
        if prop in self.computed:
            return self.computed[prop]
        if prop == "position":
            return "static"
        if prop == "display":
            return "inline" if self.tag in _INLINE_TAGS else "block"
        if prop == "visibility":
            return "visible"
        return ""


class Document:
    def __init__(self, body: Optional[Element] = None, path: str = "/"):
        self.head = Element("head")
        self.body = body if body is not None else Element("body")
        self.path = path

    @property
    def is_product_page(self) -> bool:
        return "/products/" in self.path

    def query_all(self, predicate: Predicate) -> List[Element]:
        return self.body.query_all(predicate)

    def query(self, predicate: Predicate) -> Optional[Element]:
        return self.body.query(predicate)


class VisibilityObserver:
    """
    Tracks elements awaiting visibility. The page bridge (or a test) calls
    ``fire`` with the elements that entered the viewport.
    """

    def __init__(self, callback: Optional[Callable[[List[Element]], None]] = None):
        self.callback = callback
        self._observed: List[Element] = []

    def observe(self, element: Element) -> None:
        if element not in self._observed:
            self._observed.append(element)

    def unobserve(self, element: Element) -> None:
        if element in self._observed:
            self._observed.remove(element)

    @property
    def observed(self) -> List[Element]:
        return list(self._observed)

    def fire(self, elements: Optional[Iterable[Element]] = None) -> None:
        """Report ``elements`` (default: everything observed) as visible."""
        visible = [el for el in (elements if elements is not None else self.observed) if el in self._observed]
        if visible and self.callback is not None:
            self.callback(visible)


# --- predicates ---

def has_tag(*tags: str) -> Predicate:
    wanted: Set[str] = {t.upper() for t in tags}
    return lambda el: el.tag in wanted


def has_class(*names: str) -> Predicate:
    return lambda el: el.has_class(*names)


def has_class_containing(*fragments: str) -> Predicate:
    return lambda el: any(f in cls for cls in el.classes for f in fragments)


def has_attr(name: str) -> Predicate:
    return lambda el: name in el.attrs


def any_of(*predicates: Predicate) -> Predicate:
    return lambda el: any(p(el) for p in predicates)
