"""
Add self-referencing anchor links to the headings of a rendered page.

    soup = BeautifulSoup(page, "html.parser")
    linkjuice.init(soup, ".single__content", {"selectors": ["h2", "h3"]})

Each matching heading with an id gets its content wrapped in a link to
"#<id>". Headings without an id are left alone and reported on stderr.
"""
import html
from dataclasses import dataclass, field
from typing import Mapping, Optional, Protocol, Tuple, Union

from bs4 import BeautifulSoup, Tag

from buildlog import warn

DEFAULT_SELECTORS = ("h1", "h2", "h3", "h4", "h5", "h6")
DEFAULT_ICON = "#"


class ContentBuilder(Protocol):
    """Turns a heading into the markup that replaces its content."""

    def __call__(self, node: Tag) -> str:
        ...


def inner_html(node: Tag) -> str:
    return node.decode_contents()


@dataclass(frozen=True)
class AnchorLink:
    """Default builder: a link to the heading's own id, icon first."""

    icon: str = DEFAULT_ICON

    def __call__(self, node: Tag) -> str:
        return (
            f'<a class="linkjuice" href="#{html.escape(node["id"], quote=True)}">'
            f'<span class="linkjuice-icon">{self.icon}</span>'
            f"{inner_html(node)}</a>"
        )


@dataclass(frozen=True)
class AnnotationConfig:
    selectors: Tuple[str, ...] = DEFAULT_SELECTORS
    icon: str = DEFAULT_ICON
    content_fn: Optional[ContentBuilder] = field(default=None, compare=False)

    @property
    def builder(self) -> ContentBuilder:
        return self.content_fn or AnchorLink(self.icon)

    @classmethod
    def from_options(cls, options: Optional[Mapping] = None) -> "AnnotationConfig":
        """
        Build a config from a plain mapping such as the `linkjuice` section of
        config.yml. Recognised keys: selectors, icon, contentFn / content_fn.
        """
        options = options or {}
        selectors = options.get("selectors") or DEFAULT_SELECTORS
        if isinstance(selectors, str):
            selectors = [selectors]
        icon = options.get("icon")
        return cls(
            selectors=tuple(str(s) for s in selectors),
            icon=DEFAULT_ICON if icon is None else str(icon),
            content_fn=options.get("content_fn") or options.get("contentFn"),
        )


ConfigLike = Union[AnnotationConfig, Mapping, None]


def _as_config(config: ConfigLike) -> AnnotationConfig:
    if isinstance(config, AnnotationConfig):
        return config
    return AnnotationConfig.from_options(config)


def wrap_node(node: Tag, builder: ContentBuilder) -> bool:
    """Replace the heading's content with builder(node). False if skipped."""
    if not node.get("id"):
        warn(f"No ID for element {node}")
        return False

    markup = builder(node)
    fragment = BeautifulSoup(markup, "html.parser")
    node.clear()
    # Move the parsed children over; iterate over a copy as append() detaches.
    for child in list(fragment.contents):
        node.append(child)
    return True


def init(document: BeautifulSoup, mount: str, config: ConfigLike = None) -> None:
    """Annotate every heading under the first element matching `mount`."""
    scope = document.select_one(mount)
    if scope is None:
        return

    cfg = _as_config(config)
    builder = cfg.builder
    nodes = scope.select(",".join(cfg.selectors))
    for node in reversed(nodes):
        wrap_node(node, builder)


def annotate_html(page: str, mount: str, config: ConfigLike = None) -> str:
    soup = BeautifulSoup(page, "html.parser")
    init(soup, mount, config)
    return str(soup)
