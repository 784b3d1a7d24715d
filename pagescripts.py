"""
Per-page behaviour of the blog, applied to a rendered HTML page:

- heading anchors inside the post body (linkjuice)
- the "no topics yet" notice on the topics page
"""
from bs4 import BeautifulSoup

import linkjuice

TOPICS_SELECTOR = ".c-topics__items"
TOPIC_POSTS_SELECTOR = ".c-topics__list-items li"
NO_TOPICS_SELECTOR = ".c-topics__list-none"


def bind_topics(document: BeautifulSoup) -> bool:
    """Unhide the empty-list notice when the topics page lists no posts."""
    if document.select_one(TOPICS_SELECTOR) is None:
        return False
    if document.select(TOPIC_POSTS_SELECTOR):
        return False

    notice = document.select_one(NO_TOPICS_SELECTOR)
    if notice is None:
        return False

    styles = [
        s.strip()
        for s in (notice.get("style") or "").split(";")
        if s.strip() and not s.strip().lower().startswith("display")
    ]
    styles.append("display: inherit")
    notice["style"] = "; ".join(styles)
    return True


class PageScripts:
    """The page hooks configured from config.yml, ready to apply per page."""

    def __init__(self, cfg: dict):
        options = cfg.get("linkjuice") or {}
        self.mount = options.get("mount", ".single__content")
        self.annotation = linkjuice.AnnotationConfig.from_options(options)
        self.topics = bool(cfg.get("topics", True))

    def apply(self, document: BeautifulSoup):
        linkjuice.init(document, self.mount, self.annotation)
        if self.topics:
            bind_topics(document)

    def __call__(self, html: str) -> str:
        soup = BeautifulSoup(html, "html.parser")
        self.apply(soup)
        return str(soup)


def run_page_scripts(html: str, cfg: dict) -> str:
    return PageScripts(cfg)(html)
