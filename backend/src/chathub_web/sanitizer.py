from __future__ import annotations

from html.parser import HTMLParser

# Elements whose text content is dropped along with the markup.
_DISCARDED_CONTENT_TAGS = frozenset({"script", "style", "textarea", "noscript", "option", "iframe"})


class _TextExtractor(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._chunks: list[str] = []
        self._discard_depth = 0

    def handle_starttag(self, tag: str, attrs) -> None:
        if tag in _DISCARDED_CONTENT_TAGS:
            self._discard_depth += 1

    def handle_endtag(self, tag: str) -> None:
        if tag in _DISCARDED_CONTENT_TAGS and self._discard_depth > 0:
            self._discard_depth -= 1

    def handle_data(self, data: str) -> None:
        if self._discard_depth == 0:
            self._chunks.append(data)

    def text(self) -> str:
        return "".join(self._chunks)


def sanitize(text: str) -> str:
    """Strip all markup and return plain text.

    No tag is allowed through and attributes are never kept. The bodies
    of script-like elements are removed entirely; other elements keep
    their text.
    """
    if not text:
        return ""
    parser = _TextExtractor()
    parser.feed(text)
    parser.close()
    return parser.text()
