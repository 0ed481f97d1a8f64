#!/usr/bin/env python3
"""
Allow-list HTML sanitizer for values interpolated into email templates.

Only a small inline-formatting subset survives: <b>, <i>, <em>, <strong> and
<a href> with an http, https or mailto target. Everything else is escaped as
text, and the content of <script> and <style> elements is dropped entirely.
"""

import html
import urllib.parse
from html.parser import HTMLParser
from typing import Any, Dict, List, Optional, Tuple

ALLOWED_TAGS = frozenset({'b', 'i', 'em', 'strong', 'a'})
ALLOWED_ATTRIBUTES = {'a': frozenset({'href'})}
ALLOWED_URL_SCHEMES = frozenset({'http', 'https', 'mailto'})
DROP_CONTENT_TAGS = frozenset({'script', 'style', 'iframe', 'object', 'embed', 'template', 'noscript'})


def _safe_href(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    candidate = value.strip()
    # Browsers ignore embedded whitespace and control chars in schemes ("java\tscript:")
    compact = "".join(ch for ch in candidate if ch.isprintable() and not ch.isspace())
    parsed = urllib.parse.urlparse(compact)
    if parsed.scheme.lower() not in ALLOWED_URL_SCHEMES:
        return None
    return html.escape(candidate, quote=True)


class _AllowListParser(HTMLParser):

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.out: List[str] = []
        self._open: List[str] = []
        self._drop_depth = 0

    def handle_starttag(self, tag: str, attrs: List[Tuple[str, Optional[str]]]) -> None:
        if tag in DROP_CONTENT_TAGS:
            self._drop_depth += 1
            return
        if self._drop_depth or tag not in ALLOWED_TAGS:
            return
        allowed = ALLOWED_ATTRIBUTES.get(tag, frozenset())
        rendered = []
        for name, value in attrs:
            if name not in allowed:
                continue
            if name == 'href':
                value = _safe_href(value)
                if value is None:
                    continue
                rendered.append(f' href="{value}"')
        self.out.append(f"<{tag}{''.join(rendered)}>")
        self._open.append(tag)

    def handle_startendtag(self, tag, attrs) -> None:
        # Void forms of allowed tags (<b/>) carry no content.
        if tag in DROP_CONTENT_TAGS or tag not in ALLOWED_TAGS:
            return

    def handle_endtag(self, tag: str) -> None:
        if tag in DROP_CONTENT_TAGS:
            self._drop_depth = max(0, self._drop_depth - 1)
            return
        if self._drop_depth or tag not in ALLOWED_TAGS or tag not in self._open:
            return
        while self._open:
            current = self._open.pop()
            self.out.append(f"</{current}>")
            if current == tag:
                break

    def handle_data(self, data: str) -> None:
        if not self._drop_depth:
            self.out.append(html.escape(data, quote=False))

    def handle_comment(self, data: str) -> None:
        return

    def result(self) -> str:
        self.close()
        while self._open:
            self.out.append(f"</{self._open.pop()}>")
        return "".join(self.out)


def sanitize_html(value: str) -> str:
    """Strip active markup from value, keeping the inline-formatting allow-list."""
    if not value:
        return ""
    parser = _AllowListParser()
    parser.feed(value)
    return parser.result()


def sanitize_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    """Sanitize every string value in data, recursing into dicts and lists."""
    return {key: _sanitize_value(value) for key, value in data.items()}


def _sanitize_value(value: Any) -> Any:
    if isinstance(value, str):
        return sanitize_html(value)
    if isinstance(value, dict):
        return sanitize_fields(value)
    if isinstance(value, (list, tuple)):
        return [_sanitize_value(v) for v in value]
    return value
