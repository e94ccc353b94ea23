"""Rich comment HTML normalisation.

Comment text is stored as a tiny HTML subset produced by the board's comment
editor. Anything outside the subset is dropped, text nodes are escaped, and
unclosed tags are closed, so stored markup is always well formed and safe to
render. Running the sanitiser on its own output returns the same string.
"""
import re
from typing import Optional

import bleach
from bleach.css_sanitizer import CSSSanitizer

from src.core.limits import MAX_COMMENT_TEXT_LENGTH

ALLOWED_TAGS = frozenset(
    ["b", "strong", "i", "em", "s", "strike", "u", "br", "div", "p", "ul", "ol", "li", "span"]
)
COLOR_CLASSES = frozenset(
    [f"rc-color-{index}" for index in range(6)] + [f"rc-bg-{index}" for index in range(6)]
)

_LOOKS_LIKE_HTML = re.compile(r"</?[a-z][\s\S]*>", re.IGNORECASE)
_SPAN_OPEN = re.compile(r"<span\b([^>]*)>", re.IGNORECASE)
_SCRIPT = re.compile(r"<script[\s\S]*?</script>", re.IGNORECASE)
_STYLE = re.compile(r"<style[\s\S]*?</style>", re.IGNORECASE)
# Амперсанд, который не начинает уже готовую сущность
_BARE_AMPERSAND = re.compile(r"&(?!(?:[a-z][a-z0-9]*|#\d+|#x[0-9a-f]+);)", re.IGNORECASE)

_SHORT_HEX = re.compile(r"^#([0-9a-f]{3})$", re.IGNORECASE)
_FULL_HEX = re.compile(r"^#([0-9a-f]{6})$", re.IGNORECASE)
_RGB = re.compile(
    r"^rgba?\(\s*(\d{1,3})\s*[, ]\s*(\d{1,3})\s*[, ]\s*(\d{1,3})(?:\s*[,/]\s*[\d.]+\s*)?\)$",
    re.IGNORECASE,
)


def escape_html(value) -> str:
    text = "" if value is None else str(value)
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&#39;")
    )


def _escape_text_node(value: str) -> str:
    # Как escape_html, но существующие сущности не экранируются повторно
    return (
        _BARE_AMPERSAND.sub("&amp;", value)
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&#39;")
    )


def normalize_rich_color(raw_value) -> Optional[str]:
    """Normalise ``#rgb``, ``#rrggbb`` and ``rgb()/rgba()`` colours to ``#rrggbb``."""
    raw = ("" if raw_value is None else str(raw_value)).strip().lower().replace('"', "").replace("'", "")
    if not raw:
        return None

    short_hex = _SHORT_HEX.match(raw)
    if short_hex:
        r, g, b = short_hex.group(1)
        return f"#{r}{r}{g}{g}{b}{b}"

    full_hex = _FULL_HEX.match(raw)
    if full_hex:
        return f"#{full_hex.group(1).lower()}"

    rgb = _RGB.match(raw)
    if not rgb:
        return None
    parts = [max(0, min(255, int(part))) for part in rgb.groups()]
    return "#" + "".join(f"{part:02x}" for part in parts)


def sanitize_rich_span_style(raw_style) -> Optional[str]:
    source = ("" if raw_style is None else str(raw_style)).strip()
    if not source:
        return None

    color = None
    background = None
    for chunk in source.split(";"):
        pieces = chunk.split(":")
        if len(pieces) < 2 or not pieces[0] or not pieces[1]:
            continue
        prop = pieces[0].strip().lower()
        normalized = normalize_rich_color(pieces[1].strip())
        if not normalized:
            continue
        if prop == "color":
            color = normalized
        if prop in ("background", "background-color"):
            background = normalized

    parts = []
    if color:
        parts.append(f"color:{color}")
    if background:
        parts.append(f"background-color:{background}")
    return ";".join(parts) if parts else None


def read_html_attr_value(attrs_raw, attr_name: str) -> Optional[str]:
    source = "" if attrs_raw is None else str(attrs_raw)
    pattern = re.compile(
        re.escape(attr_name) + r"""\s*=\s*("([^"]*)"|'([^']*)'|([^\s"'`=<>]+))""",
        re.IGNORECASE,
    )
    match = pattern.search(source)
    if not match:
        return None
    for group in (2, 3, 4):
        if match.group(group) is not None:
            return match.group(group)
    return None


RICH_CSS_SANITIZER = CSSSanitizer(allowed_css_properties=["color", "background-color", "background"])


def _allowed_attribute(tag: str, name: str, value: str) -> bool:
    if tag != "span":
        return False
    if name == "class":
        return any(part in COLOR_CLASSES for part in value.split())
    return name == "style"


def _rebuild_span(match) -> str:
    attrs_raw = match.group(1) or ""
    classes = [part for part in (read_html_attr_value(attrs_raw, "class") or "").split() if part in COLOR_CLASSES]
    style = sanitize_rich_span_style(read_html_attr_value(attrs_raw, "style"))
    attrs = ""
    if classes:
        attrs += f' class="{" ".join(classes)}"'
    if style:
        attrs += f' style="{style}"'
    return f"<span{attrs}>"


def sanitize_rich_comment_html(value) -> str:
    """Clean comment markup down to the allowed tag subset.

    bleach drops foreign tags and attributes, comments and unsafe CSS and
    closes unclosed tags; span colours are then normalised to ``#rrggbb``.
    """
    source = re.sub(r"\r\n?", "\n", "" if value is None else str(value)).strip()
    if not source:
        return ""

    if not _LOOKS_LIKE_HTML.search(source):
        source = _escape_text_node(source).replace("\n", "<br>")
    # Содержимое script/style не должно остаться текстом
    source = _STYLE.sub("", _SCRIPT.sub("", source))

    cleaned = bleach.clean(
        source,
        tags=ALLOWED_TAGS,
        attributes=_allowed_attribute,
        css_sanitizer=RICH_CSS_SANITIZER,
        strip=True,
        strip_comments=True,
    )
    return _SPAN_OPEN.sub(_rebuild_span, cleaned).strip()


def rich_comment_to_plain_text(value) -> str:
    html = "" if value is None else str(value)
    if not html:
        return ""
    text = re.sub(r"<\s*br\s*/?\s*>", "\n", html, flags=re.IGNORECASE)
    text = re.sub(r"</\s*(div|p|li|ul|ol)\s*>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", " ", text)
    for entity, replacement in (("&nbsp;", " "), ("&quot;", '"'), ("&#39;", "'"), ("&lt;", "<"), ("&gt;", ">"), ("&amp;", "&")):
        text = re.sub(re.escape(entity), replacement, text, flags=re.IGNORECASE)
    return re.sub(r"\s+", " ", text).strip()


def sanitize_comment_text(value) -> str:
    """Sanitised comment HTML, or "" when it carries no visible text."""
    normalized = sanitize_rich_comment_html(value)
    plain = rich_comment_to_plain_text(normalized)
    if not plain:
        return ""
    if len(normalized) <= MAX_COMMENT_TEXT_LENGTH:
        return normalized
    return escape_html(plain[:MAX_COMMENT_TEXT_LENGTH]).replace("\n", "<br>")
