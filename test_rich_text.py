import pytest

from src.services.rich_text import (
    normalize_rich_color,
    rich_comment_to_plain_text,
    sanitize_comment_text,
    sanitize_rich_comment_html,
)


class TestRichCommentHtml:
    """Тесты санитайзера HTML комментариев"""

    def test_plain_text_newlines(self):
        assert sanitize_rich_comment_html("hello\nworld") == "hello<br>world"

    def test_plain_text_is_escaped(self):
        assert sanitize_rich_comment_html("a < b & c") == "a &lt; b &amp; c"

    def test_script_removed(self):
        assert sanitize_rich_comment_html("<b>bold</b><script>alert(1)</script>") == "<b>bold</b>"

    def test_unclosed_tag_is_closed(self):
        assert sanitize_rich_comment_html("<b>unclosed") == "<b>unclosed</b>"

    def test_misnested_tags(self):
        assert sanitize_rich_comment_html("<b><i>x</b>") == "<b><i>x</i></b>"

    def test_unknown_tags_dropped(self):
        assert sanitize_rich_comment_html("<a href='x'>link</a>") == "link"

    def test_span_keeps_only_known_classes_and_colors(self):
        raw = '<span class="rc-color-1 evil" style="color: #F00; font-size: 40px">x</span>'
        assert sanitize_rich_comment_html(raw) == '<span class="rc-color-1" style="color:#ff0000">x</span>'

    def test_html_comment_removed(self):
        assert sanitize_rich_comment_html("<i>a</i><!-- secret -->") == "<i>a</i>"

    def test_attributes_only_on_span(self):
        raw = '<b class="rc-color-1" style="color:#fff" onclick="x()">bold</b>'
        assert sanitize_rich_comment_html(raw) == "<b>bold</b>"

    def test_span_event_handlers_and_named_colors_dropped(self):
        raw = '<span onmouseover="steal()" style="color: red; background-color: #00f">x</span>'
        assert sanitize_rich_comment_html(raw) == '<span style="background-color:#0000ff">x</span>'

    def test_span_without_allowed_attributes(self):
        assert sanitize_rich_comment_html('<span class="evil" style="position: fixed">x</span>') == "<span>x</span>"

    def test_style_block_content_removed(self):
        assert sanitize_rich_comment_html("<style>b { color: red }</style><p>text</p>") == "<p>text</p>"

    @pytest.mark.parametrize(
        "raw",
        [
            "hello\nworld",
            "a < b & c",
            "<b><i>x</b>",
            '<span style="background: rgb(1, 2, 3)">y</span>',
            "<ul><li>one<li>two</ul>",
            "&amp; &lt;tag&gt;",
        ],
    )
    def test_idempotent(self, raw):
        """Повторная санитизация ничего не меняет"""
        once = sanitize_rich_comment_html(raw)
        assert sanitize_rich_comment_html(once) == once


class TestColors:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("#abc", "#aabbcc"),
            ("#A1B2C3", "#a1b2c3"),
            ("rgb(255, 0, 10)", "#ff000a"),
            ("rgba(300, 0, 0, 0.5)", "#ff0000"),
            ("red", None),
            ("", None),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_rich_color(raw) == expected


class TestCommentText:
    def test_plain_text_of_blocks(self):
        assert rich_comment_to_plain_text("<div>one</div><div>two</div>") == "one two"

    def test_empty_markup(self):
        """Разметка без видимого текста считается пустой"""
        assert sanitize_comment_text("<b> </b>") == ""
        assert sanitize_comment_text(None) == ""

    def test_too_long_text_is_flattened(self):
        assert sanitize_comment_text("x" * 5000) == "x" * 4000
