import asyncio
from contextlib import asynccontextmanager

import pytest
from playwright.async_api import Error as PlaywrightError

from services.errors import RenderingError
from services.rendering import (
    DocumentRenderer,
    build_html_document,
    contains_math,
    extract_content,
    looks_like_html,
    strip_wrapping,
    text_to_html,
)


class _FakePage:
    def __init__(self, delay: float = 0.0, error: Exception = None):
        self.delay = delay
        self.error = error
        self.content = None
        self.waited_for_math = False

    async def set_content(self, html, wait_until=None):
        if self.error is not None:
            raise self.error
        await asyncio.sleep(self.delay)
        self.content = html

    async def wait_for_function(self, expression, timeout=None):
        self.waited_for_math = True

    async def evaluate(self, expression, arg=None):
        return True

    async def pdf(self, **kwargs):
        assert kwargs["format"] == "A4"
        return b"%PDF-1.7"


class _FakeEngine:
    def __init__(self, page: _FakePage):
        self._page = page

    @asynccontextmanager
    async def page(self):
        yield self._page


def test_code_fences_and_quotes_are_stripped():
    assert strip_wrapping("```html\n<p>Hi</p>\n```") == "<p>Hi</p>"
    assert strip_wrapping('"<p>Quoted</p>"') == "<p>Quoted</p>"
    assert strip_wrapping('"line\\nbreak"') == "line\nbreak"
    assert strip_wrapping("plain") == "plain"


def test_html_detection():
    assert looks_like_html("<!DOCTYPE html><html><body></body></html>")
    assert looks_like_html("Intro <p>paragraph</p>")
    assert not looks_like_html("2 < 3 and 5 > 4")
    assert contains_math(r"Solve \(x^2 = 4\)")
    assert contains_math("$$a+b$$")
    assert not contains_math("No formulas here")


def test_plain_text_is_escaped_and_wrapped():
    html = text_to_html("Line one\nLine <two>\n\nSecond paragraph")
    assert html == "<p>Line one<br>\nLine &lt;two&gt;</p>\n<p>Second paragraph</p>"


def test_document_includes_mathjax_only_for_math():
    plain = build_html_document({"content": "Just words"})
    assert "<p>Just words</p>" in plain
    assert "MathJax" not in plain

    math = build_html_document({"content": r"Area is \(\pi r^2\)"})
    assert "MathJax-script" in math

    full = "<html><head><title>x</title></head><body>$$x$$</body></html>"
    injected = build_html_document(full)
    assert injected.index("MathJax-script") < injected.index("</head>")


def test_extract_content_prefers_known_keys():
    assert extract_content({"html": "<p>a</p>", "content": "b"}) == "<p>a</p>"
    assert extract_content({"transcription": "spoken"}) == "spoken"
    assert extract_content("raw") == "raw"
    assert '"score": 5' in extract_content({"score": 5})


@pytest.mark.asyncio
async def test_renderer_produces_pdf_and_waits_for_math():
    page = _FakePage()
    renderer = DocumentRenderer(_FakeEngine(page), timeout_seconds=1, math_timeout_seconds=0.1)

    assert await renderer.render_to_document({"content": "no math"}) == b"%PDF-1.7"
    assert page.waited_for_math is False

    assert await renderer.render_to_document({"content": r"\(x\)"}) == b"%PDF-1.7"
    assert page.waited_for_math is True


@pytest.mark.asyncio
async def test_renderer_timeout_is_reported_as_rendering_error():
    renderer = DocumentRenderer(_FakeEngine(_FakePage(delay=1.0)), timeout_seconds=0.05)
    with pytest.raises(RenderingError):
        await renderer.render_to_document({"content": "slow"})


@pytest.mark.asyncio
async def test_browser_errors_are_reported_as_rendering_error():
    renderer = DocumentRenderer(_FakeEngine(_FakePage(error=PlaywrightError("browser crashed"))), timeout_seconds=1)
    with pytest.raises(RenderingError):
        await renderer.render_to_document({"content": "boom"})
