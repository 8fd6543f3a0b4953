"""HTML/plain-text to PDF rendering for chat delivery.

``RenderingEngine`` owns one headless Chromium per worker process, started on
first use and closed by the worker runtime at shutdown. ``DocumentRenderer``
turns a generation result into an A4 PDF, waiting briefly for MathJax when the
content carries math.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import html
import json
import logging
import re
from typing import Any, AsyncIterator, Optional

from playwright.async_api import Browser, Error as PlaywrightError, Page, Playwright, async_playwright

from services.errors import RenderingError

logger = logging.getLogger(__name__)

CONTENT_KEYS = ("html", "content", "text", "result", "transcription")
MATHJAX_SRC = "https://cdn.jsdelivr.net/npm/mathjax@3/es5/tex-mml-chtml.js"

_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?```\s*$", re.DOTALL)
_HTML_DOC_RE = re.compile(r"<!doctype\s+html|<html[\s>]|<body[\s>]", re.IGNORECASE)
_HTML_TAG_RE = re.compile(
    r"<(p|div|h[1-6]|table|thead|tbody|tr|td|th|ul|ol|li|br|span|strong|em|b|i|section|article)\b[^>]*>",
    re.IGNORECASE,
)
_MATH_RE = re.compile(r"\\\(|\\\[|\$\$|\$[^$\s][^$]*\$|<math[\s>]")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")

DOCUMENT_STYLE = """
  @page { size: A4; margin: 18mm 16mm; }
  body { font-family: "DejaVu Sans", Arial, sans-serif; font-size: 12pt; line-height: 1.5; color: #1f2933; }
  h1, h2, h3 { color: #102a43; margin: 0.8em 0 0.4em; }
  table { border-collapse: collapse; width: 100%; margin: 0.6em 0; }
  td, th { border: 1px solid #bcccdc; padding: 4px 6px; vertical-align: top; }
  p { margin: 0 0 0.7em; }
"""

MATHJAX_CONFIG = (
    "<script>window.MathJax = {tex: {inlineMath: [['$', '$'], ['\\\\(', '\\\\)']]},"
    " startup: {typeset: true}};</script>"
    f'<script id="MathJax-script" src="{MATHJAX_SRC}"></script>'
)

MATH_READY_JS = """
async (timeoutMs) => {
  const typeset = (async () => {
    if (window.MathJax.startup && window.MathJax.startup.promise) {
      await window.MathJax.startup.promise;
    }
    if (window.MathJax.typesetPromise) {
      await window.MathJax.typesetPromise();
    }
    return true;
  })();
  const timeout = new Promise((resolve) => setTimeout(() => resolve(false), timeoutMs));
  return Promise.race([typeset, timeout]);
}
"""


def extract_content(payload: Any) -> str:
    """Return the text/markup carried by a result payload."""
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    if isinstance(payload, dict):
        for key in CONTENT_KEYS:
            value = payload.get(key)
            if value in (None, ""):
                continue
            if isinstance(value, (dict, list)):
                return extract_content(value)
            return str(value)
        return json.dumps(payload, ensure_ascii=False, indent=2)
    if isinstance(payload, list):
        return "\n\n".join(extract_content(item) for item in payload)
    return str(payload)


def strip_wrapping(text: str) -> str:
    """Remove Markdown code fences and wrapping quotes around generated markup."""
    value = text.strip()
    fence = _FENCE_RE.match(value)
    if fence:
        value = fence.group(1).strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        if value[0] == '"':
            try:
                decoded = json.loads(value)
            except ValueError:
                decoded = None
            if isinstance(decoded, str):
                return decoded.strip()
        value = value[1:-1].strip()
    return value


def looks_like_html(text: str) -> bool:
    return bool(_HTML_DOC_RE.search(text) or _HTML_TAG_RE.search(text))


def contains_math(text: str) -> bool:
    return bool(_MATH_RE.search(text))


def text_to_html(text: str) -> str:
    """Escape plain text; blank lines become paragraphs, single newlines become <br>."""
    paragraphs = [part.strip() for part in _PARAGRAPH_SPLIT_RE.split(text.strip()) if part.strip()]
    return "\n".join(
        "<p>" + "<br>\n".join(html.escape(line) for line in part.splitlines()) + "</p>" for part in paragraphs
    )


def build_html_document(payload: Any, *, title: str = "PrepodavAI") -> str:
    """Produce a complete HTML document from a result payload."""
    content = strip_wrapping(extract_content(payload))
    math = contains_math(content)
    head_extra = MATHJAX_CONFIG if math else ""

    if _HTML_DOC_RE.search(content):
        if not math or "MathJax" in content:
            return content
        if re.search(r"</head>", content, re.IGNORECASE):
            return re.sub(r"</head>", lambda _match: head_extra + "</head>", content, count=1, flags=re.IGNORECASE)
        return head_extra + content

    body = content if looks_like_html(content) else text_to_html(content)
    return (
        "<!DOCTYPE html>\n<html>\n<head>\n"
        '<meta charset="utf-8">\n'
        f"<title>{html.escape(title)}</title>\n"
        f"<style>{DOCUMENT_STYLE}</style>\n"
        f"{head_extra}\n"
        "</head>\n<body>\n"
        f"{body}\n"
        "</body>\n</html>\n"
    )


class RenderingEngine:
    """Process-wide headless browser, launched lazily and reused across renders."""

    def __init__(self, *, max_pages: int = 2, headless: bool = True) -> None:
        self.max_pages = max(int(max_pages), 1)
        self.headless = headless
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()
        self._pages = asyncio.Semaphore(self.max_pages)

    @property
    def started(self) -> bool:
        return self._browser is not None

    async def _ensure_browser(self) -> Browser:
        async with self._lock:
            if self._browser is not None and self._browser.is_connected():
                return self._browser
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            logger.info("Launching rendering browser")
            self._browser = await self._playwright.chromium.launch(
                headless=self.headless,
                args=["--no-sandbox", "--disable-dev-shm-usage"],
            )
            return self._browser

    @asynccontextmanager
    async def page(self) -> AsyncIterator[Page]:
        """Yield a page in its own browser context; at most ``max_pages`` at once."""
        async with self._pages:
            browser = await self._ensure_browser()
            context = await browser.new_context()
            try:
                yield await context.new_page()
            finally:
                await context.close()

    async def close(self) -> None:
        async with self._lock:
            if self._browser is not None:
                try:
                    await self._browser.close()
                except PlaywrightError as exc:
                    logger.warning("Rendering browser close failed: %s", exc)
                self._browser = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None


class DocumentRenderer:
    def __init__(self, engine: RenderingEngine, *, timeout_seconds: float = 8, math_timeout_seconds: float = 3) -> None:
        self.engine = engine
        self.timeout_seconds = timeout_seconds
        self.math_timeout_seconds = math_timeout_seconds

    async def render_to_document(self, payload: Any) -> bytes:
        """Render a result payload to PDF bytes. Raises RenderingError on failure or timeout."""
        document = build_html_document(payload)
        try:
            return await asyncio.wait_for(self._render(document), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise RenderingError(f"Rendering timed out after {self.timeout_seconds}s", original_error=exc) from exc
        except PlaywrightError as exc:
            raise RenderingError("Rendering failed", original_error=exc) from exc

    async def _render(self, document: str) -> bytes:
        async with self.engine.page() as page:
            await page.set_content(document, wait_until="domcontentloaded")
            if "MathJax-script" in document:
                await self._wait_for_math(page)
            return await page.pdf(
                format="A4",
                print_background=True,
                margin={"top": "18mm", "bottom": "18mm", "left": "16mm", "right": "16mm"},
            )

    async def _wait_for_math(self, page: Page) -> None:
        timeout_ms = int(self.math_timeout_seconds * 1000)
        try:
            await page.wait_for_function("() => window.MathJax && window.MathJax.typesetPromise", timeout=timeout_ms)
            ready = await page.evaluate(MATH_READY_JS, timeout_ms)
        except PlaywrightError as exc:
            logger.warning("MathJax not ready, rendering without it: %s", exc)
            return
        if not ready:
            logger.warning("MathJax typesetting exceeded %sms, rendering as is", timeout_ms)
