"""
Web page surface rendered by headless Chromium (pyppeteer).

A MutationObserver injected into the page reports the bounding boxes
of mutated elements together with their level tags (an ancestor
carrying ``eink-4levels`` or ``no-eink-4levels``). Python merges each
batch into one damage notification.

Usage:
    surface = BrowserSurface('http://localhost:8080')
    await surface.launch()
    await surface.set_viewport(1872, 1404)
    frame = await surface.capture_region()
"""

from __future__ import annotations

import asyncio
import logging
import os

from pyppeteer import launch
from pyppeteer.errors import PyppeteerError, TimeoutError as PyppeteerTimeoutError

from inkmirror.errors import SurfaceUnavailable
from inkmirror.quantize import Frame
from inkmirror.regions import LevelHint, Rect
from inkmirror.surface import decode_grayscale, merge_mutations

logger = logging.getLogger(__name__)

CHROMIUM_PATH = '/usr/bin/chromium-browser'
CHROMIUM_ARGS = ['--disable-gpu', '--single-process', '--disable-dev-shm-usage']
SETTLE_DELAY = 5.0       # Seconds to let Chromium settle before navigating (Pi Zero 2W)
CONTENT_TIMEOUT = 60000  # ms to wait for the first content area

FEW_LEVEL_CLASS = 'eink-4levels'
FULL_LEVEL_CLASS = 'no-eink-4levels'
CONTENT_SELECTOR = '.module'
BINDING_NAME = 'inkmirrorDamage'

# pyppeteer's TimeoutError derives from the builtin one, not PyppeteerError.
BROWSER_ERRORS = (PyppeteerError, PyppeteerTimeoutError)

OBSERVER_SCRIPT = """
(args) => {
    const [binding, fewClass, fullClass] = args;
    const observer = new MutationObserver((mutations) => {
        const records = [];
        for (const mutation of mutations) {
            let el = mutation.target;
            if (el.nodeType !== Node.ELEMENT_NODE) el = el.parentElement;
            if (!el) continue;
            const r = el.getBoundingClientRect();
            records.push([r.left, r.top, r.right, r.bottom,
                          el.closest('.' + fewClass) !== null,
                          el.closest('.' + fullClass) !== null]);
        }
        if (records.length) window[binding](records);
    });
    observer.observe(document.body, {childList: true, subtree: true});
}
"""

CONTENT_SCRIPT = """
(args) => {
    const [selector, fewClass, fullClass] = args;
    return Array.from(document.querySelectorAll(selector))
        .filter(el => el.offsetParent !== null)
        .map(el => [el.classList.contains(fewClass), el.classList.contains(fullClass)]);
}
"""


class BrowserSurface:
    """Surface protocol over a pyppeteer page."""

    def __init__(self, url: str, executable_path: str = CHROMIUM_PATH,
                 content_selector: str = CONTENT_SELECTOR,
                 settle_delay: float = SETTLE_DELAY):
        self.url = url
        self.executable_path = executable_path
        self.content_selector = content_selector
        self.settle_delay = settle_delay
        self.width = 0
        self.height = 0
        self._browser = None
        self._page = None
        self._callback = None

    async def launch(self):
        """Start Chromium, open the page and wait for content to appear."""
        args = list(CHROMIUM_ARGS)
        if hasattr(os, 'getuid') and os.getuid() == 0:
            args.append('--no-sandbox')
        try:
            self._browser = await launch(executablePath=self.executable_path, args=args,
                                         handleSIGINT=False, handleSIGTERM=False,
                                         handleSIGHUP=False)
            self._page = await self._browser.newPage()
            self._page.on('console', lambda msg: logger.debug(
                "[page console] %s: %s", msg.type, msg.text))
            self._page.on('pageerror', lambda err: logger.error("[page error] %s", err))
            await asyncio.sleep(self.settle_delay)
            await self._page.goto(self.url, waitUntil='load')
            logger.info("Browser surface loaded %s", self.url)
            await self._page.waitForFunction(
                f'document.querySelectorAll({self.content_selector!r}).length > 0',
                timeout=CONTENT_TIMEOUT)
        except BROWSER_ERRORS as exc:
            raise SurfaceUnavailable(f"unable to load {self.url}: {exc}") from exc

    async def set_viewport(self, width, height):
        self.width, self.height = width, height
        await self._call(self._require_page().setViewport,
                         {'width': width, 'height': height, 'deviceScaleFactor': 1})

    async def capture_region(self, rect=None):
        page = self._require_page()
        if rect is None:
            rect = Rect(0, 0, self.width, self.height)
        clip = {'x': rect.left, 'y': rect.top, 'width': rect.width, 'height': rect.height}
        png = await self._call(page.screenshot, {'type': 'png', 'clip': clip})
        pixels, width, height = decode_grayscale(png)
        if (width, height) != (rect.width, rect.height):
            raise SurfaceUnavailable(
                f"capture of {rect.as_tuple()} returned {width}x{height} pixels")
        return Frame(pixels, rect)

    def on_damage(self, callback):
        self._callback = callback

    async def start_observing(self):
        page = self._require_page()
        await self._call(page.exposeFunction, BINDING_NAME, self._handle_mutations)
        await self._call(page.evaluate, OBSERVER_SCRIPT,
                         [BINDING_NAME, FEW_LEVEL_CLASS, FULL_LEVEL_CLASS])
        logger.info("Observing page mutations")

    async def content_hints(self):
        flags = await self._call(self._require_page().evaluate, CONTENT_SCRIPT,
                                 [self.content_selector, FEW_LEVEL_CLASS, FULL_LEVEL_CLASS])
        return [LevelHint.from_tags(few, full) for few, full in flags]

    async def close(self):
        if self._browser is not None:
            browser, self._browser, self._page = self._browser, None, None
            await browser.close()

    def _handle_mutations(self, records):
        merged = merge_mutations(records)
        if merged is None or self._callback is None:
            return
        rect, few, full = merged
        self._callback(rect, few, full)

    def _require_page(self):
        if self._page is None:
            raise SurfaceUnavailable("browser page not open")
        return self._page

    @staticmethod
    async def _call(fn, *args):
        try:
            return await fn(*args)
        except BROWSER_ERRORS as exc:
            raise SurfaceUnavailable(str(exc) or type(exc).__name__) from exc
