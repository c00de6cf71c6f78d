"""Playwright implementation of the browser automation contract.

One headless Chromium process is shared by all sessions; each session gets
its own browser context routed through the session's proxy and carrying its
fingerprint, so cookies and storage never leak between identities.
Crashes surface as ``NavigationError`` with a message the error classifier
recognizes as a resource fault.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from stealth_engine.browser.engine import PageSnapshot, Viewport, VisibleElement
from stealth_engine.browser.fingerprint import STEALTH_INIT_JS
from stealth_engine.middleware.error_handler import NavigationError

if TYPE_CHECKING:
    from stealth_engine.browser.fingerprint import FingerprintProfile
    from stealth_engine.proxy.types import ProxyConfig

logger = logging.getLogger(__name__)

# Chromium flags for containerized / headless operation
CHROMIUM_ARGS: list[str] = [
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-blink-features=AutomationControlled",
]

# Chromium net:: error fragments → classifier network codes
_NET_ERROR_CODES: dict[str, str] = {
    "ERR_TIMED_OUT": "ETIMEDOUT",
    "ERR_CONNECTION_REFUSED": "ECONNREFUSED",
    "ERR_NAME_NOT_RESOLVED": "ENOTFOUND",
    "ERR_CERT": "CERT_INVALID",
    "ERR_SSL": "CERT_SSL_ERROR",
    "ERR_PROXY": "PROXY_CONNECTION_FAILED",
    "ERR_TUNNEL_CONNECTION_FAILED": "PROXY_TUNNEL_FAILED",
}

# Collects rendered elements that own non-empty text, with bounds and styles
_VISIBLE_ELEMENTS_JS = """
() => {
    const out = [];
    for (const el of document.body ? document.body.querySelectorAll('*') : []) {
        const style = window.getComputedStyle(el);
        if (style.display === 'none' || style.visibility === 'hidden') continue;
        const ownText = Array.from(el.childNodes)
            .filter(n => n.nodeType === Node.TEXT_NODE)
            .map(n => n.textContent.trim())
            .join(' ')
            .trim();
        if (!ownText) continue;
        const rect = el.getBoundingClientRect();
        if (rect.width === 0 && rect.height === 0) continue;
        const attributes = {};
        for (const attr of el.attributes) attributes[attr.name] = attr.value;
        out.push({
            tag: el.tagName.toLowerCase(),
            text: (el.innerText || ownText).trim().slice(0, 2000),
            x: rect.left + window.scrollX,
            y: rect.top + window.scrollY,
            width: rect.width,
            height: rect.height,
            classes: Array.from(el.classList),
            id: el.id || null,
            attributes,
            display: style.display,
            background: style.backgroundColor,
            color: style.color,
        });
    }
    const body = document.body ? window.getComputedStyle(document.body) : null;
    return {
        elements: out,
        bodyBackground: body ? body.backgroundColor : null,
        bodyColor: body ? body.color : null,
        viewport: { width: window.innerWidth, height: window.innerHeight },
    };
}
"""

_INJECT_TOKEN_JS = """
(token) => {
    for (const name of ['g-recaptcha-response', 'h-captcha-response']) {
        for (const field of document.querySelectorAll(`[name="${name}"]`)) {
            field.value = token;
        }
    }
    const form = document.querySelector('form');
    if (form) form.submit();
}
"""


@dataclass
class PlaywrightSession:
    """Live context and page for one collection session."""

    id: str
    context: Any  # playwright.async_api.BrowserContext at runtime
    page: Any  # playwright.async_api.Page at runtime
    last_status: int | None = None


class PlaywrightEngine:
    """Browser engine backed by a single headless Chromium instance.

    Lifecycle
    ---------
    1. ``start()`` launches Playwright and Chromium.
    2. ``create_session`` / ``navigate`` / ``snapshot`` / ``close`` per session.
    3. ``shutdown()`` closes every open context and the browser.
    """

    def __init__(self, *, headless: bool = True, capture_screenshots: bool = False) -> None:
        self._headless = headless
        self._capture_screenshots = capture_screenshots
        self._playwright: Any = None
        self._browser: Any = None
        self._sessions: dict[str, PlaywrightSession] = {}
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        from playwright.async_api import async_playwright

        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self._headless,
            args=CHROMIUM_ARGS,
        )
        logger.info("Playwright engine started (headless=%s)", self._headless)

    async def shutdown(self) -> None:
        for session_id in list(self._sessions):
            await self.close(self._sessions[session_id])
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        logger.info("Playwright engine shut down")

    @property
    def started(self) -> bool:
        return self._browser is not None

    # ------------------------------------------------------------------
    # BrowserEngine contract
    # ------------------------------------------------------------------

    async def create_session(
        self,
        proxy: ProxyConfig | None,
        fingerprint: FingerprintProfile,
    ) -> PlaywrightSession:
        if self._browser is None or not self._browser.is_connected():
            async with self._lock:
                if self._browser is None or not self._browser.is_connected():
                    await self._relaunch()

        options = fingerprint.context_options()
        if proxy is not None:
            options["proxy"] = {
                "server": proxy.server,
                "username": proxy.username,
                "password": proxy.password,
                "bypass": ",".join(proxy.bypass),
            }

        context = await self._browser.new_context(**options)
        await context.add_init_script(
            script=f"({STEALTH_INIT_JS})({json.dumps(fingerprint.init_script_hints())})"
        )
        page = await context.new_page()

        session = PlaywrightSession(id=str(uuid4()), context=context, page=page)
        self._sessions[session.id] = session
        logger.debug("Created browser session %s", session.id)
        return session

    async def navigate(
        self,
        handle: PlaywrightSession,
        url: str,
        *,
        timeout_ms: int,
        wait_until: str = "domcontentloaded",
    ) -> PageSnapshot:
        from playwright.async_api import Error as PlaywrightError
        from playwright.async_api import TimeoutError as PlaywrightTimeoutError

        try:
            response = await handle.page.goto(url, timeout=timeout_ms, wait_until=wait_until)
        except PlaywrightTimeoutError as exc:
            raise NavigationError(
                f"Navigation timeout of {timeout_ms}ms exceeded",
                code="ETIMEDOUT",
            ) from exc
        except PlaywrightError as exc:
            raise NavigationError(str(exc), code=_net_error_code(str(exc))) from exc

        handle.last_status = response.status if response is not None else None
        snapshot = await self.snapshot(handle)

        if handle.last_status is not None and handle.last_status >= 400:
            raise NavigationError(
                f"HTTP {handle.last_status} from {url}",
                status=handle.last_status,
                page_content=snapshot.html,
            )
        return snapshot

    async def snapshot(self, handle: PlaywrightSession) -> PageSnapshot:
        from playwright.async_api import Error as PlaywrightError

        page = handle.page
        try:
            html = await page.content()
            collected = await page.evaluate(_VISIBLE_ELEMENTS_JS)
            screenshot = await page.screenshot(full_page=True) if self._capture_screenshots else None
        except PlaywrightError as exc:
            # Target closed / crashed pages surface here
            raise NavigationError(f"page crashed: {exc}") from exc

        elements = tuple(
            VisibleElement(
                tag=item["tag"],
                text=item["text"],
                x=float(item["x"]),
                y=float(item["y"]),
                width=float(item["width"]),
                height=float(item["height"]),
                classes=tuple(item["classes"]),
                element_id=item["id"],
                attributes=MappingProxyType(dict(item["attributes"])),
                display=item["display"],
                background_color=item["background"],
                color=item["color"],
            )
            for item in collected["elements"]
        )
        viewport = collected.get("viewport") or {}

        return PageSnapshot(
            url=page.url,
            html=html,
            visible_elements=elements,
            viewport=Viewport(
                width=int(viewport.get("width", 1366)),
                height=int(viewport.get("height", 768)),
            ),
            status=handle.last_status,
            screenshot=screenshot,
            body_background=collected.get("bodyBackground"),
            body_color=collected.get("bodyColor"),
        )

    async def inject_captcha_token(self, handle: PlaywrightSession, token: str) -> None:
        await handle.page.evaluate(_INJECT_TOKEN_JS, token)
        await handle.page.wait_for_load_state("domcontentloaded")

    async def close(self, handle: PlaywrightSession) -> None:
        self._sessions.pop(handle.id, None)
        try:
            await handle.context.close()
        except Exception:
            logger.debug("Error closing session %s (may already be closed)", handle.id, exc_info=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _relaunch(self) -> None:
        if self._playwright is None:
            await self.start()
            return
        logger.warning("Browser disconnected, relaunching Chromium")
        self._sessions.clear()
        self._browser = await self._playwright.chromium.launch(
            headless=self._headless,
            args=CHROMIUM_ARGS,
        )

    def get_stats(self) -> dict:
        return {
            "started": self.started,
            "open_sessions": len(self._sessions),
        }


def _net_error_code(message: str) -> str | None:
    for fragment, code in _NET_ERROR_CODES.items():
        if fragment in message:
            return code
    return None
