"""Browser automation contract.

The collection core depends only on this narrow interface: create a session
routed through a proxy with a fingerprint, navigate, snapshot the rendered
page, hand a solved CAPTCHA token back to the page, close. Any automation
product can sit behind it; ``playwright_engine`` is the shipped one.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from stealth_engine.browser.fingerprint import FingerprintProfile
    from stealth_engine.proxy.types import ProxyConfig


@dataclass(frozen=True)
class Viewport:
    width: int = 1366
    height: int = 768


@dataclass(frozen=True)
class VisibleElement:
    """A rendered element with non-empty text, its bounds and computed styles."""

    tag: str
    text: str
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0
    classes: tuple[str, ...] = ()
    element_id: str | None = None
    attributes: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    display: str = "block"
    background_color: str | None = None
    color: str | None = None

    @property
    def area(self) -> float:
        return max(self.width, 0.0) * max(self.height, 0.0)


@dataclass(frozen=True)
class PageSnapshot:
    """Everything the core reads from a rendered page."""

    url: str
    html: str
    visible_elements: tuple[VisibleElement, ...] = ()
    viewport: Viewport = field(default_factory=Viewport)
    status: int | None = None
    screenshot: bytes | None = None
    body_background: str | None = None
    body_color: str | None = None

    @property
    def text(self) -> str:
        return " ".join(element.text for element in self.visible_elements)


@runtime_checkable
class BrowserEngine(Protocol):
    """Collaborator that renders pages for a session.

    ``navigate`` raises :class:`~stealth_engine.middleware.error_handler.NavigationError`
    on load failures and timeouts.
    """

    async def create_session(
        self,
        proxy: ProxyConfig | None,
        fingerprint: FingerprintProfile,
    ) -> object: ...

    async def navigate(
        self,
        handle: object,
        url: str,
        *,
        timeout_ms: int,
        wait_until: str = "domcontentloaded",
    ) -> PageSnapshot: ...

    async def snapshot(self, handle: object) -> PageSnapshot: ...

    async def inject_captcha_token(self, handle: object, token: str) -> None: ...

    async def close(self, handle: object) -> None: ...
