"""Visual context analysis, reading patterns and the attention grid.

Reading patterns model how a person scans a page.  The chosen pattern
orders and paces extraction; its path is reported with the results.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass

from bs4 import BeautifulSoup

from stealth_engine.browser.engine import PageSnapshot, Viewport, VisibleElement

logger = logging.getLogger(__name__)

GRID_CELLS = 20
MAX_HIGH_CONTRAST = 20
DENSE_INTERACTIVE = 20
LOW_TEXT_DENSITY = 0.001

_TRANSPARENT = {"", "transparent", "rgba(0, 0, 0, 0)"}


@dataclass(frozen=True)
class VisualContext:
    viewport: Viewport
    total_elements: int
    interactive_elements: int
    text_density: float
    image_count: int
    has_grid: bool
    has_sidebar: bool
    has_table: bool
    background_color: str | None
    text_color: str | None
    high_contrast: tuple[VisibleElement, ...]

    @property
    def interactive_density(self) -> float:
        return self.interactive_elements / self.total_elements if self.total_elements else 0.0


def analyze_visual_context(snapshot: PageSnapshot) -> VisualContext:
    soup = BeautifulSoup(snapshot.html or "", "html.parser")
    viewport = snapshot.viewport
    area = max(viewport.width * viewport.height, 1)

    text = (soup.body or soup).get_text(" ", strip=True) or snapshot.text

    elements = snapshot.visible_elements
    high_contrast = tuple(
        el
        for el in elements
        if (el.background_color or "") not in _TRANSPARENT
        and el.color != snapshot.body_color
        and el.width > 50
        and el.height > 20
    )[:MAX_HIGH_CONTRAST]

    return VisualContext(
        viewport=viewport,
        total_elements=len(soup.find_all(True)) or len(elements),
        interactive_elements=len(soup.find_all(["a", "button", "input", "select"])),
        text_density=len(text) / area,
        image_count=len(soup.find_all("img")),
        has_grid=any("grid" in (el.display or "") for el in elements),
        has_sidebar=bool(soup.find("aside") or soup.select_one('[class*="sidebar"]')),
        has_table=soup.find("table") is not None,
        background_color=snapshot.body_background,
        text_color=snapshot.body_color,
        high_contrast=high_contrast,
    )


# ---------------------------------------------------------------------------
# Reading patterns
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PathPoint:
    x: float
    y: float
    duration_ms: float

    def to_dict(self) -> dict:
        return {"x": round(self.x, 1), "y": round(self.y, 1), "duration_ms": round(self.duration_ms, 1)}


@dataclass(frozen=True)
class PriorityZone:
    """Viewport fractions with an attention weight."""

    x: float
    y: float
    width: float
    height: float
    weight: float


PathBuilder = Callable[[Viewport, random.Random], list[PathPoint]]


@dataclass(frozen=True)
class ReadingPattern:
    name: str
    description: str
    zones: tuple[PriorityZone, ...]
    builder: PathBuilder

    def generate_path(self, viewport: Viewport, rng: random.Random | None = None) -> list[PathPoint]:
        return self.builder(viewport, rng or random.Random())


def _steps(stop: float, step: float) -> list[float]:
    values, current = [], 0.0
    while current < stop:
        values.append(current)
        current += step
    return values


def _f_path(vp: Viewport, rng: random.Random) -> list[PathPoint]:
    path = [PathPoint(x, vp.height * 0.1, 100) for x in _steps(vp.width, 50)]
    path += [PathPoint(x, vp.height * 0.3, 150) for x in _steps(vp.width * 0.7, 50)]
    y = vp.height * 0.3
    while y < vp.height * 0.8:
        path.append(PathPoint(vp.width * 0.1, y, 200))
        y += 100
    return path


def _z_path(vp: Viewport, rng: random.Random) -> list[PathPoint]:
    path = [PathPoint(x, vp.height * 0.1, 100) for x in _steps(vp.width, 50)]
    steps = 20
    for i in range(steps + 1):
        progress = i / steps
        path.append(PathPoint(vp.width * (1 - progress), vp.height * (0.1 + 0.8 * progress), 50))
    path += [PathPoint(x, vp.height * 0.9, 100) for x in _steps(vp.width, 50)]
    return path


def _layer_cake_path(vp: Viewport, rng: random.Random) -> list[PathPoint]:
    layers = 5
    path = []
    for layer in range(layers):
        y = vp.height / layers * layer + vp.height / (layers * 2)
        path += [PathPoint(x, y, 80) for x in _steps(vp.width, 40)]
    return path


_SPOTS = ((0.5, 0.1), (0.8, 0.2), (0.2, 0.3), (0.5, 0.5), (0.8, 0.8))


def _spot_path(vp: Viewport, rng: random.Random) -> list[PathPoint]:
    return [PathPoint(vp.width * x, vp.height * y, 300 + rng.random() * 200) for x, y in _SPOTS]


F_PATTERN = ReadingPattern(
    "F-pattern",
    "Most common web reading pattern",
    (
        PriorityZone(0, 0, 1, 0.2, 0.9),
        PriorityZone(0, 0.2, 0.7, 0.2, 0.7),
        PriorityZone(0, 0, 0.3, 1, 0.8),
    ),
    _f_path,
)
Z_PATTERN = ReadingPattern(
    "Z-pattern",
    "Simple layouts with a call to action",
    (
        PriorityZone(0, 0, 1, 0.2, 0.9),
        PriorityZone(0, 0.8, 1, 0.2, 0.8),
        PriorityZone(0.3, 0.3, 0.4, 0.4, 0.6),
    ),
    _z_path,
)
LAYER_CAKE = ReadingPattern(
    "layer-cake",
    "Horizontal scanning of distinct sections",
    tuple(PriorityZone(0, i * 0.2, 1, 0.2, w) for i, w in enumerate((0.9, 0.7, 0.6, 0.5, 0.4))),
    _layer_cake_path,
)
SPOT_READING = ReadingPattern(
    "spot-reading",
    "Quick scanning of key information points",
    (
        PriorityZone(0.4, 0, 0.2, 0.2, 0.9),
        PriorityZone(0.7, 0.1, 0.3, 0.2, 0.8),
        PriorityZone(0.4, 0.4, 0.2, 0.2, 0.7),
    ),
    _spot_path,
)

READING_PATTERNS: dict[str, ReadingPattern] = {
    p.name: p for p in (F_PATTERN, Z_PATTERN, LAYER_CAKE, SPOT_READING)
}


def select_reading_pattern(context: VisualContext) -> ReadingPattern:
    if context.has_table:
        return LAYER_CAKE
    if context.has_grid and context.interactive_elements > DENSE_INTERACTIVE:
        return SPOT_READING
    if context.has_sidebar:
        return F_PATTERN
    if context.text_density < LOW_TEXT_DENSITY:
        return Z_PATTERN
    return F_PATTERN


# ---------------------------------------------------------------------------
# Attention grid
# ---------------------------------------------------------------------------


def build_attention_grid(context: VisualContext, cells: int = GRID_CELLS) -> list[list[float]]:
    """Normalised cells x cells grid; top-left bias plus high-contrast weight."""
    vp = context.viewport
    cell_w = vp.width / cells
    cell_h = vp.height / cells
    grid = [[0.0] * cells for _ in range(cells)]

    for el in context.high_contrast:
        cx, cy = int(el.x // cell_w), int(el.y // cell_h)
        if 0 <= cx < cells and 0 <= cy < cells:
            grid[cy][cx] += min(1.0, el.area / 50000) * 0.5

    for y in range(cells):
        for x in range(cells):
            grid[y][x] += (1 - (x + y) / (cells * 2)) * 0.3

    peak = max(max(row) for row in grid)
    if peak > 0:
        grid = [[value / peak for value in row] for row in grid]
    return grid


def attention_at(grid: list[list[float]], viewport: Viewport, x: float, y: float) -> float:
    cells = len(grid)
    if not cells:
        return 0.0
    cx = min(max(int(x / (viewport.width / cells)), 0), cells - 1)
    cy = min(max(int(y / (viewport.height / cells)), 0), cells - 1)
    return grid[cy][cx]
