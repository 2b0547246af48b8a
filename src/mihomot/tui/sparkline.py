"""Sparkline widget for the traffic history.

Byte counters have no natural ceiling, so the vertical scale follows the
largest visible value. Supports multi-row height for finer resolution.
"""

from __future__ import annotations

from collections.abc import Sequence
from enum import Enum
from typing import TYPE_CHECKING

from rich.text import Text
from textual.reactive import reactive
from textual.widgets import Static

if TYPE_CHECKING:
    from textual.app import RenderResult


class SparklineMode(Enum):
    """Rendering mode for sparkline characters."""

    BLOCKS = "blocks"  # ▁▂▃▄▅▆▇█ - solid bars
    BRAILLE = "braille"  # ⡀⣀⣄⣤⣦⣶⣷⣿ - dot patterns


def scale_levels(values: Sequence[float], total_levels: int, ceiling: float | None = None) -> list[int]:
    """Map values onto 0..total_levels against `ceiling` (default: the largest value).

    Any non-zero value gets at least one level so that light traffic is
    still visible next to a burst.
    """
    if not values:
        return []
    top = ceiling if ceiling is not None else max(values)
    if top <= 0:
        return [0] * len(values)
    levels = []
    for value in values:
        level = int(max(0.0, min(1.0, value / top)) * total_levels)
        if value > 0 and level == 0:
            level = 1
        levels.append(level)
    return levels


class Sparkline(Static):
    """A sparkline showing the newest values that fit the widget width.

    The owner pushes the whole visible window with `set_data()`; the widget
    keeps no history of its own, the ring buffers do.

    Values are scaled to fit the vertical range:
    - height=1: 8 levels (▁ to █)
    - height=2: 16 levels (bottom row fills first, then top)
    - height=3: 24 levels
    """

    # Character sets for each mode (9 levels: empty + 8 filled)
    CHARS: dict[SparklineMode, str] = {
        SparklineMode.BLOCKS: " ▁▂▃▄▅▆▇█",
        SparklineMode.BRAILLE: " ⡀⣀⣄⣤⣦⣶⣷⣿",
    }
    LEVELS_PER_ROW = 8

    DEFAULT_CSS = """
    Sparkline {
        width: 1fr;
        height: 1fr;
    }
    """

    # Reactive property - triggers re-render on change
    data: reactive[list[float]] = reactive(list, always_update=True)

    def __init__(
        self,
        height: int = 2,
        color: str = "",
        mode: SparklineMode = SparklineMode.BLOCKS,
        **kwargs,
    ) -> None:
        """Initialize sparkline.

        Args:
            height: Number of character rows (1-4). Each row adds 8 levels.
            color: Rich color for the bars; empty for the default foreground.
            mode: Character set to use (BLOCKS or BRAILLE).
            **kwargs: Passed to Static.__init__
        """
        super().__init__(**kwargs)
        self._height = max(1, min(4, height))  # Clamp to 1-4
        self._color = color
        self._mode = mode

    @property
    def visible_width(self) -> int:
        """How many samples fit; 0 before the first layout."""
        return self.size.width

    def set_data(self, values: Sequence[float]) -> None:
        """Replace the displayed window, keeping only what fits."""
        width = self.visible_width
        window = list(values)
        if width > 0 and len(window) > width:
            window = window[-width:]
        self.data = window

    def render(self) -> RenderResult:
        """Render the sparkline as Rich Text."""
        width = max(1, self.visible_width)
        if not self.data:
            return Text("\n".join(" " * width for _ in range(self._height)))

        levels = scale_levels(self.data, self._height * self.LEVELS_PER_ROW)
        rows: list[Text] = [Text() for _ in range(self._height)]
        for level in levels:
            for row_idx, char in enumerate(self._render_column(level)):
                rows[row_idx].append(char, style=self._color or None)

        # Rows were built bottom to top
        result = Text()
        for i, row in enumerate(reversed(rows)):
            if i > 0:
                result.append("\n")
            result.append(row)
        return result

    def _render_column(self, level: int) -> list[str]:
        """Characters for one column, bottom row first."""
        chars = self.CHARS[self._mode]
        column: list[str] = []
        for row in range(self._height):
            remaining = level - row * self.LEVELS_PER_ROW
            if remaining <= 0:
                column.append(chars[0])
            elif remaining >= self.LEVELS_PER_ROW:
                column.append(chars[self.LEVELS_PER_ROW])
            else:
                column.append(chars[remaining])
        return column

    def watch_data(self, new_data: list[float]) -> None:
        """React to data changes by refreshing the widget."""
        self.refresh()
