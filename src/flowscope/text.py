"""Text measurement and node box text layout for export."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from PIL import ImageFont

logger = logging.getLogger(__name__)

AVERAGE_CHAR_WIDTH = 0.6
LINE_HEIGHT_FACTOR = 1.25

TITLE_COLOR = "#0f172a"
SCORE_COLOR = "#1d4ed8"
DETAIL_COLOR = "#475569"
DESCRIPTION_COLOR = "#334155"


class TextMeasurer:
    """Caches Pillow fonts and exposes width/metrics helpers.

    Falls back to a fixed average character width when no font file can be
    loaded or when constructed with `use_fonts=False`.
    """

    REGULAR_FONTS = ["DejaVuSans.ttf", "Arial.ttf", "LiberationSans-Regular.ttf"]
    BOLD_FONTS = ["DejaVuSans-Bold.ttf", "Arial Bold.ttf", "LiberationSans-Bold.ttf"]

    def __init__(self, use_fonts: bool = True) -> None:
        self.use_fonts = use_fonts
        self._font_cache: Dict[Tuple[bool, int], Optional[ImageFont.FreeTypeFont]] = {}

    def font(self, size: float, bold: bool = False) -> Optional[ImageFont.FreeTypeFont]:
        if not self.use_fonts:
            return None
        key = (bold, max(1, int(round(size))))
        if key in self._font_cache:
            return self._font_cache[key]
        font: Optional[ImageFont.FreeTypeFont] = None
        for candidate in self.BOLD_FONTS if bold else self.REGULAR_FONTS:
            try:
                font = ImageFont.truetype(candidate, key[1])
                break
            except OSError:
                continue
        if font is None:
            logger.debug("no font found for size=%s bold=%s, using width estimate", key[1], bold)
        self._font_cache[key] = font
        return font

    def measure(self, text: str, size: float, bold: bool = False) -> float:
        font = self.font(size, bold)
        if font is None:
            return heuristic_width(text, size)
        return float(font.getlength(text))

    def metrics(self, size: float, bold: bool = False) -> Tuple[float, float, float]:
        """Return (ascent, descent, line height) for a font size."""
        font = self.font(size, bold)
        if font is None:
            ascent = 0.8 * size
            descent = 0.2 * size
            return ascent, descent, size * LINE_HEIGHT_FACTOR
        ascent, descent = font.getmetrics()
        return float(ascent), float(descent), max(float(ascent + descent), size * LINE_HEIGHT_FACTOR)

    def line_height(self, size: float, bold: bool = False) -> float:
        return self.metrics(size, bold)[2]


def heuristic_width(text: str, font_size: float) -> float:
    return len(text) * font_size * AVERAGE_CHAR_WIDTH


@dataclass(frozen=True)
class TextSegment:
    kind: str
    text: str
    font_size: float = 12.0
    font_weight: str = "normal"
    color: str = DETAIL_COLOR

    @property
    def bold(self) -> bool:
        return self.font_weight in {"bold", "600", "700"}


@dataclass(frozen=True)
class TextLine:
    text: str
    segment: TextSegment
    baseline: float
    width: float


@dataclass
class TextBox:
    width: float
    height: float
    lines: List[TextLine] = field(default_factory=list)


def node_segments(node: Any) -> List[TextSegment]:
    """Display segments for a node: title, score, budget/cost, item count, description."""
    data: Mapping[str, Any] = getattr(node, "data", None) or {}
    node_id = getattr(node, "id", None) or data.get("id") or ""
    title = str(data.get("Name") or data.get("title") or data.get("label") or node_id).strip()
    segments = [TextSegment("title", title or str(node_id), 14.0, "600", TITLE_COLOR)]

    score = data.get("score")
    if _is_number(score):
        text = f"Score: {_format_number(score)}"
        normalized = data.get("normalizedScore")
        if _is_number(normalized):
            text += f" ({round(normalized * 100)}%)"
        segments.append(TextSegment("score", text, 12.0, "600", SCORE_COLOR))

    money: List[str] = []
    for key in ("Budget", "Cost"):
        value = data.get(key)
        if value is None or value == "":
            continue
        money.append(f"{key}: {_format_number(value) if _is_number(value) else str(value).strip()}")
    if money:
        segments.append(TextSegment("budget", " | ".join(money), 11.0, "normal", DETAIL_COLOR))

    if getattr(node, "type", None) == "group":
        count = len(data.get("children") or [])
        noun = "item" if count == 1 else "items"
        segments.append(TextSegment("count", f"{count} {noun}", 11.0, "normal", DETAIL_COLOR))

    description = str(data.get("Description") or "").strip()
    if description:
        segments.append(TextSegment("description", description, 11.0, "normal", DESCRIPTION_COLOR))
    return segments


def wrap_text(text: str, max_width: float, measure: Callable[[str], float]) -> List[str]:
    """Word-wrap `text` to `max_width`; words wider than the limit are split."""
    words = re.split(r"(\s+)", text.strip())
    lines: List[str] = []
    current = ""
    for chunk in words:
        if not chunk:
            continue
        candidate = (current + chunk) if current else chunk
        if measure(candidate.strip()) <= max_width:
            current = candidate
            continue
        if current.strip():
            lines.append(current.strip())
        current = ""
        if chunk.isspace():
            continue
        pieces = _hard_split(chunk, max_width, measure)
        lines.extend(pieces[:-1])
        current = pieces[-1]
    if current.strip():
        lines.append(current.strip())
    return lines or [""]


def _hard_split(word: str, max_width: float, measure: Callable[[str], float]) -> List[str]:
    pieces: List[str] = []
    current = ""
    for ch in word:
        if current and measure(current + ch) > max_width:
            pieces.append(current)
            current = ch
        else:
            current += ch
    pieces.append(current)
    return pieces


def layout_box(
    segments: Sequence[TextSegment],
    measurer: Optional[TextMeasurer] = None,
    *,
    min_width: float = 120.0,
    max_width: float = 240.0,
    min_height: float = 48.0,
    padding: float = 12.0,
    line_gap: float = 2.0,
) -> TextBox:
    """Wrap segments into a box whose width fits the longest line.

    Width is clamped to [min_width, max_width] and height is at least
    `min_height`. Baselines are relative to the box top.
    """
    measurer = measurer or TextMeasurer()
    content_width = max(1.0, max_width - 2 * padding)
    lines: List[TextLine] = []
    widest = 0.0
    cursor = padding
    for index, segment in enumerate(segments):
        if not segment.text:
            continue
        ascent, _descent, line_height = measurer.metrics(segment.font_size, segment.bold)

        def _measure(value: str, seg: TextSegment = segment) -> float:
            return measurer.measure(value, seg.font_size, seg.bold)

        if index and lines:
            cursor += line_gap
        for text in wrap_text(segment.text, content_width, _measure):
            width = _measure(text)
            widest = max(widest, width)
            lines.append(TextLine(text=text, segment=segment, baseline=cursor + ascent, width=width))
            cursor += line_height
    width = min(max_width, max(min_width, widest + 2 * padding))
    height = max(min_height, cursor + padding)
    return TextBox(width=width, height=height, lines=lines)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value == value


def _format_number(value: float) -> str:
    if float(value).is_integer():
        return f"{int(value):,}"
    return f"{value:,.2f}".rstrip("0").rstrip(".")
