"""Free-hand signature surface rendered onto a fixed-size Pillow raster.

Beginner terms used in this file:
- Surface-local coordinates: origin at the pad's top-left corner, whatever the
  page scroll or the input device.
- Stroke: one continuous pen-down gesture, stored as its list of points.
- Raster: the pixel image the strokes are drawn into (exported as PNG).
"""

from __future__ import annotations

import io
import threading
from dataclasses import dataclass
from typing import Literal

from PIL import Image, ImageDraw

from .errors import EmptySignatureError
from .images import encode_data_url

DEFAULT_WIDTH = 600
DEFAULT_HEIGHT = 150
DEFAULT_LINE_WIDTH = 2
BACKGROUND = (255, 255, 255)
INK = (0, 0, 0)

PointerKind = Literal["down", "move", "up", "leave", "start", "end", "cancel"]
PointerSource = Literal["mouse", "touch", "pen"]

_BEGIN_KINDS = {"down", "start"}
_END_KINDS = {"up", "leave", "end", "cancel"}


@dataclass(frozen=True)
class SurfaceRect:
    """Bounding box of the pad as laid out on screen, in client coordinates."""

    left: float
    top: float
    width: float = 0.0
    height: float = 0.0


@dataclass(frozen=True)
class Point:
    x: float
    y: float

    @classmethod
    def from_client(
        cls,
        client_x: float,
        client_y: float,
        rect: SurfaceRect,
        *,
        raster_size: tuple[int, int] | None = None,
    ) -> Point:
        x = client_x - rect.left
        y = client_y - rect.top
        # Displayed size can differ from raster size when the pad is stretched by CSS.
        if raster_size is not None and rect.width > 0 and rect.height > 0:
            x *= raster_size[0] / rect.width
            y *= raster_size[1] / rect.height
        return cls(x=x, y=y)


@dataclass(frozen=True)
class PointerInput:
    """Pointer or touch event normalized to one contact point."""

    kind: PointerKind
    client_x: float = 0.0
    client_y: float = 0.0
    source: PointerSource = "mouse"


class SignaturePad:
    """Record strokes, draw them with round caps and report whether any ink exists."""

    def __init__(
        self,
        width: int = DEFAULT_WIDTH,
        height: int = DEFAULT_HEIGHT,
        line_width: int = DEFAULT_LINE_WIDTH,
    ) -> None:
        if width <= 0 or height <= 0:
            raise ValueError("signature surface dimensions must be positive")
        if line_width <= 0:
            raise ValueError("line_width must be positive")
        self.width = width
        self.height = height
        self.line_width = line_width
        self._lock = threading.RLock()
        self._image = Image.new("RGB", (width, height), BACKGROUND)
        self._draw = ImageDraw.Draw(self._image)
        self._strokes: list[list[Point]] = []
        self._current: list[Point] | None = None
        self._has_ink = False

    @property
    def has_ink(self) -> bool:
        return self._has_ink

    @property
    def drawing(self) -> bool:
        return self._current is not None

    @property
    def size(self) -> tuple[int, int]:
        return (self.width, self.height)

    @property
    def strokes(self) -> list[list[Point]]:
        with self._lock:
            strokes = [list(stroke) for stroke in self._strokes]
            if self._current is not None:
                strokes.append(list(self._current))
            return strokes

    def begin_stroke(self, point: Point) -> None:
        with self._lock:
            if self._current is not None:
                self._close_current()
            self._current = [point]

    def extend_stroke(self, point: Point) -> None:
        with self._lock:
            if not self._current:
                return
            previous = self._current[-1]
            self._draw_segment(previous, point)
            self._current.append(point)
            self._has_ink = True

    def end_stroke(self) -> None:
        with self._lock:
            self._close_current()

    def handle(self, event: PointerInput, rect: SurfaceRect) -> bool:
        """Apply one input event; return True when the platform default must be suppressed.

        Only touch moves that extend an open stroke suppress the default, so the
        page still scrolls when the finger is not signing.
        """
        point = Point.from_client(event.client_x, event.client_y, rect, raster_size=self.size)
        if event.kind in _BEGIN_KINDS:
            self.begin_stroke(point)
            return False
        if event.kind == "move":
            if not self.drawing:
                return False
            self.extend_stroke(point)
            return event.source == "touch"
        if event.kind in _END_KINDS:
            self.end_stroke()
        return False

    def replay(self, strokes: list[list[Point]]) -> None:
        """Draw strokes captured elsewhere, each as begin + extends + end."""
        with self._lock:
            for stroke in strokes:
                if not stroke:
                    continue
                self.begin_stroke(stroke[0])
                for point in stroke[1:]:
                    self.extend_stroke(point)
                self.end_stroke()

    def clear(self) -> None:
        with self._lock:
            if not self._has_ink:
                raise EmptySignatureError("signature surface has no ink to clear")
            self._image.paste(BACKGROUND, (0, 0, self.width, self.height))
            self._strokes = []
            self._current = None
            self._has_ink = False

    def export_raster(self) -> str:
        """Return the rendered pixels as a PNG data URL."""
        with self._lock:
            if not self._has_ink:
                raise EmptySignatureError("cannot export an empty signature")
            buffer = io.BytesIO()
            self._image.save(buffer, format="PNG")
        return encode_data_url(buffer.getvalue(), "image/png")

    def _close_current(self) -> None:
        if self._current is not None and len(self._current) > 1:
            self._strokes.append(self._current)
        self._current = None

    def _draw_segment(self, start: Point, end: Point) -> None:
        self._draw.line(
            [(start.x, start.y), (end.x, end.y)],
            fill=INK,
            width=self.line_width,
            joint="curve",
        )
        # Round caps double as round joins between consecutive segments.
        radius = self.line_width / 2
        for point in (start, end):
            self._draw.ellipse(
                [point.x - radius, point.y - radius, point.x + radius, point.y + radius],
                fill=INK,
            )
