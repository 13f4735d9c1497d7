"""
Freehand whiteboard surface: capture a pointer gesture, give live feedback,
and replay the committed stroke list.

The committed stroke list is the only source of truth. The raster is either
painted one segment at a time while a gesture is in progress, or cleared and
rebuilt from the list by ``render_all``; it is never scaled or patched.
"""

import io
import logging
import random
import re
import string
import time

from PIL import Image, ImageColor, ImageDraw

from models import ERASER, PEN, STROKE_TOOLS, WhiteboardStroke

logger = logging.getLogger('synergylearn.whiteboard')

_HSL_SPACED = re.compile(r"hsl\(\s*(\d+(?:\.\d+)?)\s+(\d+(?:\.\d+)?)%\s+(\d+(?:\.\d+)?)%\s*\)")
_ID_ALPHABET = string.digits + string.ascii_lowercase


def resolve_background_color(value, fallback='white'):
    """Turn a CSS color (including theme-style ``hsl(0 0% 100%)``) into something Pillow accepts."""
    if not value:
        return fallback
    value = value.strip()
    match = _HSL_SPACED.fullmatch(value)
    if match:
        value = f"hsl({match.group(1)}, {match.group(2)}%, {match.group(3)}%)"
    try:
        ImageColor.getrgb(value)
    except ValueError:
        logger.warning(f"Unrecognised background color {value!r}; using {fallback}")
        return fallback
    return value


def new_stroke_id():
    suffix = ''.join(random.choice(_ID_ALPHABET) for _ in range(5))
    return f"path-{int(time.time() * 1000)}-{suffix}"


class DrawingSurface:
    def __init__(self, width, height, background='white', on_commit=None,
                 color='#000000', stroke_width=4, tool=PEN):
        self.background = resolve_background_color(background)
        self.on_commit = on_commit
        self.color = color
        self.stroke_width = stroke_width
        self.tool = tool
        self._current = None
        self._strokes = []
        self._new_image(width, height)

    @property
    def size(self):
        return self.image.size

    @property
    def drawing(self):
        return self._current is not None

    @property
    def strokes(self):
        return list(self._strokes)

    def set_tool(self, tool):
        if tool not in STROKE_TOOLS:
            raise ValueError(f"Unknown whiteboard tool: {tool}")
        self.tool = tool

    def _new_image(self, width, height):
        self.image = Image.new('RGB', (max(1, int(width)), max(1, int(height))), self.background)
        self._draw = ImageDraw.Draw(self.image)

    def _ink(self, tool, color):
        return self.background if tool == ERASER else color

    # --------------------------------------------------------------------------
    # Gesture capture
    # --------------------------------------------------------------------------

    def begin_stroke(self, point):
        if self._current is not None:
            return
        self._current = [(float(point[0]), float(point[1]))]

    def extend_stroke(self, point):
        if self._current is None:
            return
        self._current.append((float(point[0]), float(point[1])))
        # Live feedback: only the newest segment is painted
        self._segment(self._current[-2], self._current[-1], self._ink(self.tool, self.color), self.stroke_width)

    def commit_stroke(self):
        """Finalise the in-progress gesture and hand it to ``on_commit``.

        The stroke is not added to the local list; it arrives back through
        ``render_all`` when the owning collection updates.
        """
        points, self._current = self._current, None
        if not points:
            return None
        stroke = WhiteboardStroke(
            id=new_stroke_id(),
            points=points,
            color=self._ink(self.tool, self.color),
            stroke_width=self.stroke_width,
            tool=self.tool,
        )
        logger.debug(f"Committed {stroke!r}")
        if self.on_commit is not None:
            self.on_commit(stroke)
        return stroke

    # --------------------------------------------------------------------------
    # Replay
    # --------------------------------------------------------------------------

    def render_all(self, strokes):
        self._strokes = list(strokes)
        self._draw.rectangle([(0, 0), self.image.size], fill=self.background)
        for stroke in self._strokes:
            self._polyline(stroke.points, self._ink(stroke.tool, stroke.color), stroke.stroke_width)
        return self.image

    def resize(self, width, height):
        self._new_image(width, height)
        return self.render_all(self._strokes)

    def to_png(self):
        buffer = io.BytesIO()
        self.image.save(buffer, format='PNG')
        return buffer.getvalue()

    def _polyline(self, points, ink, width):
        if len(points) < 2:
            return
        for start, end in zip(points, points[1:]):
            self._segment(start, end, ink, width)

    def _segment(self, start, end, ink, width):
        width = max(1, int(round(width)))
        self._draw.line([start, end], fill=ink, width=width)
        # Round caps; consecutive caps also make round joins
        radius = width / 2
        if radius >= 1:
            for x, y in (start, end):
                self._draw.ellipse([x - radius, y - radius, x + radius, y + radius], fill=ink)
