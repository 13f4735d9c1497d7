#!/usr/bin/env python3
"""
Tests for the whiteboard drawing surface and stroke model.
"""

import os
import sys

import pytest

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from models import ERASER, PEN, WhiteboardStroke
from whiteboard import DrawingSurface, new_stroke_id, resolve_background_color

WHITE = (255, 255, 255)
RED = (255, 0, 0)
BLUE = (0, 0, 255)


def stroke(id, points, color='#ff0000', width=4, tool=PEN):
    return WhiteboardStroke(id=id, points=points, color=color, stroke_width=width, tool=tool)


def test_gesture_commits_one_stroke_with_active_settings():
    committed = []
    surface = DrawingSurface(200, 100, on_commit=committed.append, color='#ff0000', stroke_width=6)
    surface.begin_stroke((10, 10))
    surface.extend_stroke((20, 15))
    surface.extend_stroke((30, 40))
    result = surface.commit_stroke()

    assert committed == [result]
    assert result.points == ((10.0, 10.0), (20.0, 15.0), (30.0, 40.0))
    assert result.color == '#ff0000'
    assert result.stroke_width == 6
    assert result.tool == PEN
    assert result.id.startswith('path-')
    assert not surface.drawing
    # Committed strokes only come back through render_all
    assert surface.strokes == []


def test_begin_while_drawing_is_ignored():
    surface = DrawingSurface(100, 100)
    surface.begin_stroke((1, 1))
    surface.extend_stroke((2, 2))
    surface.begin_stroke((50, 50))
    assert surface.commit_stroke().points == ((1.0, 1.0), (2.0, 2.0))


def test_commit_without_gesture_does_nothing():
    committed = []
    surface = DrawingSurface(100, 100, on_commit=committed.append)
    assert surface.commit_stroke() is None
    assert committed == []


def test_extend_without_begin_leaves_surface_untouched():
    surface = DrawingSurface(100, 100)
    before = surface.image.tobytes()
    surface.extend_stroke((10, 10))
    assert surface.image.tobytes() == before
    assert not surface.drawing


def test_live_feedback_paints_segment_without_repainting():
    surface = DrawingSurface(200, 100, color='#0000ff', stroke_width=4)
    surface.render_all([stroke('a', [(10, 20), (190, 20)])])

    surface.begin_stroke((10, 60))
    assert surface.image.getpixel((100, 60)) == WHITE
    surface.extend_stroke((190, 60))

    assert surface.image.getpixel((100, 60)) == BLUE
    # The committed stroke was not cleared by a full repaint
    assert surface.image.getpixel((100, 20)) == RED


def test_eraser_commits_in_background_color():
    surface = DrawingSurface(100, 100, background='hsl(0 0% 100%)', color='#ff0000', tool=ERASER)
    surface.begin_stroke((5, 5))
    surface.extend_stroke((50, 50))
    erased = surface.commit_stroke()
    assert erased.tool == ERASER
    assert erased.color == surface.background


def test_render_all_shows_pens_and_erases_with_background():
    """Two pen strokes and an eraser crossing both."""
    strokes = [
        stroke('red', [(10, 20), (190, 20)], color='#ff0000'),
        stroke('blue', [(10, 60), (190, 60)], color='#0000ff'),
        stroke('erase', [(100, 0), (100, 99)], color='white', width=10, tool=ERASER),
    ]
    surface = DrawingSurface(200, 100)
    image = surface.render_all(strokes)

    assert image.getpixel((50, 20)) == RED
    assert image.getpixel((50, 60)) == BLUE
    assert image.getpixel((100, 20)) == WHITE
    assert image.getpixel((100, 60)) == WHITE
    assert image.getpixel((50, 90)) == WHITE


def test_eraser_uses_current_background_not_stored_color():
    surface = DrawingSurface(100, 100, background='#000000')
    surface.render_all([
        stroke('pen', [(0, 50), (99, 50)], color='#ff0000', width=6),
        stroke('erase', [(50, 0), (50, 99)], color='#ffffff', width=10, tool=ERASER),
    ])
    assert surface.image.getpixel((50, 50)) == (0, 0, 0)


def test_render_all_is_idempotent():
    strokes = [
        stroke('a', [(3, 3), (40, 70), (90, 10)], color='#22aa44', width=5),
        stroke('b', [(60, 60), (10, 90)], color='#ff0000', width=2),
        stroke('c', [(0, 0), (99, 99)], width=8, tool=ERASER),
    ]
    surface = DrawingSurface(100, 100)
    first = surface.render_all(strokes).tobytes()

    # Live feedback in between must not leak into the replay
    surface.begin_stroke((0, 99))
    surface.extend_stroke((99, 0))
    second = surface.render_all(strokes).tobytes()
    assert first == second


def test_resize_replays_in_logical_coordinates():
    surface = DrawingSurface(100, 50)
    surface.render_all([stroke('a', [(10, 20), (90, 20)])])
    surface.resize(300, 200)
    assert surface.size == (300, 200)
    assert surface.image.getpixel((50, 20)) == RED
    assert surface.image.getpixel((200, 20)) == WHITE
    assert surface.image.getpixel((50, 100)) == WHITE


def test_single_point_stroke_draws_nothing():
    surface = DrawingSurface(50, 50)
    blank = surface.image.tobytes()
    surface.render_all([stroke('dot', [(25, 25)], width=10)])
    assert surface.image.tobytes() == blank


def test_png_snapshot():
    surface = DrawingSurface(20, 20)
    assert surface.to_png().startswith(b'\x89PNG\r\n\x1a\n')


@pytest.mark.parametrize("value, expected", [
    ('hsl(0 0% 100%)', 'hsl(0, 0%, 100%)'),
    ('#123456', '#123456'),
    ('white', 'white'),
    ('hsl(var(--card))', 'white'),
    ('', 'white'),
    (None, 'white'),
])
def test_background_color_resolution(value, expected):
    assert resolve_background_color(value) == expected


def test_stroke_is_immutable():
    s = stroke('a', [(1, 2), (3, 4)])
    with pytest.raises(AttributeError):
        s.color = '#000000'
    with pytest.raises(AttributeError):
        del s.points
    assert isinstance(s.points, tuple)


def test_stroke_document_shape():
    s = WhiteboardStroke.from_dict({
        'id': 'path-1-abcde',
        'points': [{'x': 1, 'y': 2}, {'x': 3.5, 'y': 4}],
        'color': '#ff0000',
        'strokeWidth': 3,
        'tool': 'pen',
    })
    assert s.points == ((1.0, 2.0), (3.5, 4.0))
    assert s.to_dict()['points'] == [{'x': 1.0, 'y': 2.0}, {'x': 3.5, 'y': 4.0}]
    assert s.to_dict()['strokeWidth'] == 3


def test_unknown_tool_is_rejected():
    with pytest.raises(ValueError):
        stroke('a', [(0, 0), (1, 1)], tool='spray')
    with pytest.raises(ValueError):
        DrawingSurface(10, 10).set_tool('spray')


def test_stroke_ids_are_unique_enough():
    ids = {new_stroke_id() for _ in range(200)}
    assert len(ids) > 190


@pytest.mark.parametrize("changes", [
    {'color': 'not-a-color'},
    {'color': None},
    {'stroke_width': 'thick'},
    {'stroke_width': 0},
    {'stroke_width': -3},
    {'stroke_width': float('nan')},
    {'stroke_width': float('inf')},
    {'stroke_width': 500},
    {'stroke_width': True},
    {'points': [(float('inf'), 1)]},
    {'points': [(1, float('nan'))]},
    {'points': [('1', 2)]},
    {'points': [(1,)]},
    {'points': [(1, 2, 3)]},
    {'id': ''},
    {'id': None},
])
def test_unrenderable_strokes_are_rejected(changes):
    fields = dict(id='a', points=[(0, 0), (10, 10)], color='#ff0000', stroke_width=4, tool=PEN)
    fields.update(changes)
    with pytest.raises(ValueError):
        WhiteboardStroke(**fields)


def test_eraser_color_is_not_checked():
    erased = stroke('e', [(0, 0), (10, 10)], color='hsl(var(--card))', tool=ERASER)
    surface = DrawingSurface(20, 20)
    assert surface.render_all([erased]).getpixel((5, 5)) == WHITE


def test_every_accepted_stroke_renders():
    strokes = [
        stroke('named', [(0, 0), (10, 10)], color='rebeccapurple', width=1),
        stroke('hsl', [(0, 10), (10, 0)], color='hsl(120, 100%, 50%)', width=0.5),
        stroke('widest', [(5, 0), (5, 19)], color='#00f', width=100),
    ]
    DrawingSurface(20, 20).render_all(strokes)
