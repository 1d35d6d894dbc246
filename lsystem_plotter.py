#!/usr/bin/env python3
"""lsystem_plotter.py

Lindenmayer-system derivation and turtle plotting for gnuplot and HP-GL/2.

Key features:
- Deterministic, stochastic and context-sensitive (Hogeweg & Hesper) rewriting.
- Turtle interpreter producing line segments, pen-up moves and filled polygons.
- Left-to-right layout of several plots on one canvas without overlap.
- gnuplot command lists and HP-GL/2 pen-plotter streams.
- JSON-based input configuration.

Run:
  python lsystem_plotter.py gnuplot config.json plot.gp --run
  python lsystem_plotter.py hpgl config.json plot.plt
  python lsystem_plotter.py --help
"""

from __future__ import annotations

import argparse
import json
import logging
import math
import os
import random
import re
import subprocess
import sys
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from itertools import accumulate
from types import MappingProxyType
from typing import Any, cast

logger = logging.getLogger(__name__)

Point = tuple[float, float]


# -------------------------
# Errors / Validation
# -------------------------


class ConfigurationError(ValueError):
    pass


class UnsupportedSymbolError(ValueError):
    pass


class StackUnderflowError(IndexError):
    pass


class LayoutInputError(ValueError):
    pass


class DerivationCancelled(RuntimeError):
    pass


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigurationError(msg)


def _is_int(x: Any) -> bool:
    return isinstance(x, int) and not isinstance(x, bool)


def _as_float(x: Any, path: str) -> float:
    _require(
        isinstance(x, (int, float)) and not isinstance(x, bool),
        f"{path} must be a number",
    )
    return float(x)


def _as_int(x: Any, path: str) -> int:
    _require(_is_int(x), f"{path} must be an integer")
    return int(x)


def _as_str(x: Any, path: str) -> str:
    _require(isinstance(x, str), f"{path} must be a string")
    return cast(str, x)


def _as_list(x: Any, path: str) -> list[Any]:
    _require(isinstance(x, list), f"{path} must be an array")
    return cast(list[Any], x)


def _as_dict(x: Any, path: str) -> dict[str, Any]:
    _require(isinstance(x, dict), f"{path} must be an object")
    return cast(dict[str, Any], x)


def _get(obj: dict[str, Any], key: str, path: str) -> Any:
    _require(key in obj, f"{path}.{key} was not specified")
    return obj[key]


# -------------------------
# Rule sets
# -------------------------

_CONTEXT_KEY = re.compile(r"^(0|1) < (0|1) > (0|1)$")


@dataclass(frozen=True)
class LiteralRules:
    """Context-free rules applied as one textual substitution per generation.

    Keys may span several characters (pseudo L-systems). When several keys
    match at the same position, the first one in mapping order wins.
    """

    rules: Mapping[str, str]

    def __post_init__(self) -> None:
        _require(isinstance(self.rules, Mapping), "literal rules must be a mapping")
        # Validated and stored as a read-only copy of the caller's mapping.
        object.__setattr__(self, "rules", MappingProxyType(dict(self.rules)))
        for k, v in self.rules.items():
            _require(
                isinstance(k, str) and len(k) > 0,
                "literal rule keys must be non-empty strings",
            )
            _as_str(v, f"rules['{k}']")


@dataclass(frozen=True)
class WeightedRules:
    """Stochastic rules for the symbol F.

    Rule i is chosen with probability weights[i] / sum(weights). Weights past
    the number of rules are validated but otherwise ignored.
    """

    rules: tuple[str, ...]
    weights: tuple[int, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "rules", tuple(self.rules))
        object.__setattr__(self, "weights", tuple(self.weights))
        _require(len(self.rules) > 0, "rules were not specified")
        _require(len(self.weights) > 0, "weights were not specified")
        _require(
            len(self.weights) >= len(self.rules),
            "fewer weights specified than the number of rules",
        )
        for i, rule in enumerate(self.rules):
            _as_str(rule, f"rules[{i}]")
        for i, w in enumerate(self.weights):
            _require(_is_int(w) and w > 0, f"weights[{i}] must be a positive integer")


@dataclass(frozen=True)
class ContextualRules:
    """Hogeweg & Hesper rules over the variables 0 and 1.

    Keys have the form "L < a > R" where a is the strict predecessor and L/R
    its left and right contexts, e.g. "0 < 0 > 1" -> "1[+F1F1]".
    """

    rules: Mapping[str, str]

    def __post_init__(self) -> None:
        _require(isinstance(self.rules, Mapping), "contextual rules must be a mapping")
        # Validated and stored as a read-only copy of the caller's mapping.
        object.__setattr__(self, "rules", MappingProxyType(dict(self.rules)))
        for k, v in self.rules.items():
            _require(
                isinstance(k, str) and _CONTEXT_KEY.match(k) is not None,
                f"the contextual rule key {k!r} is not of the form 'L < a > R'",
            )
            _require(
                isinstance(v, str) and len(v) > 0,
                f"the replacement for '{k}' must be a non-empty string",
            )


RuleSet = LiteralRules | WeightedRules | ContextualRules
CancelCheck = Callable[[int, int], bool]


# -------------------------
# Rewriting
# -------------------------


def deadline(seconds: float) -> CancelCheck:
    """Return a cancellation check that trips once `seconds` have elapsed."""
    _require(seconds > 0, "deadline must be > 0 seconds")
    expires = time.monotonic() + seconds

    def check(generation: int, length: int) -> bool:
        return time.monotonic() >= expires

    return check


def _check_derivation(order: int, axiom: str) -> None:
    _require(_is_int(order) and order >= 0, "curve order must be non-negative")
    _require(isinstance(axiom, str) and len(axiom) > 0, "axiom was not specified")


def _generations(
    order: int,
    axiom: str,
    step: Callable[[str], str],
    cancel: CancelCheck | None,
) -> str:
    cmds = axiom
    for n in range(1, order + 1):
        cmds = step(cmds)
        logger.debug("generation %d/%d: %d symbols", n, order, len(cmds))
        if n < order and cancel is not None and cancel(n, len(cmds)):
            raise DerivationCancelled(
                f"derivation cancelled after generation {n} of {order}"
            )
    return cmds


def derive_deterministic(
    order: int,
    axiom: str,
    rules: LiteralRules,
    *,
    cancel: CancelCheck | None = None,
) -> str:
    _check_derivation(order, axiom)
    table = rules.rules
    if not table:
        return _generations(order, axiom, lambda s: s, cancel)

    # Alternation is tried left to right, so earlier keys take priority.
    pattern = re.compile("|".join(re.escape(k) for k in table))

    def step(cmds: str) -> str:
        return pattern.sub(lambda m: table[m.group(0)], cmds)

    return _generations(order, axiom, step, cancel)


def derive_stochastic(
    order: int,
    axiom: str,
    rules: WeightedRules,
    *,
    seed: int | None = None,
    cancel: CancelCheck | None = None,
) -> str:
    """Rewrite every F with a rule drawn from the weighted distribution.

    One generator is created per call; seed=None seeds it from the system.
    """
    _check_derivation(order, axiom)
    rng = random.Random(seed)
    choices = rules.rules
    cum_weights = list(accumulate(rules.weights[: len(choices)]))

    def step(cmds: str) -> str:
        parts = cmds.split("F")
        picks = rng.choices(choices, cum_weights=cum_weights, k=len(parts) - 1)
        out = [parts[0]]
        for pick, part in zip(picks, parts[1:]):
            out.append(pick)
            out.append(part)
        return "".join(out)

    return _generations(order, axiom, step, cancel)


_CONTEXT_IGNORED = frozenset("F+-$")
_CONTEXT_VARIABLES = frozenset("01")


def _check_branches(cmds: str) -> None:
    depth = 0
    for sym in cmds:
        if sym == "[":
            depth += 1
        elif sym == "]":
            if depth == 0:
                raise StackUnderflowError(
                    "unbalanced branch brackets: ']' without a matching '['"
                )
            depth -= 1
    if depth:
        raise ConfigurationError("unbalanced branch brackets: '[' is never closed")


def _left_context(cmds: str, pos: int) -> str:
    """Nearest variable before pos, skipping side branches; '' at the start.

    Expects balanced brackets (see _check_branches).
    """
    i = pos - 1
    while i >= 0:
        sym = cmds[i]
        if sym in _CONTEXT_IGNORED or sym == "[":
            pass
        elif sym == "]":
            unmatched = 1
            while unmatched:
                i -= 1
                if cmds[i] == "[":
                    unmatched -= 1
                elif cmds[i] == "]":
                    unmatched += 1
        elif sym in _CONTEXT_VARIABLES:
            return sym
        else:
            raise UnsupportedSymbolError(f"the symbol '{sym}' is not supported")
        i -= 1
    return ""


def _right_context(cmds: str, pos: int) -> str:
    """Nearest variable after pos, skipping side branches; '' at a branch end."""
    i = pos + 1
    while i < len(cmds):
        sym = cmds[i]
        if sym in _CONTEXT_IGNORED:
            pass
        elif sym == "]":
            return ""
        elif sym == "[":
            unmatched = 1
            while unmatched:
                i += 1
                if cmds[i] == "[":
                    unmatched += 1
                elif cmds[i] == "]":
                    unmatched -= 1
        elif sym in _CONTEXT_VARIABLES:
            return sym
        else:
            raise UnsupportedSymbolError(f"the symbol '{sym}' is not supported")
        i += 1
    return ""


def derive_contextual(
    order: int,
    axiom: str,
    rules: ContextualRules,
    *,
    cancel: CancelCheck | None = None,
) -> str:
    """Apply Hogeweg & Hesper context rules.

    Daughter branches do not belong to the context of the mother branch.
    The turns + and - swap every generation; no rule is needed for them.
    A variable without a matching rule is kept as is. Branch brackets are
    checked for balance at the start of every generation.
    """
    _check_derivation(order, axiom)
    table = rules.rules

    def step(cmds: str) -> str:
        _check_branches(cmds)
        out: list[str] = []
        for pos, sym in enumerate(cmds):
            if sym in "F[]$":
                out.append(sym)
            elif sym == "+":
                out.append("-")
            elif sym == "-":
                out.append("+")
            elif sym in _CONTEXT_VARIABLES:
                key = f"{_left_context(cmds, pos)} < {sym} > {_right_context(cmds, pos)}"
                out.append(table.get(key, sym))
            else:
                raise UnsupportedSymbolError(f"the symbol '{sym}' is not supported")
        return "".join(out)

    return _generations(order, axiom, step, cancel)


def derive(
    order: int,
    axiom: str,
    rules: RuleSet,
    *,
    seed: int | None = None,
    cancel: CancelCheck | None = None,
) -> str:
    """Derive the symbol string of the given order for any rule set.

    `cancel(generation, length)` is consulted between generations; returning
    True aborts with DerivationCancelled. `seed` only affects WeightedRules.
    """
    if isinstance(rules, LiteralRules):
        return derive_deterministic(order, axiom, rules, cancel=cancel)
    if isinstance(rules, WeightedRules):
        return derive_stochastic(order, axiom, rules, seed=seed, cancel=cancel)
    if isinstance(rules, ContextualRules):
        return derive_contextual(order, axiom, rules, cancel=cancel)
    raise ConfigurationError(f"unknown rule set type '{type(rules).__name__}'")


# -------------------------
# Turtle interpreter
# -------------------------


@dataclass(frozen=True)
class TurtleState:
    x: float
    y: float
    heading_deg: float


@dataclass(frozen=True)
class Segment:
    start: Point
    end: Point


@dataclass(frozen=True)
class Move:
    """Pen-up travel: an `f` step, or a jump back when a branch closes."""

    start: Point
    end: Point
    branch: bool = False


Edge = Segment | Move


@dataclass(frozen=True)
class Polygon:
    origin: Point
    edges: tuple[Edge, ...]

    def vertices(self) -> list[Point]:
        # Branch jumps relocate the turtle without adding an outline vertex.
        pts = [self.origin]
        pts.extend(e.end for e in self.edges if not (isinstance(e, Move) and e.branch))
        return pts


Primitive = Segment | Move | Polygon


@dataclass(frozen=True)
class BoundingBox:
    x_min: float
    x_max: float
    y_min: float
    y_max: float

    @classmethod
    def at(cls, x: float, y: float) -> BoundingBox:
        return cls(x, x, y, y)

    @property
    def width(self) -> float:
        return self.x_max - self.x_min

    @property
    def height(self) -> float:
        return self.y_max - self.y_min

    def include(self, x: float, y: float) -> BoundingBox:
        return BoundingBox(
            min(self.x_min, x), max(self.x_max, x), min(self.y_min, y), max(self.y_max, y)
        )

    def union(self, other: BoundingBox) -> BoundingBox:
        return BoundingBox(
            min(self.x_min, other.x_min),
            max(self.x_max, other.x_max),
            min(self.y_min, other.y_min),
            max(self.y_max, other.y_max),
        )


_HEADING_LITERAL = re.compile(r"\(([+\-0-9.]+?)\)")


def normalize_turns(cmds: str) -> str:
    """Drop adjacent cancelling turns ("+-" and "-+") until none remain."""
    prev = None
    while prev != cmds:
        prev = cmds
        cmds = cmds.replace("+-", "").replace("-+", "")
    return cmds


def _parse_heading(cmds: str, pos: int) -> tuple[float, int]:
    """Parse "(<degrees>)" at pos; return the heading and the index of ")"."""
    m = _HEADING_LITERAL.match(cmds, pos)
    if m is None:
        raise ConfigurationError("the specified angle is not syntactically well-formed")
    try:
        heading = float(m.group(1))
    except ValueError as e:
        raise ConfigurationError(
            f"the specified angle '{m.group(1)}' is not syntactically well-formed"
        ) from e
    return heading, m.end() - 1


def _unit_step(x: float, y: float, heading_deg: float) -> Point:
    # Exact unit moves along the axes keep long axis-aligned curves drift free.
    h = math.fmod(heading_deg, 360.0)
    if h == 0.0:
        return x + 1.0, y
    if h in (90.0, -270.0):
        return x, y + 1.0
    if h in (180.0, -180.0):
        return x - 1.0, y
    if h in (270.0, -90.0):
        return x, y - 1.0
    rad = math.radians(heading_deg)
    return x + math.cos(rad), y + math.sin(rad)


def _walk(cmds: str, origin_x: float, angle_deg: float) -> Iterator[tuple[str, Point, Point]]:
    """Yield (symbol, start, end) for every move, branch restore and polygon mark.

    Moves are reported as "F"/"f", branch restores as "]" and polygon
    boundaries as "{"/"}" (with start == end).
    """
    cmds = normalize_turns(cmds)
    x, y, heading = origin_x, 0.0, 0.0
    stack: list[TurtleState] = []

    pos = 0
    while pos < len(cmds):
        sym = cmds[pos]
        if sym in ("F", "f"):
            nx, ny = _unit_step(x, y, heading)
            yield sym, (x, y), (nx, ny)
            x, y = nx, ny
        elif sym == "+":
            heading += angle_deg
        elif sym == "-":
            heading -= angle_deg
        elif sym == "|":
            heading += 180.0
        elif sym == "$":
            heading = 90.0
        elif sym == "(":
            heading, pos = _parse_heading(cmds, pos)
        elif sym == ")":
            raise ConfigurationError("')' without a matching '(' in a heading declaration")
        elif sym == "[":
            stack.append(TurtleState(x, y, heading))
        elif sym == "]":
            if not stack:
                raise StackUnderflowError(
                    "unbalanced branch brackets: ']' without a matching '['"
                )
            st = stack.pop()
            yield sym, (x, y), (st.x, st.y)
            x, y, heading = st.x, st.y, st.heading_deg
        elif sym in ("{", "}"):
            yield sym, (x, y), (x, y)
        else:
            # Production variable: strip it from the rest of the string.
            cmds = cmds[:pos] + cmds[pos:].replace(sym, "")
            continue
        pos += 1


def compile_symbols(
    cmds: str, origin_x: float, angle_deg: float
) -> tuple[list[Primitive], BoundingBox]:
    """Interpret turtle commands with unit strides.

    The turtle starts at (origin_x, 0) heading 0 degrees. The bounding box
    starts at the origin and covers every position visited, drawn or not.
    """
    primitives: list[Primitive] = []
    x_min = x_max = origin_x
    y_min = y_max = 0.0
    polygon_origin: Point | None = None
    polygon_edges: list[Edge] = []

    for sym, start, end in _walk(cmds, origin_x, angle_deg):
        edge: Edge
        if sym == "F" or sym == "f":
            ex, ey = end
            x_min, x_max = min(x_min, ex), max(x_max, ex)
            y_min, y_max = min(y_min, ey), max(y_max, ey)
            edge = Segment(start, end) if sym == "F" else Move(start, end)
        elif sym == "]":
            edge = Move(start, end, branch=True)
        elif sym == "{":
            _require(polygon_origin is None, "polygon mode is already active")
            polygon_origin, polygon_edges = start, []
            continue
        else:
            _require(polygon_origin is not None, "'}' without a matching '{'")
            primitives.append(Polygon(cast(Point, polygon_origin), tuple(polygon_edges)))
            polygon_origin = None
            continue

        if polygon_origin is not None:
            polygon_edges.append(edge)
        else:
            primitives.append(edge)

    _require(polygon_origin is None, "'{' is never closed by '}'")
    logger.debug("compiled %d primitives from %d symbols", len(primitives), len(cmds))
    return primitives, BoundingBox(x_min, x_max, y_min, y_max)


# -------------------------
# Layout
# -------------------------

X_NUDGE = 2.0


@dataclass(frozen=True)
class Subplot:
    primitives: tuple[Primitive, ...]
    bbox: BoundingBox
    origin_x: float


@dataclass(frozen=True)
class Canvas:
    subplots: tuple[Subplot, ...]
    bbox: BoundingBox


def leftmost_excursion(cmds: str, angle_deg: float) -> float:
    """Smallest x reached when walking cmds from a local origin at x = 0."""
    x_min = 0.0
    for sym, _start, end in _walk(cmds, 0.0, angle_deg):
        if sym == "F" or sym == "f":
            x_min = min(x_min, end[0])
    return x_min


def layout(subplots: Sequence[tuple[str, float]]) -> Canvas:
    """Place (commands, production angle) plots left to right.

    Each plot starts X_NUDGE past the previous plot's right edge plus its own
    leftward reach, so neighbouring plots never overlap.
    """
    if not subplots:
        raise LayoutInputError("the turtle commands were not specified")

    placed: list[Subplot] = []
    bbox: BoundingBox | None = None
    origin_x = 0.0
    for k, (cmds, angle) in enumerate(subplots):
        primitives, box = compile_symbols(cmds, origin_x, angle)
        placed.append(Subplot(tuple(primitives), box, origin_x))
        bbox = box if bbox is None else bbox.union(box)
        logger.debug("subplot %d placed at x=%f", k + 1, origin_x)
        if k + 1 < len(subplots):
            next_cmds, next_angle = subplots[k + 1]
            gap = abs(leftmost_excursion(next_cmds, next_angle)) + X_NUDGE
            origin_x = box.x_max + gap

    return Canvas(tuple(placed), cast(BoundingBox, bbox))


def layout_lists(commands: Sequence[str], angles: Sequence[float]) -> Canvas:
    if not commands:
        raise LayoutInputError("the turtle commands were not specified")
    if len(angles) != len(commands):
        raise LayoutInputError(
            f"{len(angles)} turtle angles specified for {len(commands)} commands"
        )
    return layout(list(zip(commands, angles)))


def _check_labels(labels: Sequence[str] | None, count: int) -> list[str]:
    if labels is None:
        return [""] * count
    if len(labels) != count:
        raise LayoutInputError(f"{len(labels)} labels specified for {count} subplots")
    return list(labels)


# -------------------------
# gnuplot commands
# -------------------------

_HEX_COLOR = re.compile(r"^#[a-fA-F0-9]{6}$")
_COLOR_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9-]*$")

_GNUPLOT_MIN_MARGIN = 1
_GNUPLOT_MAX_MARGIN = 2


def _valid_color(color: str) -> bool:
    if not isinstance(color, str) or not color:
        return False
    if color.startswith("#"):
        return _HEX_COLOR.match(color) is not None
    return _COLOR_NAME.match(color) is not None


@dataclass(frozen=True)
class GnuplotStyle:
    """terminal/output are complete gnuplot commands, e.g. 'set terminal svg'."""

    terminal: str
    output: str = ""
    title: str = ""
    line_color: str = "black"

    def __post_init__(self) -> None:
        _require(
            isinstance(self.terminal, str) and self.terminal.strip() != "",
            "the gnuplot terminal command was not specified",
        )
        _require(
            _valid_color(self.line_color),
            f"the color '{self.line_color}' is not valid; use a gnuplot color name "
            "or a '#RRGGBB' code",
        )


def _quote(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


def _gnuplot_preamble(style: GnuplotStyle, *, bmargin: int, square: bool) -> list[str]:
    color = style.line_color
    tmargin = _GNUPLOT_MAX_MARGIN if style.title else _GNUPLOT_MIN_MARGIN
    cmds = [style.terminal]
    if style.output:
        cmds.append(style.output)
    cmds += [
        "unset border",
        "unset tics",
        f"set bmargin {bmargin}",
        f"set tmargin {tmargin}",
        f"set rmargin {_GNUPLOT_MIN_MARGIN}",
        f"set lmargin {_GNUPLOT_MIN_MARGIN}",
    ]
    if square:
        cmds.append("set size square")
    cmds += [
        "set autoscale fix",
        f'set style fill solid 1.0 border rgb "{color}"',
        f'set style arrow 1 nohead lc rgb "{color}"',
    ]
    if style.title:
        cmds.append(f'set title "{_quote(style.title)}" tc rgb "{color}"')
    return cmds


def _gnuplot_draw(primitives: Sequence[Primitive], color: str) -> list[str]:
    cmds: list[str] = []
    for p in primitives:
        if isinstance(p, Segment):
            (x0, y0), (x1, y1) = p.start, p.end
            cmds.append(f"set arrow as 1 from {x0:f},{y0:f} to {x1:f},{y1:f}")
        elif isinstance(p, Polygon):
            (ox, oy), *rest = p.vertices()
            parts = [f'set object polygon fc rgb "{color}" from {ox:f},{oy:f}']
            parts.extend(f" to {x:f},{y:f}" for x, y in rest)
            cmds.append("".join(parts))
    return cmds


def _gnuplot_finish(color: str) -> list[str]:
    return [
        "set parametric",
        f'plot 0,0 notitle lc rgb "{color}" lw 0',
        "quit",
    ]


def gnuplot_commands(
    primitives: Sequence[Primitive], bbox: BoundingBox, style: GnuplotStyle
) -> list[str]:
    """gnuplot commands for one plot, isometrically scaled and centred."""
    cmds = _gnuplot_preamble(style, bmargin=_GNUPLOT_MIN_MARGIN, square=True)
    cmds += _gnuplot_draw(primitives, style.line_color)

    # Offsets centre the plot in a square box.
    max_span = max(bbox.width, bbox.height)
    x_off = 0.5 * (max_span - bbox.width)
    y_off = 0.5 * (max_span - bbox.height)
    cmds += [
        f"set xrange [{bbox.x_min:f}:{bbox.x_max:f}]",
        f"set yrange [{bbox.y_min:f}:{bbox.y_max:f}]",
        f"set offset {x_off:f},{x_off:f},{y_off:f},{y_off:f}",
    ]
    cmds += _gnuplot_finish(style.line_color)
    return cmds


def gnuplot_multiplot_commands(
    canvas: Canvas, style: GnuplotStyle, labels: Sequence[str] | None = None
) -> list[str]:
    """gnuplot commands for a canvas, anisometrically scaled, left to right.

    Non-empty labels are centred below each subplot's origin.
    """
    labels = _check_labels(labels, len(canvas.subplots))
    color = style.line_color
    bmargin = _GNUPLOT_MAX_MARGIN if any(labels) else _GNUPLOT_MIN_MARGIN
    cmds = _gnuplot_preamble(style, bmargin=bmargin, square=False)
    for sub, label in zip(canvas.subplots, labels):
        if label:
            cmds.append(
                f'set label "{_quote(label)}" at {sub.origin_x:f},character 1 '
                f'center front tc rgb "{color}"'
            )
        cmds += _gnuplot_draw(sub.primitives, color)

    bbox = canvas.bbox
    cmds += [
        f"set xrange [{bbox.x_min:f}:{bbox.x_max:f}]",
        f"set yrange [{bbox.y_min:f}:{bbox.y_max:f}]",
    ]
    cmds += _gnuplot_finish(color)
    return cmds


# -------------------------
# HP-GL/2 commands
# -------------------------

_ESC = "\x1b"
_ETX = "\x03"
_HPGL_MIN_MARGIN = 0.1  # % - prevents clipping of wide pen strokes
_HPGL_MAX_MARGIN = 3.0  # % - room for the title and subplot labels
_HPGL_Y_NUDGE = 1.0  # user units between the drawing and its text


class _PenRuns:
    """Coalesces consecutive pen moves sharing a pen state into one command."""

    def __init__(self) -> None:
        self.parts: list[str] = []
        self.pen = ""

    def move(self, pen: str, x: float, y: float) -> None:
        if self.pen == pen:
            self.parts.append(f",{x:f},{y:f}")
        elif self.pen:
            self.parts.append(f";\n{pen}{x:f},{y:f}")
        else:
            self.parts.append(f"{pen}{x:f},{y:f}")
        self.pen = pen

    def directive(self, text: str) -> None:
        self.parts.append(f";\n{text}\n")
        self.pen = ""

    def text(self) -> str:
        return "".join(self.parts)


def _pen_for(edge: Edge) -> str:
    return "PD" if isinstance(edge, Segment) else "PU"


def hpgl_body(primitives: Sequence[Primitive], origin_x: float = 0.0) -> str:
    """Pen commands for one plot, starting with a pen-up move to its origin."""
    runs = _PenRuns()
    runs.move("PU", origin_x, 0.0)
    for p in primitives:
        if isinstance(p, Polygon):
            runs.directive("PM0;")
            for edge in p.edges:
                runs.move(_pen_for(edge), *edge.end)
            runs.directive("PM2;EP;FP;")
        else:
            runs.move(_pen_for(p), *p.end)
    return runs.text() + ";"


def _hpgl_header(
    *, rotate: bool, bottom: float, top: float, bbox: BoundingBox, isotropic: bool, pen_width: float
) -> str:
    left, right = _HPGL_MIN_MARGIN, 100.0 - _HPGL_MIN_MARGIN
    # HP RTL: enter HP-GL/2 mode, begin a plot and initialize HP-GL/2
    out = f"{_ESC}%-1BBPIN;\n"
    if rotate:
        out += "RO90;\n"
    out += f"IR{left:f},{bottom:f},{right:f},{top:f};\n"
    out += (
        f"SC{bbox.x_min:f},{bbox.x_max:f},{bbox.y_min:f},{bbox.y_max:f},"
        f"{1 if isotropic else 0};\n"
    )
    # Pen 1 with its width in millimetres
    out += f"SP1;WU0;PW{pen_width:f};\n"
    return out


def _hpgl_label_text(text: str, what: str) -> str:
    # ETX terminates an LB label.
    _require(_ETX not in text, f"the HP-GL/2 {what} must not contain the ETX character")
    return text


def hpgl_commands(
    primitives: Sequence[Primitive],
    bbox: BoundingBox,
    *,
    title: str = "",
    pen_width: float = 0.35,
    origin_x: float = 0.0,
) -> str:
    """HP-GL/2 stream for one plot, isometrically scaled and centred."""
    _require(pen_width > 0, "pen width must be > 0")
    title = _hpgl_label_text(title, "title")
    top = 100.0 - (_HPGL_MAX_MARGIN if title else _HPGL_MIN_MARGIN)

    # Square the scaling box about the drawing's centre.
    max_span = max(bbox.width, bbox.height)
    x_off = 0.5 * (max_span - bbox.width)
    y_off = 0.5 * (max_span - bbox.height)
    box = BoundingBox(
        bbox.x_min - x_off, bbox.x_max + x_off, bbox.y_min - y_off, bbox.y_max + y_off
    )

    out = _hpgl_header(
        rotate=False,
        bottom=_HPGL_MIN_MARGIN,
        top=top,
        bbox=box,
        isotropic=True,
        pen_width=pen_width,
    )
    out += hpgl_body(primitives, origin_x) + "\n"
    if title:
        left, right = _HPGL_MIN_MARGIN, 100.0 - _HPGL_MIN_MARGIN
        out += f"IR;IR{left:f},{_HPGL_MIN_MARGIN:f},{right:f},{right:f};\n"
        out += f"SC{box.x_min:f},{box.x_max:f},{box.y_min:f},{box.y_max:f},0;\n"
        cx = 0.5 * (box.x_min + box.x_max)
        out += f"PU{cx:f},{box.y_max:f};LO6;LB{title}{_ETX};\n"
    out += "PG;\n"
    return out


def hpgl_multiplot_commands(
    canvas: Canvas,
    *,
    title: str = "",
    labels: Sequence[str] | None = None,
    pen_width: float = 0.35,
) -> str:
    """HP-GL/2 stream for a canvas in landscape, anisotropically scaled."""
    _require(pen_width > 0, "pen width must be > 0")
    labels = _check_labels(labels, len(canvas.subplots))
    title = _hpgl_label_text(title, "title")
    labels = [_hpgl_label_text(label, "label") for label in labels]
    bottom = _HPGL_MAX_MARGIN if any(labels) else _HPGL_MIN_MARGIN
    top = 100.0 - (_HPGL_MAX_MARGIN if title else _HPGL_MIN_MARGIN)

    parts: list[str] = []
    for sub, label in zip(canvas.subplots, labels):
        if label:
            parts.append(f"PU{sub.origin_x:f},{-_HPGL_Y_NUDGE:f};LO16;LB{label}{_ETX};\n")
        parts.append(hpgl_body(sub.primitives, sub.origin_x))

    bbox = canvas.bbox
    out = _hpgl_header(
        rotate=True, bottom=bottom, top=top, bbox=bbox, isotropic=False, pen_width=pen_width
    )
    out += "".join(parts) + "\n"
    if title:
        cx = 0.5 * (bbox.x_min + bbox.x_max)
        out += f"PU{cx:f},{bbox.y_max + _HPGL_Y_NUDGE:f};LO14;LB{title}{_ETX};\n"
    out += "PG;"
    return out


# -------------------------
# Output sinks
# -------------------------


def _ensure_parent_dir(path: str) -> None:
    os.makedirs(os.path.dirname(os.path.abspath(path)) or ".", exist_ok=True)


def write_text(path: str, content: str) -> None:
    _require(bool(path), "the output path was not specified")
    _ensure_parent_dir(path)
    # newline="" keeps the HP-GL/2 stream byte-exact on every platform.
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(content)


def run_gnuplot(commands: Sequence[str], executable: str = "gnuplot") -> None:
    """Pipe commands to a gnuplot process and wait for it to finish."""
    logger.info("sending %d commands to %s", len(commands), executable)
    subprocess.run(
        [executable],
        input="\n".join(commands) + "\n",
        text=True,
        check=True,
    )


# -------------------------
# Config parsing
# -------------------------

_SYSTEM_TYPES = ("deterministic", "stochastic", "contextual")


@dataclass(frozen=True)
class SystemConfig:
    axiom: str
    order: int
    angle_deg: float
    rules: RuleSet
    label: str = ""
    seed: int | None = None
    repeat: int = 1


@dataclass(frozen=True)
class PlotConfig:
    title: str
    systems: tuple[SystemConfig, ...]
    gnuplot: GnuplotStyle | None
    pen_width: float


def _parse_rules(kind: str, obj: dict[str, Any], path: str) -> RuleSet:
    raw = _get(obj, "rules", path)
    if kind == "deterministic":
        rules = _as_dict(raw, f"{path}.rules")
        return LiteralRules(
            {k: _as_str(v, f"{path}.rules['{k}']") for k, v in rules.items()}
        )
    if kind == "stochastic":
        rules_list = _as_list(raw, f"{path}.rules")
        weights = _as_list(_get(obj, "weights", path), f"{path}.weights")
        return WeightedRules(
            tuple(_as_str(r, f"{path}.rules[{i}]") for i, r in enumerate(rules_list)),
            tuple(_as_int(w, f"{path}.weights[{i}]") for i, w in enumerate(weights)),
        )
    rules = _as_dict(raw, f"{path}.rules")
    return ContextualRules(
        {k: _as_str(v, f"{path}.rules['{k}']") for k, v in rules.items()}
    )


def _parse_system(obj: Any, path: str) -> SystemConfig:
    obj = _as_dict(obj, path)

    kind = _as_str(_get(obj, "type", path), f"{path}.type")
    _require(
        kind in _SYSTEM_TYPES,
        f"{path}.type must be one of {', '.join(_SYSTEM_TYPES)}; got {kind!r}",
    )

    axiom = _as_str(_get(obj, "axiom", path), f"{path}.axiom")
    _require(len(axiom) > 0, f"{path}.axiom must be non-empty")

    order = _as_int(_get(obj, "order", path), f"{path}.order")
    _require(order >= 0, f"{path}.order must be >= 0")

    angle = _as_float(_get(obj, "angle", path), f"{path}.angle")
    _require(angle != 0, f"{path}.angle: the production angle is zero")

    seed = obj.get("seed")
    if seed is not None:
        seed = _as_int(seed, f"{path}.seed")

    repeat = _as_int(obj.get("repeat", 1), f"{path}.repeat")
    _require(repeat >= 1, f"{path}.repeat must be >= 1")

    return SystemConfig(
        axiom=axiom,
        order=order,
        angle_deg=angle,
        rules=_parse_rules(kind, obj, path),
        label=_as_str(obj.get("label", ""), f"{path}.label"),
        seed=seed,
        repeat=repeat,
    )


def parse_config(obj: dict[str, Any]) -> PlotConfig:
    obj = _as_dict(obj, "root")

    title = _as_str(obj.get("title", ""), "title")

    systems_raw = _as_list(_get(obj, "systems", "root"), "systems")
    _require(len(systems_raw) > 0, "systems must list at least one L-system")
    systems = tuple(_parse_system(s, f"systems[{i}]") for i, s in enumerate(systems_raw))

    gnuplot: GnuplotStyle | None = None
    if "gnuplot" in obj:
        gp = _as_dict(obj["gnuplot"], "gnuplot")
        gnuplot = GnuplotStyle(
            terminal=_as_str(_get(gp, "terminal", "gnuplot"), "gnuplot.terminal"),
            output=_as_str(gp.get("output", ""), "gnuplot.output"),
            title=title,
            line_color=_as_str(gp.get("line_color", "black"), "gnuplot.line_color"),
        )

    hpgl = _as_dict(obj.get("hpgl", {}), "hpgl")
    pen_width = _as_float(hpgl.get("pen_width", 0.35), "hpgl.pen_width")
    _require(pen_width > 0, "hpgl.pen_width must be > 0")

    return PlotConfig(title=title, systems=systems, gnuplot=gnuplot, pen_width=pen_width)


def load_json(path: str) -> dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        try:
            return cast(dict[str, Any], json.load(f))
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {path}: {e}") from e


Derived = tuple[str, float, str]


def derive_all(cfg: PlotConfig, *, cancel: CancelCheck | None = None) -> list[Derived]:
    """Derive every configured system into (commands, angle, label) triples.

    A system with repeat=n is derived n times, with seeds seed, seed+1, ...
    """
    out: list[Derived] = []
    for k, system in enumerate(cfg.systems):
        for i in range(system.repeat):
            seed = None if system.seed is None else system.seed + i
            logger.debug("deriving system %d (copy %d/%d)", k + 1, i + 1, system.repeat)
            cmds = derive(system.order, system.axiom, system.rules, seed=seed, cancel=cancel)
            out.append((cmds, system.angle_deg, system.label))
    return out


def render_gnuplot(cfg: PlotConfig, derived: Sequence[Derived]) -> list[str]:
    _require(cfg.gnuplot is not None, "the gnuplot section was not specified")
    style = cast(GnuplotStyle, cfg.gnuplot)
    if len(derived) == 1:
        cmds, angle, _label = derived[0]
        primitives, bbox = compile_symbols(cmds, 0.0, angle)
        return gnuplot_commands(primitives, bbox, style)
    canvas = layout([(cmds, angle) for cmds, angle, _ in derived])
    return gnuplot_multiplot_commands(canvas, style, [label for _, _, label in derived])


def render_hpgl(cfg: PlotConfig, derived: Sequence[Derived]) -> str:
    if len(derived) == 1:
        cmds, angle, _label = derived[0]
        primitives, bbox = compile_symbols(cmds, 0.0, angle)
        return hpgl_commands(primitives, bbox, title=cfg.title, pen_width=cfg.pen_width)
    canvas = layout([(cmds, angle) for cmds, angle, _ in derived])
    return hpgl_multiplot_commands(
        canvas,
        title=cfg.title,
        labels=[label for _, _, label in derived],
        pen_width=cfg.pen_width,
    )


# -------------------------
# CLI / Help
# -------------------------

HELP_EPILOG = r"""
INPUT JSON SYNTAX

  title: string (optional)
      Plot title, centred at the top.

  systems: array of L-system objects (required, at least one)
      One system gives a single, isometrically scaled plot. Several systems
      (or repeat > 1) are laid out left to right on one canvas.

    type: "deterministic" | "stochastic" | "contextual" (required)
    axiom: string (required, non-empty)
    order: integer >= 0 (required)
        Derivation length; order 0 plots the axiom.
    angle: number of degrees, non-zero (required)
        Production angle used by "+" and "-".
    rules (required)
        deterministic: object mapping string -> string. Keys may have
            several characters; earlier keys win when several match.
        stochastic: array of replacement strings for "F".
        contextual: object mapping "L < a > R" -> string over the
            variables 0 and 1, e.g. "0 < 0 > 1": "1[-F1F1]".
    weights: array of positive integers (stochastic only, required)
        At least as many weights as rules; extra weights are ignored.
    seed: integer (optional, stochastic only)
    repeat: integer >= 1 (default 1)
        Number of copies to derive; copy i uses seed + i.
    label: string (optional)
        Text centred below the subplot in multi-plots.

  gnuplot: object (required by the "gnuplot" command)
    terminal: complete gnuplot command, e.g. "set terminal svg size 900,900"
    output: complete gnuplot command, e.g. "set output \"plot.svg\""
    line_color: gnuplot color name or "#RRGGBB" (default "black")

  hpgl: object (optional)
    pen_width: line width in millimetres (default 0.35)

TURTLE SYMBOLS

  F move forward drawing a line      f move forward without drawing
  + turn left by the angle           - turn right by the angle
  | turn around                      $ head due north (90 degrees)
  (d) set the heading to d degrees   [ ] start / end a branch
  { } start / end a filled polygon
  Every other symbol is a variable and is ignored when drawing.

Example (dragon curve):

    {
      "title": "Dragon",
      "systems": [
        {"type": "deterministic", "axiom": "$FX", "order": 10, "angle": 90,
         "rules": {"X": "X-YF-", "Y": "+FX+Y"}}
      ],
      "gnuplot": {"terminal": "set terminal svg", "output": "set output \"dragon.svg\""}
    }
"""


def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="lsystem_plotter.py",
        description="Derive L-systems and plot them with gnuplot or HP-GL/2.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=HELP_EPILOG,
    )
    p.add_argument(
        "-v", "--verbose", action="store_true", help="Log derivation progress."
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    pd = sub.add_parser("derive", help="Print the derived turtle commands.")
    pd.add_argument("config", help="Path to the input JSON config.")
    pd.add_argument(
        "-o", "--output", default=None, help="Write the commands to this file instead."
    )

    pg = sub.add_parser("gnuplot", help="Write gnuplot commands for a config.")
    pg.add_argument("config", help="Path to the input JSON config.")
    pg.add_argument("output", help="Path to write the gnuplot commands.")
    pg.add_argument(
        "--run", action="store_true", help="Also pipe the commands to gnuplot."
    )
    pg.add_argument(
        "--gnuplot", default="gnuplot", help="gnuplot executable (default: gnuplot)."
    )

    ph = sub.add_parser("hpgl", help="Write an HP-GL/2 pen-plotter stream.")
    ph.add_argument("config", help="Path to the input JSON config.")
    ph.add_argument("output", help="File path or device port for the HP-GL/2 commands.")

    pv = sub.add_parser("validate", help="Validate a config and print a summary.")
    pv.add_argument("config", help="Path to the input JSON config.")

    return p


# -------------------------
# Commands
# -------------------------


def cmd_derive(config_path: str, output_path: str | None) -> None:
    cfg = parse_config(load_json(config_path))
    text = "\n".join(cmds for cmds, _, _ in derive_all(cfg)) + "\n"
    if output_path is None:
        sys.stdout.write(text)
    else:
        write_text(output_path, text)


def cmd_gnuplot(config_path: str, output_path: str, run: bool, executable: str) -> None:
    cfg = parse_config(load_json(config_path))
    commands = render_gnuplot(cfg, derive_all(cfg))
    write_text(output_path, "\n".join(commands) + "\n")
    if run:
        run_gnuplot(commands, executable)


def cmd_hpgl(config_path: str, output_path: str) -> None:
    cfg = parse_config(load_json(config_path))
    write_text(output_path, render_hpgl(cfg, derive_all(cfg)))


def cmd_validate(config_path: str) -> None:
    cfg = parse_config(load_json(config_path))
    derived = derive_all(cfg)

    print(f"title: {cfg.title}")
    print(f"systems: {len(cfg.systems)}")
    print(f"subplots: {len(derived)}")
    canvas = layout([(cmds, angle) for cmds, angle, _ in derived])
    for k, ((cmds, angle, _), sub) in enumerate(zip(derived, canvas.subplots), start=1):
        b = sub.bbox
        print(
            f"  [{k}] symbols={len(cmds)} angle={angle} primitives={len(sub.primitives)} "
            f"origin={sub.origin_x:g} bbox=({b.x_min:g},{b.x_max:g},{b.y_min:g},{b.y_max:g})"
        )
    print(f"gnuplot: {'yes' if cfg.gnuplot else 'no'}")
    print(f"hpgl: pen_width={cfg.pen_width}")


def main(argv: list[str] | None = None) -> int:
    ap = build_argparser()
    args = ap.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.cmd == "derive":
            cmd_derive(args.config, args.output)
        elif args.cmd == "gnuplot":
            cmd_gnuplot(args.config, args.output, args.run, args.gnuplot)
        elif args.cmd == "hpgl":
            cmd_hpgl(args.config, args.output)
        elif args.cmd == "validate":
            cmd_validate(args.config)
        else:
            raise AssertionError("unreachable")
    except (ConfigurationError, UnsupportedSymbolError, StackUnderflowError) as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2
    except (LayoutInputError, DerivationCancelled) as e:
        print(f"Plot error: {e}", file=sys.stderr)
        return 2
    except subprocess.CalledProcessError as e:
        print(f"gnuplot error: {e}", file=sys.stderr)
        return 2
    except OSError as e:
        print(f"File error: {e}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
