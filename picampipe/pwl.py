"""Piecewise linear functions."""

from __future__ import annotations

import math
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Sequence, TextIO

DEFAULT_EPS = 1e-6


@dataclass
class Interval:
    """A closed interval [start, end]."""

    start: float
    end: float

    def contains(self, value: float) -> bool:
        return self.start <= value <= self.end

    def clip(self, value: float) -> float:
        if value < self.start:
            return self.start
        if value > self.end:
            return self.end
        return value

    def length(self) -> float:
        return self.end - self.start


@dataclass(frozen=True)
class Point:
    """A 2D point, also used as a vector."""

    x: float = 0.0
    y: float = 0.0

    def __add__(self, other: Point) -> Point:
        return Point(self.x + other.x, self.y + other.y)

    def __sub__(self, other: Point) -> Point:
        return Point(self.x - other.x, self.y - other.y)

    def __mul__(self, factor: float) -> Point:
        return Point(self.x * factor, self.y * factor)

    def __truediv__(self, factor: float) -> Point:
        return Point(self.x / factor, self.y / factor)

    def dot(self, other: Point) -> float:
        return self.x * other.x + self.y * other.y

    def len2(self) -> float:
        return self.x * self.x + self.y * self.y

    def length(self) -> float:
        return math.sqrt(self.len2())


class PerpType(Enum):
    """Kind of closest point found by :meth:`Pwl.invert`."""

    NOT_FOUND = "not_found"
    START = "start"
    END = "end"
    VERTEX = "vertex"
    PERPENDICULAR = "perpendicular"


class Pwl:
    """A piecewise linear function defined by control points with increasing x."""

    def __init__(self, points: Iterable[Point | Sequence[float]] | None = None) -> None:
        self.points: list[Point] = [
            p if isinstance(p, Point) else Point(float(p[0]), float(p[1])) for p in (points or ())
        ]

    @classmethod
    def from_values(cls, values: Sequence[float]) -> Pwl:
        """Build from a flat sequence x0, y0, x1, y1, ... with strictly increasing x."""
        values = list(values)
        if len(values) % 2:
            raise ValueError("Pwl needs an even number of values")
        pwl = cls()
        for x, y in zip(values[0::2], values[1::2]):
            x, y = float(x), float(y)
            if pwl.points and not x > pwl.points[-1].x:
                raise ValueError("Pwl x values must be strictly increasing")
            pwl.points.append(Point(x, y))
        if len(pwl.points) < 2:
            raise ValueError("Pwl needs at least two points")
        return pwl

    def __len__(self) -> int:
        return len(self.points)

    def __iter__(self):
        return iter(self.points)

    def __repr__(self) -> str:
        return f"Pwl({[(p.x, p.y) for p in self.points]!r})"

    def append(self, x: float, y: float, eps: float = DEFAULT_EPS) -> None:
        """Add a point at the end unless it is not beyond the last x by more than eps."""
        if not self.points or self.points[-1].x + eps < x:
            self.points.append(Point(x, y))

    def prepend(self, x: float, y: float, eps: float = DEFAULT_EPS) -> None:
        """Add a point at the start unless it is not before the first x by more than eps."""
        if not self.points or self.points[0].x - eps > x:
            self.points.insert(0, Point(x, y))

    def domain(self) -> Interval:
        return Interval(self.points[0].x, self.points[-1].x)

    def range(self) -> Interval:
        ys = [p.y for p in self.points]
        return Interval(min(ys), max(ys))

    def empty(self) -> bool:
        return not self.points

    def find_span(self, x: float, span: int) -> int:
        """Return the index of the span containing x, searching from span."""
        points = self.points
        last_span = len(points) - 2
        span = max(0, min(last_span, span))
        while span < last_span and x >= points[span + 1].x:
            span += 1
        while span and x < points[span].x:
            span -= 1
        return span

    def eval_with_span(self, x: float, span: int = -1) -> tuple[float, int]:
        """Evaluate at x, starting the search at span (-1 for no guess).

        Returns the value and the span that was used.
        """
        start = span if span != -1 else len(self.points) // 2 - 1
        span = self.find_span(x, start)
        p0, p1 = self.points[span], self.points[span + 1]
        return p0.y + (x - p0.x) * (p1.y - p0.y) / (p1.x - p0.x), span

    def eval(self, x: float, span: int | None = None) -> float:
        """Evaluate at x, optionally with an initial guess for the span."""
        return self.eval_with_span(x, -1 if span is None else span)[0]

    def invert(
        self, xy: Point, span: int = -1, eps: float = DEFAULT_EPS
    ) -> tuple[PerpType, Point | None, int]:
        """Find the closest perpendicular to xy, searching from span + 1.

        Returns the kind of point found, the point itself (None if nothing was
        found) and the span where the search stopped.
        """
        if span < -1:
            raise ValueError("span must be at least -1")
        points = self.points
        prev_off_end = False
        span += 1
        while span < len(points) - 1:
            span_vec = points[span + 1] - points[span]
            t = (xy - points[span]).dot(span_vec) / span_vec.len2()
            if t < -eps:
                if span == 0:
                    return PerpType.START, points[span], span
                if prev_off_end:
                    return PerpType.VERTEX, points[span], span
            elif t > 1 + eps:
                if span == len(points) - 2:
                    return PerpType.END, points[span + 1], span
                prev_off_end = True
            else:
                return PerpType.PERPENDICULAR, points[span] + span_vec * t, span
            span += 1
        return PerpType.NOT_FOUND, None, span

    def compose(self, other: Pwl, eps: float = DEFAULT_EPS) -> Pwl:
        """Return the function applying self first and other after."""
        points, others = self.points, other.points
        this_x, this_y = points[0].x, points[0].y
        this_span = 0
        other_span = other.find_span(this_y, 0)
        result = Pwl([Point(this_x, other.eval(this_y, other_span))])
        while this_span != len(points) - 1:
            dx = points[this_span + 1].x - points[this_span].x
            dy = points[this_span + 1].y - points[this_span].y
            if (
                abs(dy) > eps
                and other_span + 1 < len(others)
                and points[this_span + 1].y >= others[other_span + 1].x + eps
            ):
                # Where this function's y reaches the next span in other.
                this_x = points[this_span].x + (others[other_span + 1].x - points[this_span].y) * dx / dy
                other_span += 1
                this_y = others[other_span].x
            elif (
                abs(dy) > eps
                and other_span > 0
                and points[this_span + 1].y <= others[other_span - 1].x - eps
            ):
                # Where this function's y reaches the previous span in other.
                this_x = points[this_span].x + (others[other_span + 1].x - points[this_span].y) * dx / dy
                other_span -= 1
                this_y = others[other_span].x
            else:
                this_span += 1
                this_x, this_y = points[this_span].x, points[this_span].y
            result.append(this_x, other.eval(this_y, other_span), eps)
        return result

    def map(self, f: Callable[[float, float], None]) -> None:
        """Call f(x, y) at every control point."""
        for p in self.points:
            f(p.x, p.y)

    @staticmethod
    def map2(pwl0: Pwl, pwl1: Pwl, f: Callable[[float, float, float], None]) -> None:
        """Call f(x, y0, y1) wherever either function has a control point."""
        p0, p1 = pwl0.points, pwl1.points
        span0 = span1 = 0
        x = min(p0[0].x, p1[0].x)
        f(x, pwl0.eval(x, span0), pwl1.eval(x, span1))
        while span0 < len(p0) - 1 or span1 < len(p1) - 1:
            if span0 == len(p0) - 1:
                span1 += 1
                x = p1[span1].x
            elif span1 == len(p1) - 1:
                span0 += 1
                x = p0[span0].x
            elif p0[span0 + 1].x > p1[span1 + 1].x:
                span1 += 1
                x = p1[span1].x
            else:
                span0 += 1
                x = p0[span0].x
            f(x, pwl0.eval(x, span0), pwl1.eval(x, span1))

    @staticmethod
    def combine(
        pwl0: Pwl,
        pwl1: Pwl,
        f: Callable[[float, float, float], float],
        eps: float = DEFAULT_EPS,
    ) -> Pwl:
        """Build a function whose y at every knot of either input is f(x, y0, y1)."""
        result = Pwl()
        Pwl.map2(pwl0, pwl1, lambda x, y0, y1: result.append(x, f(x, y0, y1), eps))
        return result

    def match_domain(self, domain: Interval, clip: bool = True, eps: float = DEFAULT_EPS) -> None:
        """Extend the function to cover domain, flat if clip else linearly."""
        value, _ = self.eval_with_span(self.points[0].x if clip else domain.start, 0)
        self.prepend(domain.start, value, eps)
        value, _ = self.eval_with_span(
            self.points[-1].x if clip else domain.end, len(self.points) - 2
        )
        self.append(domain.end, value, eps)

    def generate_lut(self, kind: Callable[[float], object] = float) -> list:
        """Tabulate the function at integers 0 .. domain end."""
        end = int(self.domain().end + 1)
        lut = []
        span = 0
        for x in range(end):
            value, span = self.eval_with_span(x, span)
            lut.append(kind(value))
        return lut

    def __imul__(self, factor: float) -> Pwl:
        self.points = [Point(p.x, p.y * factor) for p in self.points]
        return self

    def debug(self, file: TextIO | None = None) -> None:
        """Print the control points."""
        out = sys.stderr if file is None else file
        out.write("Pwl {\n")
        for p in self.points:
            out.write(f"\t({p.x:g}, {p.y:g})\n")
        out.write("}\n")