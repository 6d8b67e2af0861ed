from __future__ import annotations

import re
from dataclasses import dataclass


@dataclass(frozen=True)
class Rational:
    nom: int
    denom: int

    @property
    def is_zero(self) -> bool:
        return self.nom == 0

    def as_float(self) -> float:
        if self.denom == 0:
            return 0.0
        return self.nom / self.denom


ZERO = Rational(0, 0)

_FLOAT_RE = re.compile(r"^\s*[+-]?([0-9]+(\.[0-9]*)?|\.[0-9]+)\s*$")
_RECIPROCAL_RE = re.compile(r"^1/([0-9]+)$")


def _parse_float(text: str) -> float | None:
    if not _FLOAT_RE.match(text):
        return None
    return float(text)


def parse_shutter_speed(text: str) -> Rational:
    """Parse '1/250', '0.5' or '30' into an exposure time.

    Values below 2 seconds are kept in tenths. Unparsable input gives a zero
    nominator.
    """
    raw = text.strip()
    match = _RECIPROCAL_RE.match(raw)
    if match is not None:
        denom = int(match.group(1))
        if denom <= 0:
            return ZERO
        return Rational(1, denom)

    value = _parse_float(raw)
    if value is None or value <= 0.0:
        return ZERO
    if value < 2:
        return Rational(int(value * 10), 10)
    return Rational(int(value), 1)


def parse_aperture(text: str) -> Rational:
    """Parse an f-number like '5.6' into tenths (56/10)."""
    value = _parse_float(text.strip())
    if value is None or value <= 0.0:
        return Rational(0, 10)
    return Rational(int(round(value * 10)), 10)


def format_rational(value: Rational, pattern: str = "%.1f") -> str:
    return pattern % value.as_float()
