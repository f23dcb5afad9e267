"""Measured calibration data: output factor tables and SSD correction tables.

Output factors are measured per aperture (insert) size for every
(machine, energy, applicator) combination. The points of one table form an
irregular 2D grid over width and height; lookups return a measured value
directly or interpolate inside the grid, never outside it.
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple

import numpy as np

from emu_errors import (
    DuplicateCalibrationPoint,
    InvalidCalibrationData,
    InvalidGeometry,
    MissingCorrectionFactor,
    OutOfCalibrationRange,
    SsdOutOfRange,
    UnknownEnergyApplicatorPair,
)

# mm
DEFAULT_GEOMETRY_TOLERANCE = 0.01


class TableKey(NamedTuple):
    machine: str
    energy: float
    applicator: str


def make_key(energy, applicator, machine='') -> TableKey:
    return TableKey(str(machine or ''), float(energy), str(applicator))


@dataclass(frozen=True)
class ApertureGeometry:
    """Effective width x height of the field defining aperture in mm."""
    width: float
    height: float

    def __post_init__(self):
        try:
            w = float(self.width)
            h = float(self.height)
        except (TypeError, ValueError):
            raise InvalidGeometry(self.width, self.height) from None
        if not (math.isfinite(w) and math.isfinite(h)) or w <= 0 or h <= 0:
            raise InvalidGeometry(self.width, self.height)
        object.__setattr__(self, 'width', w)
        object.__setattr__(self, 'height', h)

    def __str__(self):
        return f"{self.width:g}x{self.height:g}"


@dataclass(frozen=True)
class CalibrationRecord:
    energy: float
    applicator: str
    geometry: ApertureGeometry
    output_factor: float
    machine: str = ''
    # reference depth (cm) the output factor is normalised at
    zref: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, 'output_factor',
                           _positive_value('output factor', self.output_factor, self.geometry))
        if self.zref is not None:
            object.__setattr__(self, 'zref', _positive_value('zref', self.zref, self.geometry))

    @property
    def key(self) -> TableKey:
        return make_key(self.energy, self.applicator, self.machine)


def _positive_value(name, value, geometry):
    try:
        v = float(value)
    except (TypeError, ValueError):
        v = math.nan
    if not math.isfinite(v) or v <= 0:
        raise InvalidCalibrationData(
            f"Calibration point {geometry}: {name} must be a positive finite number, got {value!r}")
    return v


def _interpolate_linear(x, x0, x1, y0, y1):
    dx = x1 - x0
    if abs(dx) <= np.finfo(float).eps:
        return y0
    x = min(max(x, x0), x1)
    return y0 + (x - x0) * (y1 - y0) / dx


def _grid_lines(values, tolerance):
    """Sorted distinct values; values closer than tolerance collapse onto one line."""
    lines = []
    for v in np.sort(np.asarray(values, dtype=float)):
        if not lines or v - lines[-1] > tolerance:
            lines.append(float(v))
    return np.array(lines)


def _nearest_line(lines, value, tolerance) -> Optional[int]:
    i = int(np.searchsorted(lines, value))
    best = None
    for k in (i - 1, i):
        if 0 <= k < len(lines):
            d = abs(lines[k] - value)
            if d <= tolerance and (best is None or d < abs(lines[best] - value)):
                best = k
    return best


def _bracket_pairs(lines, value, tolerance) -> List[Tuple[float, int, int]]:
    """Candidate (cost, lower, upper) line index pairs around value, cheapest first.

    A degenerate pair (i, i) is only produced for a line within tolerance of value.
    """
    lo = int(np.searchsorted(lines, value + tolerance, side='right'))
    hi = int(np.searchsorted(lines, value - tolerance, side='left'))
    pairs = []
    for i in range(lo):
        for j in range(max(i, hi), len(lines)):
            cost = abs(value - lines[i]) + abs(lines[j] - value)
            pairs.append((cost, i, j))
    pairs.sort()
    return pairs


class OutputFactorTable:
    """Output factors of one (machine, energy, applicator) over aperture sizes."""

    def __init__(self, records: Iterable[CalibrationRecord],
                 tolerance: float = DEFAULT_GEOMETRY_TOLERANCE):
        records = tuple(records)
        if not records:
            raise InvalidCalibrationData("An output factor table needs at least one record")
        self.key = records[0].key
        self.tolerance = float(tolerance)
        for rec in records:
            if rec.key != self.key:
                raise InvalidCalibrationData(
                    f"Record for {rec.key} does not belong to table {self.key}")
        self._records = records
        self._widths = _grid_lines([r.geometry.width for r in records], self.tolerance)
        self._heights = _grid_lines([r.geometry.height for r in records], self.tolerance)

        # (width line, height line) -> output factor
        self._grid: Dict[Tuple[int, int], float] = {}
        for rec in records:
            iw = _nearest_line(self._widths, rec.geometry.width, self.tolerance)
            ih = _nearest_line(self._heights, rec.geometry.height, self.tolerance)
            if (iw, ih) in self._grid:
                raise DuplicateCalibrationPoint(self.key, str(rec.geometry),
                                                self._grid[(iw, ih)], rec.output_factor)
            self._grid[(iw, ih)] = float(rec.output_factor)

        zrefs = sorted({r.zref for r in records if r.zref is not None})
        if len(zrefs) > 1:
            raise InvalidCalibrationData(
                f"Conflicting zref values {zrefs} for {self._describe()}")
        self.zref: Optional[float] = zrefs[0] if zrefs else None

    @property
    def energy(self):
        return self.key.energy

    @property
    def applicator(self):
        return self.key.applicator

    @property
    def machine(self):
        return self.key.machine

    @property
    def records(self) -> Tuple[CalibrationRecord, ...]:
        return self._records

    def __len__(self):
        return len(self._records)

    def apertures(self) -> List[ApertureGeometry]:
        return sorted((r.geometry for r in self._records), key=lambda g: (g.width, g.height))

    def covers(self, geometry: ApertureGeometry) -> bool:
        """True when the geometry lies inside the measured width and height ranges."""
        tol = self.tolerance
        return (self._widths[0] - tol <= geometry.width <= self._widths[-1] + tol
                and self._heights[0] - tol <= geometry.height <= self._heights[-1] + tol)

    def lookup(self, geometry: ApertureGeometry) -> float:
        w, h = geometry.width, geometry.height
        iw = _nearest_line(self._widths, w, self.tolerance)
        ih = _nearest_line(self._heights, h, self.tolerance)
        if iw is not None and ih is not None and (iw, ih) in self._grid:
            return self._grid[(iw, ih)]

        if not self.covers(geometry):
            raise OutOfCalibrationRange(
                f"Aperture [{geometry} mm] is outside the calibrated range "
                f"[{self._widths[0]:g}-{self._widths[-1]:g} x "
                f"{self._heights[0]:g}-{self._heights[-1]:g} mm] for {self._describe()}")

        bracket = self._select_bracket(w, h)
        if bracket is None:
            raise OutOfCalibrationRange(
                f"No complete set of calibration points surrounds aperture "
                f"[{geometry} mm] for {self._describe()}")
        value = float(self._interpolate(bracket, w, h))
        logging.debug("Interpolated OF %.5f at %s for %s using widths %s heights %s",
                      value, geometry, self._describe(),
                      (self._widths[bracket[0]], self._widths[bracket[1]]),
                      (self._heights[bracket[2]], self._heights[bracket[3]]))
        return value

    def _describe(self):
        k = self.key
        s = f"{k.energy:g} MeV / applicator {k.applicator}"
        return f"{k.machine} {s}" if k.machine else s

    def _has_corners(self, wi, wj, hi, hj):
        grid = self._grid
        return ((wi, hi) in grid and (wj, hi) in grid
                and (wi, hj) in grid and (wj, hj) in grid)

    def _select_bracket(self, w, h):
        """Cheapest (wi, wj, hi, hj) whose four corners are measured, or None."""
        wpairs = _bracket_pairs(self._widths, w, self.tolerance)
        hpairs = _bracket_pairs(self._heights, h, self.tolerance)
        best = None
        for wcost, wi, wj in wpairs:
            if best is not None and wcost >= best[0]:
                break
            for hcost, hi, hj in hpairs:
                cost = wcost + hcost
                if best is not None and cost >= best[0]:
                    break
                if self._has_corners(wi, wj, hi, hj):
                    best = (cost, (wi, wj, hi, hj))
                    break
        return best[1] if best else None

    def _interpolate(self, bracket, w, h):
        wi, wj, hi, hj = bracket
        w1, w2 = self._widths[wi], self._widths[wj]
        h1, h2 = self._heights[hi], self._heights[hj]
        f11 = self._grid[(wi, hi)]
        f21 = self._grid[(wj, hi)]
        f12 = self._grid[(wi, hj)]
        f22 = self._grid[(wj, hj)]
        if wi == wj and hi == hj:
            return f11
        if wi == wj:
            return _interpolate_linear(h, h1, h2, f11, f12)
        if hi == hj:
            return _interpolate_linear(w, w1, w2, f11, f21)
        # a point within tolerance outside [w1, w2] x [h1, h2] is snapped onto the bracket
        w = min(max(w, w1), w2)
        h = min(max(h, h1), h2)
        return (f11 * (w2 - w) * (h2 - h)
                + f21 * (w - w1) * (h2 - h)
                + f12 * (w2 - w) * (h - h1)
                + f22 * (w - w1) * (h - h1)) / ((w2 - w1) * (h2 - h1))


class CalibrationStore:
    """All output factor tables of a site, built once and read-only afterwards."""

    def __init__(self, records: Iterable[CalibrationRecord],
                 tolerance: float = DEFAULT_GEOMETRY_TOLERANCE):
        grouped: Dict[TableKey, List[CalibrationRecord]] = {}
        for rec in records:
            grouped.setdefault(rec.key, []).append(rec)
        self.tolerance = float(tolerance)
        self._tables = {key: OutputFactorTable(recs, self.tolerance)
                        for key, recs in grouped.items()}
        logging.info("Calibration store: %d tables, %d records",
                     len(self._tables), sum(len(t) for t in self._tables.values()))

    def __len__(self):
        return len(self._tables)

    def __contains__(self, key):
        return key in self._tables

    def keys(self) -> List[TableKey]:
        return sorted(self._tables)

    def get_table(self, energy, applicator, machine='') -> OutputFactorTable:
        table = self._tables.get(make_key(energy, applicator, machine))
        if table is None:
            raise UnknownEnergyApplicatorPair(energy, applicator, machine)
        return table

    def machines(self) -> List[str]:
        return sorted({k.machine for k in self._tables})

    def energies(self, machine='') -> List[float]:
        return sorted({k.energy for k in self._tables if k.machine == machine})

    def applicators(self, machine='', energy=None) -> List[str]:
        return sorted({k.applicator for k in self._tables
                       if k.machine == machine and (energy is None or k.energy == float(energy))})

    def apertures(self, energy, applicator, machine='') -> List[ApertureGeometry]:
        return self.get_table(energy, applicator, machine).apertures()

    def zref(self, energy, machine='') -> Optional[float]:
        """Reference depth (cm) of an energy, taken from any of its tables."""
        found = sorted({t.zref for k, t in self._tables.items()
                        if k.machine == machine and k.energy == float(energy) and t.zref is not None})
        return found[0] if found else None


class SsdCorrectionTable:
    """Output correction versus SSD for one (machine, energy, applicator)."""

    def __init__(self, key: TableKey, points: Iterable[Tuple[float, float]],
                 tolerance: float = DEFAULT_GEOMETRY_TOLERANCE):
        points = sorted((float(s), float(f)) for s, f in points)
        if not points:
            raise InvalidCalibrationData(f"No SSD correction points for {key}")
        self.key = key
        self.tolerance = float(tolerance)
        ssds = np.array([p[0] for p in points])
        dupes = np.nonzero(np.diff(ssds) <= self.tolerance)[0]
        if len(dupes):
            i = int(dupes[0])
            raise DuplicateCalibrationPoint(key, f"SSD {ssds[i]:g}",
                                            points[i][1], points[i + 1][1])
        self._ssds = ssds
        self._factors = np.array([p[1] for p in points])

    def factor_at(self, ssd) -> float:
        ssd = float(ssd)
        i = _nearest_line(self._ssds, ssd, self.tolerance)
        if i is not None:
            return float(self._factors[i])
        if not self._ssds[0] <= ssd <= self._ssds[-1]:
            raise SsdOutOfRange(ssd, self._ssds[0], self._ssds[-1])
        j = int(np.searchsorted(self._ssds, ssd))
        return float(_interpolate_linear(ssd, self._ssds[j - 1], self._ssds[j],
                                         self._factors[j - 1], self._factors[j]))


class SsdCorrection:
    """Correction provider looking up the request's SSD in per-beam SSD tables."""

    name = 'ssd'

    def __init__(self, tables: Iterable[SsdCorrectionTable]):
        self._tables = {t.key: t for t in tables}

    def __len__(self):
        return len(self._tables)

    def __call__(self, request) -> float:
        if request.ssd is None:
            raise MissingCorrectionFactor(self.name, "field request has no SSD")
        table = self._tables.get(make_key(request.energy, request.applicator, request.machine))
        if table is None:
            raise UnknownEnergyApplicatorPair(request.energy, request.applicator, request.machine)
        return table.factor_at(request.ssd)
