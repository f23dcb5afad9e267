"""Recompute the expected MU of an electron field and compare it with the TPS.

ExpectedMU = PrescribedDose / (DosePerMU_ref * OF * CF_1 * ... * CF_n)

The correction chain CF_1..CF_n is site specific: factors are declared on the
field request or produced by correction providers (e.g. an SSD table).
"""

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Callable, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from calibration import ApertureGeometry, CalibrationStore
from emu_errors import EmuCheckError, InvalidFieldRequest, MissingCorrectionFactor
from emu_settings import VerificationSettings


class Verdict(str, Enum):
    PASS = 'PASS'
    WARN = 'WARN'
    FAIL = 'FAIL'


def _positive(name, value, allow_zero=False):
    try:
        v = float(value)
    except (TypeError, ValueError):
        raise InvalidFieldRequest(f"{name} must be a number, got {value!r}") from None
    if not math.isfinite(v) or v < 0 or (v == 0 and not allow_zero):
        raise InvalidFieldRequest(f"{name} must be a positive finite number, got {value!r}")
    return v


@dataclass(frozen=True)
class FieldRequest:
    """One planned electron field to verify."""
    energy: float
    applicator: str
    geometry: ApertureGeometry
    planned_mu: float
    prescribed_dose: float
    dose_per_mu: float = 1.0
    ssd: Optional[float] = None
    machine: str = ''
    correction_factors: Mapping[str, float] = field(default_factory=dict)
    label: str = ''

    def __post_init__(self):
        object.__setattr__(self, 'energy', _positive('energy', self.energy))
        object.__setattr__(self, 'applicator', str(self.applicator))
        object.__setattr__(self, 'machine', str(self.machine or ''))
        object.__setattr__(self, 'planned_mu', _positive('planned MU', self.planned_mu, allow_zero=True))
        object.__setattr__(self, 'prescribed_dose', _positive('prescribed dose', self.prescribed_dose))
        object.__setattr__(self, 'dose_per_mu', _positive('reference dose per MU', self.dose_per_mu))
        if self.ssd is not None:
            object.__setattr__(self, 'ssd', _positive('SSD', self.ssd))
        factors = {str(k).strip().lower(): _positive(f"correction factor {k}", v)
                   for k, v in dict(self.correction_factors).items()}
        object.__setattr__(self, 'correction_factors', MappingProxyType(factors))


@dataclass(frozen=True)
class VerificationResult:
    output_factor: float
    expected_mu: float
    planned_mu: float
    relative_deviation: float
    verdict: Verdict
    corrections: Tuple[Tuple[str, float], ...] = ()

    @property
    def deviation_pct(self) -> float:
        return self.relative_deviation * 100.0


def relative_deviation(planned_mu: float, expected_mu: float) -> float:
    return (planned_mu - expected_mu) / expected_mu


def classify_deviation(deviation: float, warn: float, fail: float) -> Verdict:
    """Both thresholds are inclusive upper bounds of their band."""
    d = abs(deviation)
    if d <= warn:
        return Verdict.PASS
    if d <= fail:
        return Verdict.WARN
    return Verdict.FAIL


class OutputFactorResolver:
    """Resolve the calibrated output factor of a field request."""

    def __init__(self, store: CalibrationStore):
        self.store = store

    def resolve(self, request: FieldRequest) -> float:
        table = self.store.get_table(request.energy, request.applicator, request.machine)
        return table.lookup(request.geometry)


# A correction provider is a callable(request) -> factor with a ``name`` attribute.
CorrectionProvider = Callable[[FieldRequest], float]


class MuVerifier:

    def __init__(self, resolver: OutputFactorResolver,
                 settings: Optional[VerificationSettings] = None,
                 corrections: Iterable[CorrectionProvider] = ()):
        self.resolver = resolver
        self.settings = settings or VerificationSettings()
        self.corrections = tuple(corrections)
        for provider in self.corrections:
            if not getattr(provider, 'name', None):
                raise TypeError(f"Correction provider {provider!r} has no name")

    def correction_chain(self, request: FieldRequest) -> List[Tuple[str, float]]:
        """Correction factors applied to request, in application order.

        Factors declared on the request win over providers of the same name.
        """
        chain = list(request.correction_factors.items())
        declared = set(request.correction_factors)
        for provider in self.corrections:
            name = provider.name.lower()
            if name in declared:
                continue
            chain.append((name, _positive(f"correction factor {name}", provider(request))))
            declared.add(name)
        for name in self.settings.required_corrections:
            if name not in declared:
                raise MissingCorrectionFactor(name, "required by the site settings")
        return chain

    def verify(self, request: FieldRequest) -> VerificationResult:
        of = self.resolver.resolve(request)
        chain = self.correction_chain(request)
        total = of
        for _, factor in chain:
            total *= factor
        expected = request.prescribed_dose / (request.dose_per_mu * total)
        deviation = relative_deviation(request.planned_mu, expected)
        verdict = classify_deviation(deviation, self.settings.warn_threshold,
                                     self.settings.fail_threshold)
        logging.debug("%s: OF=%.5f chain=%s expected MU=%.2f planned MU=%.2f (%+.2f%%) %s",
                      request.label or request.geometry, of, chain, expected,
                      request.planned_mu, deviation * 100, verdict.value)
        return VerificationResult(of, expected, request.planned_mu, deviation, verdict, tuple(chain))

    def _outcome(self, request):
        try:
            return self.verify(request)
        except EmuCheckError as e:
            logging.warning("Verification failed for %s: %s", request.label or request.geometry, e)
            return e

    def verify_many(self, requests: Sequence[FieldRequest],
                    max_workers: Optional[int] = None) -> List[Union[VerificationResult, EmuCheckError]]:
        """Verify independent fields; one failing field does not stop the others.

        Returns, in request order, either the result or the error for each field.
        """
        if max_workers and max_workers > 1 and len(requests) > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as pool:
                return list(pool.map(self._outcome, requests))
        return [self._outcome(r) for r in requests]
