"""Verification settings and their persistence as named JSON presets."""

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from calibration import DEFAULT_GEOMETRY_TOLERANCE
from emu_errors import InvalidSettings


@dataclass(frozen=True)
class VerificationSettings:
    """Site tolerances for the MU comparison.

    warn_threshold / fail_threshold are fractions (0.02 == 2 %).
    required_corrections names correction factors every field must carry,
    either declared on the request or produced by a correction provider.
    """
    warn_threshold: float = 0.02
    fail_threshold: float = 0.05
    geometry_tolerance_mm: float = DEFAULT_GEOMETRY_TOLERANCE
    required_corrections: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        try:
            warn = float(self.warn_threshold)
            fail = float(self.fail_threshold)
            tol = float(self.geometry_tolerance_mm)
        except (TypeError, ValueError) as e:
            raise InvalidSettings(f"Non-numeric setting: {e}") from e
        if not 0 < warn < fail:
            raise InvalidSettings(
                f"Thresholds must satisfy 0 < warn < fail, got warn={warn} fail={fail}")
        if tol <= 0:
            raise InvalidSettings(f"Geometry tolerance must be positive, got {tol}")
        object.__setattr__(self, 'warn_threshold', warn)
        object.__setattr__(self, 'fail_threshold', fail)
        object.__setattr__(self, 'geometry_tolerance_mm', tol)
        object.__setattr__(self, 'required_corrections',
                           tuple(str(n).strip().lower() for n in self.required_corrections))

    @classmethod
    def from_dict(cls, data: Dict) -> 'VerificationSettings':
        known = {k: v for k, v in (data or {}).items() if k in cls.__dataclass_fields__}
        unknown = set(data or {}) - set(known)
        if unknown:
            logging.warning("Ignoring unknown settings: %s", ', '.join(sorted(unknown)))
        if 'required_corrections' in known:
            names = known['required_corrections'] or ()
            if isinstance(names, str):
                names = [n for n in names.split(',') if n.strip()]
            known['required_corrections'] = tuple(names)
        return cls(**known)

    def to_dict(self) -> Dict:
        d = asdict(self)
        d['required_corrections'] = list(self.required_corrections)
        return d

    def replace(self, **overrides) -> 'VerificationSettings':
        """Copy with the given fields replaced; None values are ignored."""
        d = self.to_dict()
        d.update({k: v for k, v in overrides.items() if v is not None})
        return VerificationSettings.from_dict(d)


### Preset persistence helpers
PRESET_DIR = Path('.emu_presets')


def _preset_path(name: str, preset_dir: Path) -> Path:
    if not name or any(c in name for c in '/\\'):
        raise InvalidSettings(f"Invalid preset name: {name!r}")
    return Path(preset_dir) / f"{name}.json"


def save_preset(name: str, settings: VerificationSettings, preset_dir: Path = PRESET_DIR) -> Path:
    """Save settings by name as JSON under preset_dir/name.json."""
    p = _preset_path(name, preset_dir)
    p.parent.mkdir(parents=True, exist_ok=True)
    with p.open('w', encoding='utf-8') as f:
        json.dump(settings.to_dict(), f, ensure_ascii=False, indent=2)
    logging.info("Saved preset %s to %s", name, p)
    return p


def load_preset(name: str, preset_dir: Path = PRESET_DIR) -> Optional[VerificationSettings]:
    """Load a preset by name. Returns None when no such preset exists."""
    p = _preset_path(name, preset_dir)
    if not p.exists():
        return None
    try:
        with p.open('r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise InvalidSettings(f"Preset {p} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise InvalidSettings(f"Preset {p} must contain a JSON object")
    return VerificationSettings.from_dict(data)


def list_presets(preset_dir: Path = PRESET_DIR) -> List[str]:
    preset_dir = Path(preset_dir)
    if not preset_dir.is_dir():
        return []
    return sorted(p.stem for p in preset_dir.glob('*.json'))


def delete_preset(name: str, preset_dir: Path = PRESET_DIR) -> bool:
    p = _preset_path(name, preset_dir)
    if p.exists():
        p.unlink()
        return True
    return False
