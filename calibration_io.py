from typing import Dict, Iterable, List, Optional, Sequence, Union
import io
import logging
import re
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import numpy as np
import pandas as pd

from calibration import (
    DEFAULT_GEOMETRY_TOLERANCE,
    ApertureGeometry,
    CalibrationRecord,
    CalibrationStore,
    SsdCorrection,
    SsdCorrectionTable,
    make_key,
)
from emu_errors import EmuCheckError, InvalidCalibrationData, InvalidFieldRequest
from emu_settings import VerificationSettings
from mu_check import FieldRequest, MuVerifier, OutputFactorResolver, VerificationResult

OF_PREFIX = 'of_'
SSD_PREFIX = 'ssd_'
CORRECTION_PREFIX = 'cf_'

# canonical column -> accepted spellings (compared after _normalize_name)
OF_COLUMNS = {
    'machine': ['machine', 'linac', 'unit'],
    'energy': ['energy', 'energy_mev', 'e_mev'],
    'applicator': ['applicator', 'cone', 'app'],
    'width': ['width', 'w', 'x', 'field_width', 'width_mm'],
    'height': ['height', 'h', 'y', 'field_height', 'length', 'height_mm'],
    'output_factor': ['output_factor', 'of', 'factor', 'outputfactor'],
    'zref': ['zref', 'z_ref', 'depth_zref', 'zref_cm', 'reference_depth'],
}
SSD_COLUMNS = {
    'machine': OF_COLUMNS['machine'],
    'energy': OF_COLUMNS['energy'],
    'applicator': OF_COLUMNS['applicator'],
    'ssd': ['ssd', 'ssd_cm', 'source_skin_distance'],
    'factor': ['factor', 'correction', 'cf', 'output_factor', 'of'],
}
FIELD_COLUMNS = {
    'label': ['label', 'field', 'beam', 'name', 'field_id'],
    'machine': OF_COLUMNS['machine'],
    'energy': OF_COLUMNS['energy'],
    'applicator': OF_COLUMNS['applicator'],
    'width': OF_COLUMNS['width'],
    'height': OF_COLUMNS['height'],
    'planned_mu': ['planned_mu', 'mu', 'tps_mu', 'plan_mu', 'planned_beam_mu'],
    'prescribed_dose': ['prescribed_dose', 'dose', 'dose_cgy', 'dose_zref'],
    'dose_per_mu': ['dose_per_mu', 'reference_dose_per_mu', 'dose_rate', 'cgy_per_mu'],
    'ssd': SSD_COLUMNS['ssd'],
}


def _normalize_name(name: str) -> str:
    s = str(name).lower()
    s = re.sub(r'[^a-z0-9]', '', s)
    return s


def infer_column_mapping(columns: List[str], canonical: Dict[str, List[str]]) -> Dict[str, Optional[str]]:
    """Return a mapping from canonical column names to actual column names when possible.

    Matching is case-insensitive and ignores non-alphanumeric characters. Accepted
    spellings are tried first, then any column whose name contains the canonical name.
    Correction factor columns (cf_*) are never matched.
    """
    candidates = [c for c in columns if not str(c).lower().startswith(CORRECTION_PREFIX)]
    norm_to_actual = {_normalize_name(c): c for c in candidates}
    mapping = {}
    used = set()
    for canon, spellings in canonical.items():
        found = None
        for s in spellings:
            actual = norm_to_actual.get(_normalize_name(s))
            if actual is not None and actual not in used:
                found = actual
                break
        mapping[canon] = found
        if found is not None:
            used.add(found)
    # fuzzy: look for any column whose normalized form contains the canonical token
    for canon in canonical:
        if mapping[canon] is not None:
            continue
        token = _normalize_name(canon)
        for nrm, actual in norm_to_actual.items():
            if actual not in used and token in nrm:
                mapping[canon] = actual
                used.add(actual)
                break
    return mapping


def _source_name(source) -> str:
    return str(getattr(source, 'name', None) or source)


def read_csv(source) -> pd.DataFrame:
    """Read a calibration or field CSV; '#' starts a comment line."""
    name = _source_name(source)
    try:
        if hasattr(source, 'seek'):
            source.seek(0)
        df = pd.read_csv(source, comment='#', skipinitialspace=True)
    except FileNotFoundError as e:
        raise InvalidCalibrationData(f"File not found: {name}") from e
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise InvalidCalibrationData(f"Failed to read {name}: {e}") from e
    df.columns = [str(c).strip() for c in df.columns]
    return df


def _map_columns(df, canonical, required, source):
    mapping = infer_column_mapping(list(df.columns), canonical)
    missing = [c for c in required if mapping.get(c) is None]
    if missing:
        raise InvalidCalibrationData(
            f"{source}: missing column(s) {', '.join(missing)} (found: {', '.join(map(str, df.columns))})")
    return mapping


def _numeric(df, column, source, error=InvalidCalibrationData, optional=False):
    values = pd.to_numeric(df[column], errors='coerce')
    bad = values.isna() | ~np.isfinite(values) | (values <= 0)
    if optional:
        bad &= df[column].notna()
    if bad.any():
        # +2: header line and 1-based row numbers
        rows = ', '.join(str(i + 2) for i in df.index[bad.to_numpy()][:10])
        raise error(f"{source}: column '{column}' must hold positive numbers (rows {rows})")
    return values


def _text(df, column, default=''):
    if column is None:
        return pd.Series([default] * len(df), index=df.index)

    def _fmt(v):
        if pd.isna(v):
            return default
        # identifiers like applicator "10" are read back as 10.0 when the column has gaps
        if isinstance(v, float) and v.is_integer():
            return str(int(v))
        return str(v).strip()

    return df[column].map(_fmt)


def records_from_frame(df: pd.DataFrame, source: str = '<frame>') -> List[CalibrationRecord]:
    """Convert an output factor table (one row per measured aperture) into records."""
    df = df.dropna(how='all').reset_index(drop=True)
    if df.empty:
        raise InvalidCalibrationData(f"{source}: no output factor rows")
    m = _map_columns(df, OF_COLUMNS, ['energy', 'applicator', 'width', 'height', 'output_factor'], source)
    energy = _numeric(df, m['energy'], source)
    width = _numeric(df, m['width'], source)
    height = _numeric(df, m['height'], source)
    factor = _numeric(df, m['output_factor'], source)
    applicator = _text(df, m['applicator'])
    machine = _text(df, m['machine'])
    if m['zref'] is not None:
        zref = _numeric(df, m['zref'], source, optional=True)
    else:
        zref = pd.Series([np.nan] * len(df), index=df.index)
    return [
        CalibrationRecord(float(e), a, ApertureGeometry(float(w), float(h)), float(f), mach,
                          None if pd.isna(z) else float(z))
        for e, a, w, h, f, mach, z in zip(energy, applicator, width, height, factor, machine, zref)
    ]


def ssd_tables_from_frame(df: pd.DataFrame, source: str = '<frame>',
                          tolerance: float = DEFAULT_GEOMETRY_TOLERANCE) -> List[SsdCorrectionTable]:
    df = df.dropna(how='all').reset_index(drop=True)
    if df.empty:
        raise InvalidCalibrationData(f"{source}: no SSD correction rows")
    m = _map_columns(df, SSD_COLUMNS, ['energy', 'applicator', 'ssd', 'factor'], source)
    work = pd.DataFrame({
        'machine': _text(df, m['machine']),
        'energy': _numeric(df, m['energy'], source),
        'applicator': _text(df, m['applicator']),
        'ssd': _numeric(df, m['ssd'], source),
        'factor': _numeric(df, m['factor'], source),
    })
    tables = []
    for (machine, energy, applicator), grp in work.groupby(['machine', 'energy', 'applicator'], sort=True):
        key = make_key(energy, applicator, machine)
        tables.append(SsdCorrectionTable(key, zip(grp['ssd'], grp['factor']), tolerance))
    return tables


@dataclass
class CalibrationData:
    """Everything loaded from a calibration directory."""
    store: CalibrationStore
    ssd: Optional[SsdCorrection] = None

    def verifier(self, settings: Optional[VerificationSettings] = None) -> MuVerifier:
        corrections = [self.ssd] if self.ssd is not None and len(self.ssd) else []
        return MuVerifier(OutputFactorResolver(self.store), settings, corrections)


def load_calibration_files(files: Iterable, tolerance: float = DEFAULT_GEOMETRY_TOLERANCE) -> CalibrationData:
    """Build calibration data from of_*.csv and ssd_*.csv files (paths or uploaded buffers).

    Files with other names are skipped.
    """
    records = []
    ssd_tables = []
    n_of = 0
    for f in files:
        name = Path(_source_name(f)).name
        lower = name.lower()
        if lower.startswith(OF_PREFIX):
            records += records_from_frame(read_csv(f), name)
            n_of += 1
        elif lower.startswith(SSD_PREFIX):
            ssd_tables += ssd_tables_from_frame(read_csv(f), name, tolerance)
        else:
            logging.warning("Skipping %s: not an output factor (of_*) or SSD (ssd_*) file", name)
    if n_of == 0:
        raise InvalidCalibrationData("No output factor files (of_*.csv) were found")
    store = CalibrationStore(records, tolerance)
    logging.info("Loaded %d output factor file(s), %d SSD table(s)", n_of, len(ssd_tables))
    return CalibrationData(store, SsdCorrection(ssd_tables) if ssd_tables else None)


def load_calibration_dir(dirname, tolerance: float = DEFAULT_GEOMETRY_TOLERANCE) -> CalibrationData:
    d = Path(dirname).expanduser()
    if not d.is_dir():
        raise InvalidCalibrationData(f"Calibration directory not found: {d}")
    files = sorted(p for p in d.iterdir() if p.is_file() and p.suffix.lower() == '.csv')
    return load_calibration_files(files, tolerance)


@dataclass(frozen=True)
class RejectedField:
    """A fields file row that could not be turned into a FieldRequest."""
    label: str
    error: EmuCheckError
    values: Dict[str, object]


FieldEntry = Union[FieldRequest, RejectedField]


def requests_from_frame(df: pd.DataFrame, source: str = '<frame>') -> List[FieldEntry]:
    """One FieldRequest per row; cf_<name> columns become declared correction factors.

    A row with invalid values becomes a RejectedField so the other rows are still checked.
    Missing columns or an empty file reject the whole file.
    """
    df = df.dropna(how='all').reset_index(drop=True)
    if df.empty:
        raise InvalidFieldRequest(f"{source}: no fields to check")
    try:
        m = _map_columns(df, FIELD_COLUMNS,
                         ['energy', 'applicator', 'width', 'height', 'planned_mu', 'prescribed_dose'], source)
    except InvalidCalibrationData as e:
        raise InvalidFieldRequest(str(e)) from e
    cf_cols = {c[len(CORRECTION_PREFIX):].strip(): c for c in df.columns
               if str(c).lower().startswith(CORRECTION_PREFIX)}

    def _column(canon, default=np.nan):
        if m[canon] is None:
            return pd.Series([default] * len(df), index=df.index)
        return pd.to_numeric(df[m[canon]], errors='coerce')

    energy = _column('energy')
    planned = _column('planned_mu')
    dose = _column('prescribed_dose')
    dose_per_mu = _column('dose_per_mu', 1.0)
    ssd = _column('ssd')
    labels = _text(df, m['label'])
    applicator = _text(df, m['applicator'])
    machine = _text(df, m['machine'])

    entries = []
    for i in df.index:
        label = labels[i] or f"field {i + 1}"
        cfs = {}
        for name, col in cf_cols.items():
            val = df.at[i, col]
            if pd.notna(val):
                cfs[name] = val
        try:
            entries.append(FieldRequest(
                energy=energy[i],
                applicator=applicator[i],
                geometry=ApertureGeometry(df.at[i, m['width']], df.at[i, m['height']]),
                planned_mu=planned[i],
                prescribed_dose=dose[i],
                dose_per_mu=dose_per_mu[i],
                ssd=None if pd.isna(ssd[i]) else ssd[i],
                machine=machine[i],
                correction_factors=cfs,
                label=label,
            ))
        except EmuCheckError as e:
            # +2: header line and 1-based row numbers
            logging.warning("%s, row %d (%s) rejected: %s", source, i + 2, label, e)
            values = {canon: (None if pd.isna(df.at[i, col]) else df.at[i, col])
                      for canon, col in m.items() if col is not None and canon != 'label'}
            values['machine'] = machine[i]
            values['applicator'] = applicator[i]
            entries.append(RejectedField(label, e, values))
    return entries


def read_field_requests(source) -> List[FieldEntry]:
    try:
        df = read_csv(source)
    except InvalidCalibrationData as e:
        raise InvalidFieldRequest(str(e)) from e
    return requests_from_frame(df, Path(_source_name(source)).name)


def verify_fields(verifier: MuVerifier, entries: Sequence[FieldEntry],
                  max_workers: Optional[int] = None) -> List[Union[VerificationResult, EmuCheckError]]:
    """verify_many over the valid entries; a rejected row keeps its own error as outcome."""
    valid = [e for e in entries if isinstance(e, FieldRequest)]
    done = iter(verifier.verify_many(valid, max_workers=max_workers))
    return [next(done) if isinstance(e, FieldRequest) else e.error for e in entries]


def _report_entry(req: FieldEntry) -> dict:
    if isinstance(req, RejectedField):
        v = req.values
        return {
            'Field': req.label,
            'Machine': v.get('machine', ''),
            'Energy': v.get('energy'),
            'Applicator': v.get('applicator', ''),
            'Width': v.get('width'),
            'Height': v.get('height'),
            'SSD': v.get('ssd'),
            'PlannedMU': v.get('planned_mu'),
        }
    return {
        'Field': req.label,
        'Machine': req.machine,
        'Energy': req.energy,
        'Applicator': req.applicator,
        'Width': req.geometry.width,
        'Height': req.geometry.height,
        'SSD': req.ssd,
        'PlannedMU': req.planned_mu,
    }


def results_to_frame(requests: Sequence[FieldEntry],
                     outcomes: Sequence[Union[VerificationResult, EmuCheckError]]) -> pd.DataFrame:
    """One report row per field; failed checks and rejected rows get status ERROR and the error text."""
    rows = []
    for req, out in zip(requests, outcomes):
        entry = _report_entry(req)
        entry.update({'OutputFactor': None, 'ExpectedMU': None, 'Deviation_pct': None,
                      'status': 'ERROR', 'error': None})
        if isinstance(out, VerificationResult):
            entry['OutputFactor'] = out.output_factor
            entry['ExpectedMU'] = out.expected_mu
            entry['Deviation_pct'] = out.deviation_pct
            entry['status'] = out.verdict.value
        else:
            entry['error'] = f"{type(out).__name__}: {out}"
        rows.append(entry)
    columns = ['Field', 'Machine', 'Energy', 'Applicator', 'Width', 'Height', 'SSD',
               'OutputFactor', 'ExpectedMU', 'PlannedMU', 'Deviation_pct', 'status', 'error']
    return pd.DataFrame(rows, columns=columns)


def summary(results: pd.DataFrame) -> pd.Series:
    """Counts per status, in PASS/WARN/FAIL/ERROR order."""
    order = ['PASS', 'WARN', 'FAIL', 'ERROR']
    if results.empty:
        return pd.Series(0, index=order)
    return results['status'].value_counts().reindex(order, fill_value=0)


def _write_excel(target, results: pd.DataFrame, settings: Optional[VerificationSettings]):
    with pd.ExcelWriter(target, engine='openpyxl') as writer:
        results.to_excel(writer, index=False, sheet_name='Report')
        if settings is not None:
            meta = pd.DataFrame([{'setting': k, 'value': ', '.join(v) if isinstance(v, list) else v}
                                 for k, v in settings.to_dict().items()])
            meta.to_excel(writer, index=False, sheet_name='Settings')


def report_bytes(results: pd.DataFrame, settings: Optional[VerificationSettings] = None) -> bytes:
    buffer = io.BytesIO()
    _write_excel(buffer, results, settings)
    return buffer.getvalue()


def write_report(results: pd.DataFrame, out_path, settings: Optional[VerificationSettings] = None) -> Path:
    """Write the Excel report; falls back to the temp directory when out_path is not writable."""
    out_path = Path(out_path)
    try:
        _write_excel(out_path, results, settings)
        logging.info("MU check report generated: %s", out_path)
        return out_path
    except PermissionError:
        ts = datetime.now().strftime('%Y%m%d_%H%M%S')
        tmp = Path(tempfile.gettempdir()) / f"emu_check_report_{ts}.xlsx"
        _write_excel(tmp, results, settings)
        logging.warning("Permission denied writing to %s. Wrote report instead to: %s", out_path, tmp)
        return tmp
