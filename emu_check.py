"""Command line MU check for electron fields.

Loads the calibration directory (of_*.csv output factors, optional ssd_*.csv SSD
corrections), verifies one field given on the command line or a CSV of fields,
prints a summary and optionally writes an Excel report. Run with:

    python emu_check.py ~/.emu_check --fields fields.csv --report mu_check.xlsx

Exit status: 0 all fields PASS/WARN, 2 any FAIL or ERROR, 1 fatal input error.
"""

from pathlib import Path
import argparse
import logging
import sys

from calibration import ApertureGeometry
from calibration_io import (
    load_calibration_dir,
    read_field_requests,
    results_to_frame,
    verify_fields,
    summary,
    write_report,
)
from emu_errors import EmuCheckError, InvalidFieldRequest, InvalidSettings
from emu_settings import VerificationSettings, load_preset
from mu_check import FieldRequest

DEFAULT_DATA_DIR = Path.home() / '.emu_check'

SINGLE_FIELD_ARGS = ('energy', 'applicator', 'width', 'height', 'planned_mu', 'dose')


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description='Independent MU check for electron fields against measured output factors')
    parser.add_argument('dir', nargs='?', default=str(DEFAULT_DATA_DIR),
                        help='Directory with the output factor (of_*.csv) and SSD correction (ssd_*.csv) '
                             'files per applicator')
    parser.add_argument('--fields', help='CSV with one field to check per row')
    field = parser.add_argument_group('single field')
    field.add_argument('--machine', default='', help='Machine (linac) name')
    field.add_argument('--energy', type=float, help='Nominal energy (MeV)')
    field.add_argument('--applicator', help='Applicator identifier')
    field.add_argument('--width', type=float, help='Insert equivalent width (mm)')
    field.add_argument('--height', type=float, help='Insert equivalent height (mm)')
    field.add_argument('--planned-mu', type=float, help='MU computed by the TPS')
    field.add_argument('--dose', type=float, help='Prescribed dose (cGy)')
    field.add_argument('--dose-per-mu', type=float, default=1.0, help='Reference dose per MU (cGy/MU)')
    field.add_argument('--ssd', type=float, help='Source to skin distance')
    field.add_argument('--cf', action='append', default=[], metavar='NAME=VALUE',
                       help='Additional correction factor (repeatable)')
    tol = parser.add_argument_group('tolerances')
    tol.add_argument('--preset', help='Load settings from a saved preset')
    tol.add_argument('--warn', type=float, help='Warn threshold in percent (default 2)')
    tol.add_argument('--fail', type=float, help='Fail threshold in percent (default 5)')
    tol.add_argument('--tolerance', type=float, help='Exact match tolerance in mm (default 0.01)')
    tol.add_argument('--require', action='append', default=None, metavar='NAME',
                     help='Correction factor every field must carry (repeatable)')
    parser.add_argument('--workers', type=int, default=None, help='Verify fields in parallel threads')
    parser.add_argument('--report', help='Output Excel report path')
    parser.add_argument('--verbose', action='store_true', help='Enable verbose logging')
    return parser.parse_args(argv)


def resolve_settings(args) -> VerificationSettings:
    settings = VerificationSettings()
    if args.preset:
        loaded = load_preset(args.preset)
        if loaded is None:
            raise InvalidSettings(f"Preset not found: {args.preset}")
        settings = loaded
    return settings.replace(
        warn_threshold=args.warn / 100.0 if args.warn is not None else None,
        fail_threshold=args.fail / 100.0 if args.fail is not None else None,
        geometry_tolerance_mm=args.tolerance,
        required_corrections=args.require,
    )


def _parse_cf(items):
    factors = {}
    for item in items:
        name, sep, value = item.partition('=')
        if not sep or not name.strip():
            raise InvalidFieldRequest(f"Correction factor must be NAME=VALUE, got {item!r}")
        factors[name.strip()] = value.strip()
    return factors


def collect_requests(args):
    if args.fields:
        return read_field_requests(args.fields)
    given = [a for a in SINGLE_FIELD_ARGS if getattr(args, a) is not None]
    if not given:
        return []
    missing = [a for a in SINGLE_FIELD_ARGS if getattr(args, a) is None]
    if missing:
        raise InvalidFieldRequest('Missing field argument(s): ' +
                                  ', '.join('--' + a.replace('_', '-') for a in missing))
    return [FieldRequest(
        energy=args.energy,
        applicator=args.applicator,
        geometry=ApertureGeometry(args.width, args.height),
        planned_mu=args.planned_mu,
        prescribed_dose=args.dose,
        dose_per_mu=args.dose_per_mu,
        ssd=args.ssd,
        machine=args.machine,
        correction_factors=_parse_cf(args.cf),
        label='field',
    )]


def print_available(store):
    print("No field given. Calibration data available:")
    for machine in store.machines():
        for energy in store.energies(machine):
            apps = ', '.join(store.applicators(machine, energy))
            prefix = f"{machine}: " if machine else ''
            zref = store.zref(energy, machine)
            depth = f" (zref {zref:g} cm)" if zref is not None else ''
            print(f"  {prefix}{energy:g} MeV{depth} -> applicators {apps}")


def print_results(results):
    for _, row in results.iterrows():
        if row['status'] == 'ERROR':
            print(f"{row['Field']}: ERROR {row['error']}")
        else:
            print(f"{row['Field']}: OF={row['OutputFactor']:.4f} MU(check)={row['ExpectedMU']:.2f} "
                  f"MU(plan)={row['PlannedMU']:.2f} Difference[%]={row['Deviation_pct']:+.2f} {row['status']}")
    counts = summary(results)
    print("\nSummary: " + ', '.join(f"{k} {v}" for k, v in counts.items()))


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(stream=sys.stdout, level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(levelname)s: %(message)s', force=True)

    try:
        settings = resolve_settings(args)
        data = load_calibration_dir(args.dir, tolerance=settings.geometry_tolerance_mm)
        requests = collect_requests(args)
    except EmuCheckError as e:
        logging.error("%s", e)
        return 1

    if not requests:
        print_available(data.store)
        return 0

    outcomes = verify_fields(data.verifier(settings), requests, max_workers=args.workers)
    results = results_to_frame(requests, outcomes)
    print_results(results)

    if args.report:
        written = write_report(results, args.report, settings)
        if Path(written) != Path(args.report):
            print(f"Report written to fallback location: {written}")

    return 2 if results['status'].isin(['FAIL', 'ERROR']).any() else 0


if __name__ == '__main__':
    sys.exit(main())
