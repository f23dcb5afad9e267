#!/usr/bin/env python3
"""
Quick validation script for medical physicists to test the EMU check install.
This validates that all components can import and run a synthetic check.
"""

import sys
import traceback

def test_imports():
    """Test that all required modules can be imported."""
    print("Testing imports...")
    try:
        import pandas as pd
        import numpy as np
        import streamlit as st
        import openpyxl
        print("✓ Core dependencies imported successfully")
        return True
    except Exception as e:
        print(f"✗ Import error: {e}")
        return False

def _synthetic_store():
    from calibration import ApertureGeometry, CalibrationRecord, CalibrationStore
    points = [(80, 80, 0.95), (80, 120, 0.97), (120, 80, 0.96), (120, 120, 0.99)]
    return CalibrationStore([
        CalibrationRecord(6.0, '10x10', ApertureGeometry(w, h), of) for w, h, of in points
    ])

def test_output_factor_lookup():
    """Test exact lookup, interpolation and extrapolation refusal."""
    print("\nTesting output factor lookup...")
    try:
        from calibration import ApertureGeometry
        from emu_errors import OutOfCalibrationRange

        table = _synthetic_store().get_table(6.0, '10x10')
        exact = table.lookup(ApertureGeometry(80, 120))
        interp = table.lookup(ApertureGeometry(100, 100))
        try:
            table.lookup(ApertureGeometry(60, 60))
            print("✗ Extrapolation was not refused")
            return False
        except OutOfCalibrationRange:
            pass

        if abs(exact - 0.97) < 1e-9 and abs(interp - 0.9675) < 1e-9:
            print(f"✓ Lookup working - exact 80x120: {exact:.4f}, interpolated 100x100: {interp:.4f}")
            return True
        print(f"✗ Unexpected output factors: {exact}, {interp}")
        return False

    except Exception as e:
        print(f"✗ Lookup error: {e}")
        traceback.print_exc()
        return False

def test_mu_verification():
    """Test MU recomputation and verdicts."""
    print("\nTesting MU verification...")
    try:
        from calibration import ApertureGeometry
        from mu_check import FieldRequest, MuVerifier, OutputFactorResolver, Verdict

        verifier = MuVerifier(OutputFactorResolver(_synthetic_store()))
        request = FieldRequest(6.0, '10x10', ApertureGeometry(100, 100),
                               planned_mu=210.0, prescribed_dose=200.0, dose_per_mu=1.0)
        result = verifier.verify(request)

        print(f"✓ MU check working - Calculated: {result.expected_mu:.2f}, "
              f"deviation: {result.deviation_pct:+.2f}% ({result.verdict.value})")
        return result.verdict in (Verdict.PASS, Verdict.WARN, Verdict.FAIL)

    except Exception as e:
        print(f"✗ MU check error: {e}")
        traceback.print_exc()
        return False

def test_report():
    """Test building the report table and Excel bytes."""
    print("\nTesting report generation...")
    try:
        from calibration import ApertureGeometry
        from calibration_io import report_bytes, results_to_frame
        from mu_check import FieldRequest, MuVerifier, OutputFactorResolver

        verifier = MuVerifier(OutputFactorResolver(_synthetic_store()))
        requests = [
            FieldRequest(6.0, '10x10', ApertureGeometry(100, 100), 207.0, 200.0, label='A'),
            FieldRequest(9.0, '10x10', ApertureGeometry(100, 100), 207.0, 200.0, label='B'),
        ]
        frame = results_to_frame(requests, verifier.verify_many(requests))
        data = report_bytes(frame)
        if list(frame['status']) == ['PASS', 'ERROR'] and data[:2] == b'PK':
            print(f"✓ Report working - {len(frame)} rows, {len(data)} bytes of Excel")
            return True
        print(f"✗ Unexpected report: {list(frame['status'])}")
        return False

    except Exception as e:
        print(f"✗ Report error: {e}")
        traceback.print_exc()
        return False

def main():
    """Run all validation tests."""
    print("=" * 60)
    print("EMU Check System Validation")
    print("=" * 60)

    tests = [
        test_imports,
        test_output_factor_lookup,
        test_mu_verification,
        test_report
    ]

    results = []
    for test in tests:
        try:
            result = test()
            results.append(result)
        except Exception as e:
            print(f"✗ Test failed with exception: {e}")
            results.append(False)

    print("\n" + "=" * 60)
    print("VALIDATION SUMMARY")
    print("=" * 60)

    passed = sum(results)
    total = len(results)

    if passed == total:
        print(f"✓ ALL TESTS PASSED ({passed}/{total})")
        print("\nThe system is ready for medical physics testing!")
        print("\nNext steps:")
        print("1. Put the of_*.csv (and ssd_*.csv) files in ~/.emu_check")
        print("2. Run: python emu_check.py --fields fields.csv --report mu_check.xlsx")
        print("3. Or run: streamlit run app.py")
        return True
    else:
        print(f"✗ SOME TESTS FAILED ({passed}/{total})")
        print("\nPlease address the issues above before proceeding.")
        return False

if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
