import io
import logging

import pandas as pd
import pytest

from calibration import ApertureGeometry
from calibration_io import (
    infer_column_mapping,
    load_calibration_dir,
    load_calibration_files,
    read_field_requests,
    records_from_frame,
    report_bytes,
    RejectedField,
    requests_from_frame,
    results_to_frame,
    summary,
    verify_fields,
    write_report,
    OF_COLUMNS,
)
from emu_errors import (
    DuplicateCalibrationPoint,
    InvalidCalibrationData,
    InvalidFieldRequest,
    InvalidGeometry,
    UnknownEnergyApplicatorPair,
)
from emu_settings import VerificationSettings
from mu_check import FieldRequest, MuVerifier, OutputFactorResolver, Verdict

OF_CSV = """# 6 MeV output factors, measured 2024
energy,applicator,width,height,OF
6,10x10,8,8,0.95
6,10x10,8,12,0.97
6,10x10,12,8,0.96
6,10x10,12,12,0.99
"""

SSD_CSV = """Energy (MeV),Applicator,SSD,Factor
6,10x10,95,1.0
6,10x10,100,0.9
6,10x10,105,0.8
"""

FIELDS_CSV = """field,energy,applicator,width,height,planned_mu,dose,dose_per_mu,ssd,cf_wedge
A,6,10x10,10,10,229.7,200,1.0,100,
B,6,10x10,10,10,240,200,1.0,100,0.98
C,6,10x10,6,6,200,200,1.0,100,
"""


@pytest.fixture
def data_dir(tmp_path):
    d = tmp_path / 'data'
    d.mkdir()
    (d / 'of_10x10.csv').write_text(OF_CSV)
    return d


def test_infer_column_mapping():
    cols = ['Energy [MeV]', 'Applicator', 'X', 'Y', 'Output Factor', 'cf_machine']
    m = infer_column_mapping(cols, OF_COLUMNS)
    assert m == {'machine': None, 'energy': 'Energy [MeV]', 'applicator': 'Applicator',
                 'width': 'X', 'height': 'Y', 'output_factor': 'Output Factor', 'zref': None}


def test_infer_column_mapping_fuzzy():
    m = infer_column_mapping(['energy', 'applicator', 'width (mm)', 'height (mm)', 'output factor (rel)'],
                             OF_COLUMNS)
    assert m['width'] == 'width (mm)'
    assert m['output_factor'] == 'output factor (rel)'


def test_records_from_frame():
    df = pd.read_csv(io.StringIO(OF_CSV), comment='#')
    records = records_from_frame(df, 'of_10x10.csv')
    assert len(records) == 4
    assert records[1].energy == 6.0
    assert records[1].applicator == '10x10'
    assert records[1].geometry == ApertureGeometry(8, 12)
    assert records[1].output_factor == 0.97
    assert records[1].machine == ''


def test_records_from_frame_rejects_bad_values():
    df = pd.DataFrame({'energy': [6, 6], 'applicator': ['A', 'A'], 'width': [8, 8],
                       'height': [8, 10], 'of': [0.95, -0.1]})
    with pytest.raises(InvalidCalibrationData, match='rows 3'):
        records_from_frame(df)
    df['of'] = [0.95, 'n/a']
    with pytest.raises(InvalidCalibrationData):
        records_from_frame(df)


def test_records_from_frame_missing_column():
    df = pd.DataFrame({'energy': [6], 'applicator': ['A'], 'width': [8], 'height': [8]})
    with pytest.raises(InvalidCalibrationData, match='output_factor'):
        records_from_frame(df)


def test_numeric_applicator_read_as_text():
    df = pd.DataFrame({'energy': [6, 6], 'applicator': [10.0, None], 'width': [8, 8],
                       'height': [8, 10], 'of': [0.95, 0.96]})
    records = records_from_frame(df)
    assert records[0].applicator == '10'


def test_load_calibration_dir(data_dir, caplog):
    (data_dir / 'ssd_10x10.csv').write_text(SSD_CSV)
    (data_dir / 'notes.csv').write_text('a,b\n1,2\n')
    with caplog.at_level(logging.WARNING):
        data = load_calibration_dir(data_dir)
    assert 'Skipping notes.csv' in caplog.text
    assert data.store.get_table(6, '10x10').lookup(ApertureGeometry(10, 10)) == pytest.approx(0.9675)
    assert data.ssd is not None and len(data.ssd) == 1

    verifier = data.verifier()
    result = verifier.verify(FieldRequest(6, '10x10', ApertureGeometry(10, 10), 229.7, 200, ssd=100))
    assert result.expected_mu == pytest.approx(200 / (0.9675 * 0.9))
    assert result.corrections == (('ssd', 0.9),)


def test_load_calibration_dir_errors(tmp_path):
    with pytest.raises(InvalidCalibrationData, match='not found'):
        load_calibration_dir(tmp_path / 'missing')
    (tmp_path / 'ssd_only.csv').write_text(SSD_CSV)
    with pytest.raises(InvalidCalibrationData, match='of_'):
        load_calibration_dir(tmp_path)


def test_duplicates_across_files_fail_load(data_dir):
    (data_dir / 'of_10x10_extra.csv').write_text('energy,applicator,width,height,of\n6,10x10,8,8,0.951\n')
    with pytest.raises(DuplicateCalibrationPoint):
        load_calibration_dir(data_dir)


def test_load_uploaded_buffers():
    f = io.BytesIO(OF_CSV.encode('utf-8'))
    f.name = 'of_upload.csv'
    data = load_calibration_files([f])
    assert len(data.store) == 1
    assert data.ssd is None
    assert data.verifier().corrections == ()


def test_read_field_requests(tmp_path):
    path = tmp_path / 'fields.csv'
    path.write_text(FIELDS_CSV)
    requests = read_field_requests(path)
    assert [r.label for r in requests] == ['A', 'B', 'C']
    assert requests[0].planned_mu == 229.7
    assert requests[0].prescribed_dose == 200.0
    assert requests[0].ssd == 100.0
    assert dict(requests[0].correction_factors) == {}
    assert dict(requests[1].correction_factors) == {'wedge': 0.98}
    assert requests[2].geometry == ApertureGeometry(6, 6)


def test_requests_from_frame_defaults():
    df = pd.DataFrame({'energy': [6], 'applicator': ['10x10'], 'width': [10], 'height': [10],
                       'mu': [200], 'dose': [200]})
    (req,) = requests_from_frame(df)
    assert req.dose_per_mu == 1.0
    assert req.ssd is None
    assert req.label == 'field 1'


def test_requests_from_frame_missing_column():
    df = pd.DataFrame({'energy': [6], 'applicator': ['10x10'], 'width': [10], 'height': [10],
                       'dose': [200]})
    with pytest.raises(InvalidFieldRequest, match='planned_mu'):
        requests_from_frame(df)


def test_invalid_row_becomes_error_row(store, caplog):
    df = pd.DataFrame({'field': ['A', 'B', 'C'], 'energy': [6, 6, 6], 'applicator': ['10x10'] * 3,
                       'width': [10, 0, 10], 'height': [10, 10, 10], 'mu': [206.7, 200, 200],
                       'dose': [200, 200, -1]})
    with caplog.at_level(logging.WARNING):
        entries = requests_from_frame(df, 'fields.csv')
    assert 'fields.csv, row 3 (B) rejected' in caplog.text
    assert isinstance(entries[0], FieldRequest)
    assert isinstance(entries[1], RejectedField)
    assert isinstance(entries[1].error, InvalidGeometry)
    assert isinstance(entries[2], RejectedField)
    assert isinstance(entries[2].error, InvalidFieldRequest)

    outcomes = verify_fields(MuVerifier(OutputFactorResolver(store)), entries)
    results = results_to_frame(entries, outcomes)
    assert list(results['status']) == ['PASS', 'ERROR', 'ERROR']
    assert results.loc[0, 'OutputFactor'] == pytest.approx(0.9675)
    assert results.loc[1, 'Field'] == 'B'
    assert results.loc[1, 'Width'] == 0
    assert results.loc[1, 'error'].startswith('InvalidGeometry')
    assert results.loc[2, 'error'].startswith('InvalidFieldRequest')
    assert summary(results).to_dict() == {'PASS': 1, 'WARN': 0, 'FAIL': 0, 'ERROR': 2}


def test_records_from_frame_reads_zref():
    df = pd.DataFrame({'energy': [6, 6, 9], 'applicator': ['A', 'A', 'A'], 'width': [8, 8, 8],
                       'height': [8, 10, 8], 'of': [0.95, 0.96, 0.97], 'zref (cm)': [1.36, None, None]})
    records = records_from_frame(df)
    assert [r.zref for r in records] == [1.36, None, None]
    store = load_calibration_files([_named_buffer('of_a.csv', df.to_csv(index=False))]).store
    assert store.zref(6) == 1.36
    assert store.zref(9) is None


def _named_buffer(name, text):
    f = io.BytesIO(text.encode('utf-8'))
    f.name = name
    return f


def test_results_frame_summary_and_report(data_dir, tmp_path):
    (data_dir / 'ssd_10x10.csv').write_text(SSD_CSV)
    fields = tmp_path / 'fields.csv'
    fields.write_text(FIELDS_CSV)
    requests = read_field_requests(fields)
    data = load_calibration_dir(data_dir)
    outcomes = verify_fields(data.verifier(), requests)

    results = results_to_frame(requests, outcomes)
    # A: 200 / (0.9675 * 0.9) = 229.69 -> PASS; B: with wedge 0.98 -> 234.38 vs 240 -> WARN
    assert list(results['status']) == [Verdict.PASS.value, Verdict.WARN.value, 'ERROR']
    assert results.loc[2, 'error'].startswith('OutOfCalibrationRange')
    assert results.loc[0, 'ExpectedMU'] == pytest.approx(229.69, abs=0.01)

    counts = summary(results)
    assert counts.to_dict() == {'PASS': 1, 'WARN': 1, 'FAIL': 0, 'ERROR': 1}

    settings = VerificationSettings()
    out = write_report(results, tmp_path / 'report.xlsx', settings)
    assert out == tmp_path / 'report.xlsx'
    sheets = pd.read_excel(out, sheet_name=None)
    assert set(sheets) == {'Report', 'Settings'}
    assert list(sheets['Report']['status']) == ['PASS', 'WARN', 'ERROR']
    assert report_bytes(results)[:2] == b'PK'


def test_summary_empty():
    assert summary(pd.DataFrame()).to_dict() == {'PASS': 0, 'WARN': 0, 'FAIL': 0, 'ERROR': 0}


def test_error_rows_keep_request_columns(store):
    req = FieldRequest(12, '10x10', ApertureGeometry(10, 10), 200, 200, label='X')
    outcomes = MuVerifier(OutputFactorResolver(store)).verify_many([req])
    assert isinstance(outcomes[0], UnknownEnergyApplicatorPair)
    row = results_to_frame([req], outcomes).iloc[0]
    assert row['Field'] == 'X'
    assert row['Energy'] == 12.0
    assert row['status'] == 'ERROR'
