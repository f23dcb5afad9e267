import pytest

from calibration import ApertureGeometry, CalibrationRecord, CalibrationStore, OutputFactorTable

SCENARIO_POINTS = [(8, 8, 0.95), (8, 12, 0.97), (12, 8, 0.96), (12, 12, 0.99)]

# irregular 3x3-ish grid: 100x150 and 150x150 were never measured
IRREGULAR_POINTS = [
    (50, 50, 0.90), (50, 100, 0.93), (50, 150, 0.94),
    (100, 50, 0.94), (100, 100, 0.97),
    (150, 50, 0.95), (150, 100, 0.99),
]


def make_records(points, energy=6.0, applicator='10x10', machine=''):
    return [CalibrationRecord(energy, applicator, ApertureGeometry(w, h), of, machine)
            for w, h, of in points]


@pytest.fixture
def scenario_records():
    return make_records(SCENARIO_POINTS)


@pytest.fixture
def scenario_table(scenario_records):
    return OutputFactorTable(scenario_records)


@pytest.fixture
def irregular_table():
    return OutputFactorTable(make_records(IRREGULAR_POINTS, energy=9.0, applicator='15x15'))


@pytest.fixture
def store():
    return CalibrationStore(
        make_records(SCENARIO_POINTS)
        + make_records(IRREGULAR_POINTS, energy=9.0, applicator='15x15')
        + make_records(SCENARIO_POINTS, energy=6.0, applicator='10x10', machine='linac2')
    )


@pytest.fixture
def records_for():
    return make_records


@pytest.fixture
def scenario_points():
    return list(SCENARIO_POINTS)


@pytest.fixture
def irregular_points():
    return list(IRREGULAR_POINTS)
