"""Error kinds raised by the EMU check core and its loaders.

Every error derives from EmuCheckError so the CLI and the batch runner can
report a failed check without aborting the others.
"""


class EmuCheckError(Exception):
    """Base class for all EMU check errors."""


class InvalidGeometry(EmuCheckError, ValueError):
    """Aperture width/height is non-positive or not finite."""

    def __init__(self, width, height):
        self.width = width
        self.height = height
        super().__init__(f"Invalid aperture geometry [{width} x {height} mm]: "
                         "width and height must be positive finite numbers")


class DuplicateCalibrationPoint(EmuCheckError):
    """Two calibration records share the same key and geometry."""

    def __init__(self, key, point, first, second):
        self.key = key
        self.point = point
        super().__init__(f"Duplicate calibration point {point} for {key}: "
                         f"output factors {first} and {second}")


class UnknownEnergyApplicatorPair(EmuCheckError, LookupError):
    """No calibration table was loaded for the requested combination."""

    def __init__(self, energy, applicator, machine=''):
        self.energy = energy
        self.applicator = applicator
        self.machine = machine
        where = f" on machine [{machine}]" if machine else ''
        super().__init__(f"No calibration data for energy [{energy} MeV] and "
                         f"applicator [{applicator}]{where}")


class OutOfCalibrationRange(EmuCheckError):
    """The requested point falls outside the measured calibration coverage."""


class SsdOutOfRange(OutOfCalibrationRange):
    """Requested SSD lies outside the measured SSD correction range."""

    def __init__(self, ssd, lo, hi):
        self.ssd = ssd
        super().__init__(f"SSD [{ssd}] is out of range [{lo}, {hi}]")


class MissingCorrectionFactor(EmuCheckError):
    """A correction factor required by the site configuration is not available."""

    def __init__(self, name, reason=''):
        self.name = name
        msg = f"Correction factor [{name}] is missing"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class InvalidFieldRequest(EmuCheckError, ValueError):
    """Dosimetric inputs of a field request are unusable."""


class InvalidCalibrationData(EmuCheckError, ValueError):
    """Calibration files could not be read or contain invalid values."""


class InvalidSettings(EmuCheckError, ValueError):
    """Verification settings are inconsistent."""
