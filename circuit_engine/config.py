"""
Engine-wide constants and simulation settings.

Positions are in circuit space units (the editor uses pixels, 1 px = 1 mm).
"""

import math
from dataclasses import dataclass, replace


SNAP_TOLERANCE = 10
IDEAL_WIRE_RESISTANCE = 1e-6

SOLVER_TOLERANCE = 1e-10
MATRIX_TOLERANCE = 1e-12
ANALYZER_TOLERANCE = 1e-9
MAX_ITERATIONS = 1000
VERIFY_FACTOR = 1000

DEFAULT_TIME_STEP = 1e-3
REFERENCE_TEMPERATURE = 25.0
DEFAULT_CACHE_CAPACITY = 64

# Physical constants
BOLTZMANN_CONSTANT = 1.380649e-23  # J/K
ELECTRON_CHARGE = 1.602176634e-19  # C
ABSOLUTE_ZERO_CELSIUS = -273.15

# Material data (ohm*m at 20 degC, A/m^2)
MATERIAL_RESISTIVITY = {
    "copper": 1.68e-8,
    "aluminum": 2.65e-8,
    "silver": 1.59e-8,
    "gold": 2.24e-8,
    "iron": 9.71e-8,
}
MAX_CURRENT_DENSITY = {
    "copper": 2e6,
    "aluminum": 1.5e6,
    "silver": 3e6,
}
DEFAULT_CURRENT_DENSITY_LIMIT = 2e6
DEFAULT_CROSS_SECTION = 1e-6  # m^2

# Resistor thermal model
RESISTOR_THERMAL_RESISTANCE = 250.0  # degC/W
RESISTOR_DERATING_START = 70.0  # degC
RESISTOR_DEFAULT_POWER_RATING = 0.25  # W
HOTSPOT_TEMPERATURE = 60.0  # degC

# Plausibility limits for solved values
MAX_PLAUSIBLE_CURRENT = 1000.0
MAX_PLAUSIBLE_VOLTAGE = 10000.0
MAX_PLAUSIBLE_POWER = 100000.0
POWER_BALANCE_TOLERANCE = 0.01
REGULATION_LIMIT = 5.0  # percent

# Component value limits used by validation
MIN_RESISTANCE_WARNING = 0.1
MAX_RESISTANCE_WARNING = 1e12
MAX_SOURCE_VOLTAGE_WARNING = 1000.0
MAX_SOURCE_CURRENT_WARNING = 100.0


def _clamp(value, low, high):
    return max(low, min(high, value))


@dataclass
class SimulationSettings:
    """Configuration settings for circuit analysis"""
    tolerance: float = ANALYZER_TOLERANCE
    solver_tolerance: float = SOLVER_TOLERANCE
    matrix_tolerance: float = MATRIX_TOLERANCE
    max_iterations: int = MAX_ITERATIONS
    snap_tolerance: float = SNAP_TOLERANCE
    ideal_wire_resistance: float = IDEAL_WIRE_RESISTANCE
    temperature: float = REFERENCE_TEMPERATURE  # degC
    time_step: float = DEFAULT_TIME_STEP
    cache_capacity: int = DEFAULT_CACHE_CAPACITY
    allow_synthetic_ground: bool = True
    enable_debug: bool = False

    def configured(self, **overrides) -> "SimulationSettings":
        """Return a copy with overrides applied and limits enforced"""
        settings = replace(self, **overrides)
        settings.tolerance = _clamp(settings.tolerance, 1e-15, 1e-3)
        settings.solver_tolerance = _clamp(settings.solver_tolerance, 1e-15, 1e-3)
        settings.max_iterations = int(_clamp(settings.max_iterations, 10, 10000))
        settings.cache_capacity = max(1, int(settings.cache_capacity))
        if not math.isfinite(settings.snap_tolerance) or settings.snap_tolerance <= 0:
            settings.snap_tolerance = SNAP_TOLERANCE
        return settings

    def fingerprint(self) -> tuple:
        """Settings that change analysis output, for cache keys"""
        return (
            self.solver_tolerance,
            self.matrix_tolerance,
            self.max_iterations,
            self.snap_tolerance,
            self.ideal_wire_resistance,
            self.temperature,
            self.allow_synthetic_ground,
        )
