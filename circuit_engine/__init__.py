"""
circuit_engine - DC and frequency-domain analysis of schematic circuits.

Typical use:

    circuit = Circuit()
    circuit.add(Component.voltage_source(12, (0, 0), (0, 100)))
    circuit.add(Component.resistor(1000, (100, 0), (100, 100)))
    circuit.add(Component.ground((0, 100)))
    circuit.connect((0, 0), (100, 0))
    circuit.connect((0, 100), (100, 100))
    result = AnalysisCoordinator().analyze(circuit)
"""

from .components import Circuit, Component, ComponentType, LabelSequence, Point, SourceWaveform, Wire
from .config import SimulationSettings
from .coordinator import AnalysisCoordinator, AnalysisResult, ResultCache, circuit_fingerprint
from .electrical_model import UNDEFINED_IMPEDANCE, ElectricalModel, is_undefined, validate_component
from .exceptions import (CancelledError, CircuitError, ConvergenceError, NotPositiveDefiniteError,
                         NumericError, SingularMatrixError, StructuralError, ValidationWarning)
from .linear_solver import LinearSolver, Solution, SolverMethod, select_method
from .matrix_builder import AnalysisMethod, LinearSystem, MatrixBuilder, MatrixConditioning
from .topology import CircuitTopology, TopologyExtractor, TopologyResult

__version__ = "1.0.0"

__all__ = [
    'Circuit', 'Component', 'ComponentType', 'LabelSequence', 'Point', 'SourceWaveform', 'Wire',
    'SimulationSettings',
    'AnalysisCoordinator', 'AnalysisResult', 'ResultCache', 'circuit_fingerprint',
    'UNDEFINED_IMPEDANCE', 'ElectricalModel', 'is_undefined', 'validate_component',
    'CancelledError', 'CircuitError', 'ConvergenceError', 'NotPositiveDefiniteError',
    'NumericError', 'SingularMatrixError', 'StructuralError', 'ValidationWarning',
    'LinearSolver', 'Solution', 'SolverMethod', 'select_method',
    'AnalysisMethod', 'LinearSystem', 'MatrixBuilder', 'MatrixConditioning',
    'CircuitTopology', 'TopologyExtractor', 'TopologyResult',
]
