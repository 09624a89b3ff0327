"""
Analysis coordinator: runs the validate, topology, method selection, matrix,
solve, result assembly and physical check stages for a circuit, caches
results by circuit fingerprint and writes solved values back to the circuit.
"""

import logging
import math
import time
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from typing import Dict, Hashable, List, Optional, Sequence

import numpy as np

from .analysis.current_calculator import ComponentResult, CurrentCalculator, Number, WireResult
from .analysis.power_analysis import PowerAnalyzer, PowerReport, check_physical_limits
from .analysis.results_formatter import ResultsFormatter
from .components import Circuit, ComponentType
from .config import DEFAULT_CACHE_CAPACITY, SimulationSettings
from .electrical_model import UNDEFINED_IMPEDANCE, ElectricalModel, validate_component
from .exceptions import CancelledError, CircuitError, NumericError, StructuralError, ValidationWarning
from .linear_solver import CancelCheck, LinearSolver, Solution, SolverMethod
from .matrix_builder import AnalysisMethod, LinearSystem, MatrixBuilder
from .topology import CircuitTopology, TopologyExtractor, TopologyResult

logger = logging.getLogger(__name__)


@dataclass
class AnalysisResult:
    """Container for analysis results"""
    is_valid: bool = False
    error: Optional[str] = None
    exception: Optional[Exception] = field(default=None, repr=False)
    method: Optional[AnalysisMethod] = None
    solver_method: Optional[SolverMethod] = None
    topology: Optional[CircuitTopology] = None
    ground_id: Optional[int] = None
    frequency: float = 0.0
    node_voltages: Dict[int, Number] = field(default_factory=dict)
    branch_currents: Dict[str, Number] = field(default_factory=dict)
    component_results: Dict[str, ComponentResult] = field(default_factory=dict)
    wire_results: Dict[str, WireResult] = field(default_factory=dict)
    power: Optional[PowerReport] = None
    totals: Dict[str, Number] = field(default_factory=dict)
    warnings: List[ValidationWarning] = field(default_factory=list)
    iterations: int = 0
    residual: float = 0.0
    solve_time: float = 0.0
    elapsed: float = 0.0
    from_cache: bool = False

    def describe(self, circuit: Optional[Circuit] = None, include_wire_currents: bool = False) -> str:
        return ResultsFormatter(self, circuit).get_results_description(include_wire_currents)


class ResultCache:
    """Least-recently-used map from circuit fingerprints to results"""

    def __init__(self, capacity: int = DEFAULT_CACHE_CAPACITY):
        self.capacity = max(1, capacity)
        self._entries: "OrderedDict[Hashable, AnalysisResult]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable) -> Optional[AnalysisResult]:
        result = self._entries.get(key)
        if result is None:
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return result

    def put(self, key: Hashable, result: AnalysisResult):
        self._entries[key] = result
        self._entries.move_to_end(key)
        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)

    def clear(self):
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def __len__(self):
        return len(self._entries)

    def __contains__(self, key):
        return key in self._entries

    def statistics(self) -> Dict[str, float]:
        lookups = self.hits + self.misses
        return {
            'size': len(self._entries),
            'capacity': self.capacity,
            'hits': self.hits,
            'misses': self.misses,
            'hit_rate': self.hits / lookups if lookups else 0.0,
        }


def circuit_fingerprint(circuit: Circuit, settings: SimulationSettings,
                        frequency: float = 0.0, method: Optional[AnalysisMethod] = None) -> tuple:
    """Hashable description of everything that determines an analysis result"""
    components = tuple(
        (c.type.value, c.value, c.id, tuple(tuple(t) for t in c.terminals), c.parameters())
        for c in circuit.components
    )
    wires = tuple((w.id,) + w.parameters() for w in circuit.wires)
    return (components, wires, settings.fingerprint(), frequency, method.value if method else None)


class AnalysisCoordinator:
    """
    Runs circuit analyses.

    analyze() never raises: every failure is reported through an invalid
    AnalysisResult carrying the error message and the warnings collected
    before the failing stage.
    """

    def __init__(self, settings: Optional[SimulationSettings] = None):
        self.settings = (settings or SimulationSettings()).configured()
        self.cache = ResultCache(self.settings.cache_capacity)
        self._setup_engines()
        self._stats = {'analyses': 0, 'failures': 0, 'cache_hits': 0, 'total_time': 0.0}
        self.last_result: Optional[AnalysisResult] = None

    def _setup_engines(self):
        self.model = ElectricalModel(self.settings.matrix_tolerance)
        self.extractor = TopologyExtractor(self.settings, self.model)
        self.builder = MatrixBuilder(self.settings, self.model)
        self.solver = LinearSolver(self.settings)
        self.power_analyzer = PowerAnalyzer(self.model, self.settings.temperature)

    def configure(self, **overrides) -> SimulationSettings:
        """Apply setting overrides (clamped to their valid ranges)"""
        self.settings = self.settings.configured(**overrides)
        if self.settings.cache_capacity != self.cache.capacity:
            self.cache.capacity = self.settings.cache_capacity
        self._setup_engines()
        logger.info(f"Coordinator configured: {self.settings}")
        return self.settings

    def clear_cache(self):
        self.cache.clear()
        logger.info("Result cache cleared")

    def statistics(self) -> Dict[str, object]:
        analyses = self._stats['analyses']
        return {
            'analyses': analyses,
            'failures': self._stats['failures'],
            'cache_hits': self._stats['cache_hits'],
            'average_time': self._stats['total_time'] / analyses if analyses else 0.0,
            'cache': self.cache.statistics(),
            'solver': self.solver.statistics(),
        }

    # Entry points

    def analyze(self, circuit: Circuit, method: Optional[AnalysisMethod] = None,
                bypass_cache: bool = False, frequency: float = 0.0,
                cancel: Optional[CancelCheck] = None) -> AnalysisResult:
        """Run a full analysis, or return the cached result for an unchanged circuit"""
        try:
            key = circuit_fingerprint(circuit, self.settings, frequency, method)
        except (TypeError, AttributeError) as e:
            logger.error(f"Could not fingerprint circuit: {e}")
            key = None

        if key is not None and not bypass_cache:
            cached = self.cache.get(key)
            if cached is not None:
                logger.info("Returning cached analysis result")
                cached = replace(cached, from_cache=True)
                self._stats['cache_hits'] += 1
                if cached.is_valid:
                    self._apply_results(circuit, cached)
                self.last_result = cached
                return cached

        result = self._run_pipeline(circuit, method, frequency, cancel)
        self._stats['analyses'] += 1
        self._stats['total_time'] += result.elapsed
        if result.is_valid:
            self._apply_results(circuit, result)
            logger.info(f"Analysis completed in {result.elapsed:.4f}s using {result.method.value}")
        else:
            self._stats['failures'] += 1
            logger.warning(f"Analysis failed: {result.error}")

        # a cancelled run says nothing about the circuit itself
        if key is not None and not isinstance(result.exception, CancelledError):
            self.cache.put(key, result)
        self.last_result = result
        return result

    async def analyze_async(self, circuit: Circuit, **kwargs) -> AnalysisResult:
        """Coroutine wrapper around analyze() for asyncio callers"""
        return self.analyze(circuit, **kwargs)

    def frequency_sweep(self, circuit: Circuit, frequencies: Optional[Sequence[float]] = None) -> Dict[str, np.ndarray]:
        """Source current and input impedance over a range of frequencies"""
        if frequencies is None:
            frequencies = np.logspace(1, 6, 50)  # 10 Hz to 1 MHz
        frequencies = np.asarray(frequencies, dtype=float)
        logger.info(f"Starting frequency sweep over {len(frequencies)} points")

        currents = np.zeros(len(frequencies), dtype=complex)
        impedances = np.full(len(frequencies), UNDEFINED_IMPEDANCE, dtype=complex)
        valid = np.zeros(len(frequencies), dtype=bool)

        for i, frequency in enumerate(frequencies):
            result = self.analyze(circuit, frequency=float(frequency))
            if not result.is_valid:
                logger.warning(f"Sweep point {frequency:.6g} Hz failed: {result.error}")
                continue
            current = complex(result.totals.get('total_current', 0.0))
            currents[i] = current
            impedances[i] = complex(result.totals.get('equivalent_impedance', UNDEFINED_IMPEDANCE))
            valid[i] = True

        with np.errstate(invalid='ignore'):
            return {
                'frequencies': frequencies,
                'current': currents,
                'current_magnitude': np.abs(currents),
                'current_phase': np.degrees(np.angle(currents)),
                'impedance': impedances,
                'impedance_magnitude': np.abs(impedances),
                'impedance_phase': np.where(valid, np.degrees(np.angle(impedances)), np.nan),
                'valid': valid,
            }

    # Pipeline

    def _run_pipeline(self, circuit: Circuit, method: Optional[AnalysisMethod],
                      frequency: float, cancel: Optional[CancelCheck]) -> AnalysisResult:
        start_time = time.perf_counter()
        result = AnalysisResult(frequency=frequency)
        stage = "validate"
        logger.info(f"Starting analysis of {circuit!r}")
        try:
            result.warnings.extend(self.validate(circuit))

            stage = "topology"
            topology = self.extractor.extract(circuit, frequency)
            result.warnings.extend(topology.warnings)
            result.topology = topology.topology
            result.ground_id = topology.ground_id

            stage = "select_method"
            result.method = method or self.select_method(topology)

            stage = "build_matrix"
            system = self.builder.build(topology, result.method)
            result.warnings.extend(system.warnings)

            stage = "solve"
            solution = self.solver.solve(system, cancel=cancel)
            result.solver_method = solution.method
            result.iterations = solution.iterations
            result.residual = solution.residual
            result.solve_time = solution.elapsed
            if not solution.is_valid:
                raise NumericError(solution.error or "Solution failed verification")

            stage = "assemble_results"
            self._assemble(result, circuit, topology, system, solution)

            stage = "physical_check"
            result.warnings.extend(check_physical_limits(
                circuit, result.component_results, result.wire_results, result.power, self.model))
            result.is_valid = True
        except CircuitError as e:
            result.error = str(e)
            result.exception = e
            logger.error(f"Analysis stage '{stage}' failed: {e}")
        except Exception as e:
            result.error = f"Unexpected error during {stage}: {e}"
            result.exception = e
            logger.error(f"Analysis stage '{stage}' crashed: {e}")

        result.elapsed = time.perf_counter() - start_time
        return result

    def validate(self, circuit: Circuit) -> List[ValidationWarning]:
        """Raise StructuralError for unanalysable circuits, return the warnings otherwise"""
        errors: List[str] = []
        warnings: List[ValidationWarning] = []

        if not circuit.components:
            raise StructuralError("Circuit is empty")
        if not any(c.type.is_source for c in circuit.components):
            errors.append("Circuit has no voltage or current source")
        if not circuit.components_of(ComponentType.RESISTOR):
            warnings.append(ValidationWarning("", "Circuit has no resistors"))
        if not circuit.components_of(ComponentType.GROUND):
            warnings.append(ValidationWarning("", "Circuit has no ground, a reference node will be chosen"))

        for component in circuit.components:
            component_errors, component_warnings = validate_component(component)
            errors.extend(component_errors)
            warnings.extend(ValidationWarning(component.name, w.split(": ", 1)[-1]) for w in component_warnings)

        if errors:
            raise StructuralError("; ".join(errors), errors)
        return warnings

    def select_method(self, topology: TopologyResult) -> AnalysisMethod:
        voltage_sources = topology.branches_of(ComponentType.VOLTAGE_SOURCE)
        current_sources = topology.branches_of(ComponentType.CURRENT_SOURCE)

        if topology.topology is CircuitTopology.SERIES and voltage_sources:
            return AnalysisMethod.SERIES
        if (topology.topology is CircuitTopology.PARALLEL and voltage_sources
                and not self.builder.parallel_conflicts(topology)):
            return AnalysisMethod.PARALLEL
        if topology.topology is CircuitTopology.LADDER:
            return AnalysisMethod.LADDER

        nodes = topology.node_count
        loops = topology.branch_count - nodes + 1
        nodal_cost = (nodes - 1) + 2 * len(voltage_sources)
        mesh_cost = loops + 2 * len(current_sources)
        # Greedy meshes are only complete when the walk found every independent loop
        meshes_complete = loops > 0 and topology.mesh_count == loops
        if meshes_complete and mesh_cost < nodal_cost:
            method = AnalysisMethod.MESH_MODIFIED if current_sources else AnalysisMethod.MESH
        else:
            method = AnalysisMethod.NODAL_MODIFIED if voltage_sources else AnalysisMethod.NODAL
        logger.info(f"Selected {method.value} (nodal cost {nodal_cost}, mesh cost {mesh_cost})")
        return method

    def _assemble(self, result: AnalysisResult, circuit: Circuit, topology: TopologyResult,
                  system: LinearSystem, solution: Solution):
        calculator = CurrentCalculator(topology, system, solution.values, self.model)
        node_voltages, branch_currents = calculator.calculate()
        result.node_voltages = dict(node_voltages)
        result.branch_currents = dict(branch_currents)
        result.component_results = calculator.component_results(circuit)
        result.wire_results = calculator.wire_results(circuit)
        result.power = self.power_analyzer.analyze(circuit, result.component_results, result.wire_results)
        result.totals = self._totals(circuit, result)

    def _totals(self, circuit: Circuit, result: AnalysisResult) -> Dict[str, Number]:
        totals: Dict[str, Number] = {}
        voltage_sources = circuit.components_of(ComponentType.VOLTAGE_SOURCE)
        current_sources = circuit.components_of(ComponentType.CURRENT_SOURCE)
        if voltage_sources:
            main = result.component_results[voltage_sources[0].id]
            totals['source_voltage'] = voltage_sources[0].value
            totals['total_current'] = main.current
            if abs(main.current) > self.settings.tolerance:
                impedance = complex(main.voltage) / complex(main.current)
                totals['equivalent_impedance'] = impedance
                if impedance.imag == 0:
                    totals['equivalent_resistance'] = impedance.real
            else:
                totals['equivalent_impedance'] = UNDEFINED_IMPEDANCE
                totals['equivalent_resistance'] = math.inf
        elif current_sources:
            main = result.component_results[current_sources[0].id]
            totals['total_current'] = main.current
            totals['source_voltage'] = main.voltage
        return totals

    def _apply_results(self, circuit: Circuit, result: AnalysisResult):
        """Write solved DC values back to components and wires"""
        if result.frequency != 0:
            return
        for component in circuit.components:
            values = result.component_results.get(component.id)
            if values is None:
                continue
            component.voltage = float(values.voltage.real if isinstance(values.voltage, complex) else values.voltage)
            component.current = float(values.current.real if isinstance(values.current, complex) else values.current)
            component.power = float(values.power)
        for wire in circuit.wires:
            values = result.wire_results.get(wire.id)
            if values is None:
                continue
            wire.current = float(values.current.real if isinstance(values.current, complex) else values.current)
            wire.voltage = float(values.voltage.real if isinstance(values.voltage, complex) else values.voltage)
            wire.power = float(values.power)
