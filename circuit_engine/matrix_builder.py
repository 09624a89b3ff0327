"""
Linear system construction for the supported analysis methods.

Nodal systems are built over the non-ground nodes, with extra rows for
elements that cannot be written as admittances (ideal voltage sources and
shorts). Mesh systems are built over the loops found by the topology
extractor. Series and parallel systems use the closed-form reductions.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np

from .components import ComponentType
from .config import SimulationSettings
from .electrical_model import ElectricalModel, is_undefined
from .exceptions import StructuralError, ValidationWarning
from .topology import Branch, Mesh, TopologyResult

logger = logging.getLogger(__name__)


class AnalysisMethod(Enum):
    """Formulations the matrix builder can produce"""
    NODAL = "nodal"
    NODAL_MODIFIED = "nodal_modified"
    MESH = "mesh"
    MESH_MODIFIED = "mesh_modified"
    SERIES = "series"
    PARALLEL = "parallel"
    LADDER = "ladder"


@dataclass
class MatrixConditioning:
    """Cheap structural diagnostics of a system matrix"""
    determinant: complex
    rank: int
    diagonally_dominant: bool
    symmetric: bool
    positive_definite: bool
    near_singular: bool
    warning: Optional[str] = None


@dataclass
class LinearSystem:
    """A x = b together with the maps back to circuit quantities"""
    matrix: np.ndarray
    rhs: np.ndarray
    method: AnalysisMethod
    node_index: Dict[int, int] = field(default_factory=dict)
    branch_index: Dict[str, int] = field(default_factory=dict)
    extra_index: Dict[str, int] = field(default_factory=dict)
    meshes: List[Mesh] = field(default_factory=list)
    metadata: Dict[str, object] = field(default_factory=dict)
    conditioning: Optional[MatrixConditioning] = None
    warnings: List[ValidationWarning] = field(default_factory=list)

    @property
    def size(self) -> int:
        return self.matrix.shape[0]

    @property
    def is_complex(self) -> bool:
        return np.iscomplexobj(self.matrix)


def determinant(matrix: np.ndarray) -> complex:
    """Exact for up to 3x3, product of the diagonal as an estimate above that"""
    n = matrix.shape[0]
    if n == 0:
        return 1.0
    if n == 1:
        return matrix[0, 0]
    if n == 2:
        return matrix[0, 0] * matrix[1, 1] - matrix[0, 1] * matrix[1, 0]
    if n == 3:
        return (matrix[0, 0] * (matrix[1, 1] * matrix[2, 2] - matrix[1, 2] * matrix[2, 1])
                - matrix[0, 1] * (matrix[1, 0] * matrix[2, 2] - matrix[1, 2] * matrix[2, 0])
                + matrix[0, 2] * (matrix[1, 0] * matrix[2, 1] - matrix[1, 1] * matrix[2, 0]))
    return np.prod(np.diag(matrix))


PARALLEL_LOADS = (ComponentType.RESISTOR, ComponentType.DIODE)


class MatrixBuilder:
    """Builds linear systems from an extracted topology"""

    def __init__(self, settings: Optional[SimulationSettings] = None,
                 model: Optional[ElectricalModel] = None):
        self.settings = settings or SimulationSettings()
        self.model = model or ElectricalModel(self.settings.matrix_tolerance)

    @property
    def tolerance(self) -> float:
        return self.settings.matrix_tolerance

    def build(self, topology: TopologyResult, method: AnalysisMethod) -> LinearSystem:
        builders = {
            AnalysisMethod.NODAL: self._build_nodal,
            AnalysisMethod.NODAL_MODIFIED: self._build_nodal,
            AnalysisMethod.LADDER: self._build_nodal,
            AnalysisMethod.MESH: self._build_mesh,
            AnalysisMethod.MESH_MODIFIED: self._build_mesh,
            AnalysisMethod.SERIES: self._build_series,
            AnalysisMethod.PARALLEL: self._build_parallel,
        }
        builder = builders.get(method)
        if builder is None:
            raise StructuralError(f"Unsupported analysis method: {method!r}")

        logger.info(f"Building {method.value} system")
        system = builder(topology, method)
        self.validate_dimensions(system)
        system.conditioning = self.analyze_conditioning(system.matrix)
        if system.conditioning.warning:
            logger.warning(f"Matrix conditioning: {system.conditioning.warning}")
        if self.settings.enable_debug:
            logger.debug(f"System matrix ({system.size}x{system.size}):\n{system.matrix}")
            logger.debug(f"Right-hand side:\n{system.rhs}")
        return system

    def _dtype(self, topology: TopologyResult):
        for branch in topology.branches:
            z = branch.impedance
            if not is_undefined(z) and z.imag != 0:
                return complex
        return float

    @staticmethod
    def _entry(value: complex, dtype):
        return value if dtype is complex else value.real

    # Nodal

    def _build_nodal(self, topology: TopologyResult, method: AnalysisMethod) -> LinearSystem:
        modified = method is not AnalysisMethod.NODAL
        node_ids = topology.non_ground_nodes()
        node_index = {node_id: i for i, node_id in enumerate(node_ids)}
        n = len(node_ids)
        dtype = self._dtype(topology)
        epsilon = self.settings.ideal_wire_resistance

        conductance = np.zeros((n, n), dtype=dtype)
        injection = np.zeros(n, dtype=dtype)
        # (branch, rhs value, internal resistance) for each augmented row
        constraints: List[Tuple[Branch, float, float]] = []

        for branch in topology.branches:
            element = branch.element_type
            if element is ComponentType.VOLTAGE_SOURCE:
                source = branch.component
                resistance = source.internal_resistance
                if not modified and resistance > epsilon:
                    self._stamp_admittance(conductance, node_index, branch, 1.0 / resistance)
                    self._stamp_injection(injection, node_index, branch, source.value / resistance)
                else:
                    constraints.append((branch, source.value, resistance))
            elif element is ComponentType.CURRENT_SOURCE:
                self._stamp_injection(injection, node_index, branch, -branch.component.value)
            else:
                if is_undefined(branch.impedance):
                    continue
                admittance = self.model.admittance(branch.impedance)
                if is_undefined(admittance):
                    constraints.append((branch, 0.0, 0.0))
                else:
                    self._stamp_admittance(conductance, node_index, branch, self._entry(admittance, dtype))

        size = n + len(constraints)
        if size == 0:
            raise StructuralError("Circuit has no unknown node voltages")

        matrix = np.zeros((size, size), dtype=dtype)
        rhs = np.zeros(size, dtype=dtype)
        matrix[:n, :n] = conductance
        rhs[:n] = injection
        extra_index: Dict[str, int] = {}
        for k, (branch, value, resistance) in enumerate(constraints):
            row = n + k
            extra_index[branch.id] = row
            start = node_index.get(branch.start)
            end = node_index.get(branch.end)
            if start is not None:
                matrix[start, row] += 1
                matrix[row, start] += 1
            if end is not None:
                matrix[end, row] -= 1
                matrix[row, end] -= 1
            matrix[row, row] = -resistance
            rhs[row] = value

        metadata = {
            'nodes': n,
            'extra_rows': len(constraints),
            'ground_id': topology.ground_id,
            'is_ladder': method is AnalysisMethod.LADDER,
        }
        return LinearSystem(matrix=matrix, rhs=rhs, method=method, node_index=node_index,
                            extra_index=extra_index, metadata=metadata)

    @staticmethod
    def _stamp_admittance(matrix: np.ndarray, node_index: Dict[int, int], branch: Branch, admittance):
        start = node_index.get(branch.start)
        end = node_index.get(branch.end)
        if start is not None:
            matrix[start, start] += admittance
        if end is not None:
            matrix[end, end] += admittance
        if start is not None and end is not None:
            matrix[start, end] -= admittance
            matrix[end, start] -= admittance

    @staticmethod
    def _stamp_injection(rhs: np.ndarray, node_index: Dict[int, int], branch: Branch, current):
        """Current entering the circuit at the branch start and returning through its end"""
        start = node_index.get(branch.start)
        end = node_index.get(branch.end)
        if start is not None:
            rhs[start] += current
        if end is not None:
            rhs[end] -= current

    # Mesh

    def _build_mesh(self, topology: TopologyResult, method: AnalysisMethod) -> LinearSystem:
        meshes = topology.meshes
        if not meshes:
            raise StructuralError("No meshes found for mesh analysis")

        modified = method is AnalysisMethod.MESH_MODIFIED
        branches = {b.id: b for b in topology.branches}
        m = len(meshes)
        dtype = self._dtype(topology)
        matrix = np.zeros((m, m), dtype=dtype)
        rhs = np.zeros(m, dtype=dtype)
        warnings: List[ValidationWarning] = []
        polarity: List[int] = []

        for i, mesh in enumerate(meshes):
            sources = [(bid, o) for bid, o in zip(mesh.branches, mesh.orientations)
                       if branches[bid].element_type is ComponentType.VOLTAGE_SOURCE]
            if len(sources) > 1:
                warnings.append(ValidationWarning(
                    mesh.id, "several voltage sources in one mesh are summed with the same polarity"))
            # Loop current runs along the walk when the first source is walked from - to +
            polarity.append(-sources[0][1] if sources else 1)

            for bid in mesh.branches:
                z = branches[bid].impedance
                if not is_undefined(z):
                    matrix[i, i] += self._entry(z, dtype)
            for j, other in enumerate(meshes):
                if j == i:
                    continue
                for bid in set(mesh.branches) & set(other.branches):
                    z = branches[bid].impedance
                    if not is_undefined(z):
                        matrix[i, j] -= self._entry(z, dtype)
            rhs[i] = sum(branches[bid].component.value for bid, _ in sources)

        for i, mesh in enumerate(meshes):
            pinned = None
            if any(is_undefined(branches[bid].impedance) for bid in mesh.branches):
                pinned = 0.0
                warnings.append(ValidationWarning(mesh.id, "open element in mesh, loop current is zero"))
            elif modified:
                for bid, orientation in zip(mesh.branches, mesh.orientations):
                    if branches[bid].element_type is ComponentType.CURRENT_SOURCE:
                        pinned = orientation * polarity[i] * branches[bid].component.value
                        break
            elif any(branches[bid].element_type is ComponentType.CURRENT_SOURCE for bid in mesh.branches):
                warnings.append(ValidationWarning(
                    mesh.id, "current source treated as its internal resistance in plain mesh analysis"))
            if pinned is not None:
                matrix[i, :] = 0
                matrix[i, i] = 1
                rhs[i] = pinned

        branch_index = {bid: i for i, mesh in enumerate(meshes) for bid in mesh.branches}
        metadata = {'meshes': m, 'mesh_polarity': polarity, 'ground_id': topology.ground_id}
        for warning in warnings:
            logger.warning(f"Mesh analysis: {warning}")
        return LinearSystem(matrix=matrix, rhs=rhs, method=method, branch_index=branch_index,
                            meshes=list(meshes), metadata=metadata, warnings=warnings)

    # Closed forms

    def _build_series(self, topology: TopologyResult, method: AnalysisMethod) -> LinearSystem:
        sources = topology.branches_of(ComponentType.VOLTAGE_SOURCE)
        if not sources:
            raise StructuralError("Circuit lacks a voltage source for series analysis")

        dtype = self._dtype(topology)
        total_voltage = sum(s.component.value for s in sources)
        elements = [b for b in topology.branches if b.element_type is not ComponentType.CURRENT_SOURCE]
        open_circuit = any(is_undefined(b.impedance) for b in elements)

        if open_circuit:
            matrix = np.array([[1.0]], dtype=dtype)
            rhs = np.array([0.0], dtype=dtype)
            total_impedance = complex(np.inf, 0)
        else:
            total_impedance = sum((b.impedance for b in elements), complex(0, 0))
            matrix = np.array([[total_impedance if dtype is complex else total_impedance.real]], dtype=dtype)
            rhs = np.array([total_voltage], dtype=dtype)

        metadata = {
            'total_impedance': total_impedance,
            'source_voltage': total_voltage,
            'open_circuit': open_circuit,
            'ground_id': topology.ground_id,
        }
        return LinearSystem(matrix=matrix, rhs=rhs, method=method,
                            branch_index={b.id: 0 for b in topology.branches}, metadata=metadata)

    def parallel_conflicts(self, topology: TopologyResult) -> List[str]:
        """Branches that the independent-branch closed form cannot represent"""
        if topology.frequency != 0:
            return [f"closed form is DC only, got {topology.frequency:g} Hz"]
        conflicts = []
        for branch in topology.branches:
            if branch.element_type is ComponentType.VOLTAGE_SOURCE:
                if branch.component.internal_resistance > self.settings.ideal_wire_resistance:
                    conflicts.append(f"{branch.id} has internal resistance")
            elif branch.is_wire or branch.element_type in PARALLEL_LOADS:
                continue
            elif branch.element_type is ComponentType.CURRENT_SOURCE:
                conflicts.append(f"{branch.id} is a current source")
            elif not is_undefined(branch.impedance):
                # capacitors at DC are open and carry no current
                conflicts.append(f"{branch.id} is not a resistive load")
        return conflicts

    def _build_parallel(self, topology: TopologyResult, method: AnalysisMethod) -> LinearSystem:
        sources = topology.branches_of(ComponentType.VOLTAGE_SOURCE)
        if not sources:
            raise StructuralError("Circuit lacks a voltage source for parallel analysis")
        conflicts = self.parallel_conflicts(topology)
        if conflicts:
            raise StructuralError(f"Parallel closed form does not apply: {'; '.join(conflicts)}", conflicts)

        loads = [b for b in topology.branches if b.is_wire or b.element_type in PARALLEL_LOADS]
        if not loads:
            raise StructuralError("Parallel circuit has no resistive branches")

        dtype = self._dtype(topology)
        impedances = [b.impedance if dtype is complex else b.impedance.real for b in loads]
        matrix = np.diag(np.array(impedances, dtype=dtype))
        source_voltage = sources[0].component.value
        rhs = np.full(len(loads), source_voltage, dtype=dtype)
        if len(sources) > 1:
            logger.warning("Parallel analysis uses the first voltage source only")

        metadata = {'source_voltage': source_voltage, 'source_id': sources[0].id,
                    'ground_id': topology.ground_id}
        return LinearSystem(matrix=matrix, rhs=rhs, method=method,
                            branch_index={b.id: i for i, b in enumerate(loads)}, metadata=metadata)

    # Diagnostics and utilities

    def analyze_conditioning(self, matrix: np.ndarray) -> MatrixConditioning:
        tolerance = self.tolerance
        det = determinant(matrix)
        magnitudes = np.abs(matrix)
        rank = int(np.sum(magnitudes.sum(axis=1) > tolerance))
        diagonal = np.diag(magnitudes)
        off_diagonal = magnitudes.sum(axis=1) - diagonal
        diagonally_dominant = bool(np.all(diagonal >= off_diagonal))
        symmetric = bool(np.all(np.abs(matrix - matrix.T) <= tolerance))
        positive_definite = symmetric and self.is_positive_definite(matrix)
        near_singular = bool(abs(det) < tolerance)

        warning = None
        if near_singular:
            warning = "matrix is singular or nearly singular"
        elif not diagonally_dominant:
            warning = "matrix is not diagonally dominant, possible numerical instability"
        return MatrixConditioning(determinant=det, rank=rank, diagonally_dominant=diagonally_dominant,
                                  symmetric=symmetric, positive_definite=positive_definite,
                                  near_singular=near_singular, warning=warning)

    def is_positive_definite(self, matrix: np.ndarray) -> bool:
        """Sylvester's criterion on the leading principal minors"""
        if np.iscomplexobj(matrix) or matrix.shape[0] == 0:
            return False
        if np.any(np.diag(matrix) <= 0):
            return False
        for k in range(1, matrix.shape[0] + 1):
            minor = matrix[:k, :k]
            value = determinant(minor) if k <= 3 else np.linalg.det(minor)
            if value <= 0:
                return False
        return True

    @staticmethod
    def validate_dimensions(system: LinearSystem) -> bool:
        rows, cols = system.matrix.shape if system.matrix.ndim == 2 else (0, -1)
        if rows != cols:
            raise StructuralError(f"System matrix is not square: {system.matrix.shape}")
        if system.rhs.shape != (rows,):
            raise StructuralError(f"Inconsistent dimensions: matrix {rows}x{cols}, vector {system.rhs.shape}")
        return True

    def incidence_matrix(self, topology: TopologyResult) -> np.ndarray:
        """Reduced node-branch incidence: +1 where a branch starts, -1 where it ends"""
        node_index = {node_id: i for i, node_id in enumerate(topology.non_ground_nodes())}
        incidence = np.zeros((len(node_index), topology.branch_count))
        for column, branch in enumerate(topology.branches):
            if branch.start in node_index:
                incidence[node_index[branch.start], column] += 1
            if branch.end in node_index:
                incidence[node_index[branch.end], column] -= 1
        return incidence

    def scale_rows(self, matrix: np.ndarray, rhs: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Divide every row by its largest magnitude; returns scaled copies"""
        matrix = matrix.copy()
        rhs = rhs.copy()
        for i in range(matrix.shape[0]):
            largest = np.max(np.abs(matrix[i])) if matrix.shape[1] else 0.0
            if largest > self.tolerance:
                matrix[i] /= largest
                rhs[i] /= largest
        return matrix, rhs

    @staticmethod
    def matrix_norm(matrix: np.ndarray) -> float:
        return float(np.linalg.norm(matrix, 'fro'))
