"""
Current Calculator - turns a solved linear system back into circuit quantities.

Handles node voltages, branch currents, per-component results and the
distribution of current over ideal wires, for every analysis method.
"""

import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

import networkx as nx
import numpy as np

from ..components import Circuit, Component, ComponentType, Wire
from ..electrical_model import ElectricalModel, is_undefined
from ..exceptions import StructuralError
from ..matrix_builder import AnalysisMethod, LinearSystem
from ..topology import Branch, TopologyResult

logger = logging.getLogger(__name__)

Number = Union[float, complex]


@dataclass
class ComponentResult:
    """Solved quantities for one component; sources report supplied power"""
    voltage: Number
    current: Number
    power: float
    impedance: complex


@dataclass
class WireResult:
    current: Number
    voltage: Number
    power: float
    current_density: float


def _clean(value: Number) -> Number:
    """Plain Python number, real when the imaginary part vanishes"""
    value = complex(value)
    if value.imag == 0:
        return value.real
    return value


class CurrentCalculator:
    """
    Handles calculation of branch currents and node voltages from a solution.

    Branch currents flow from the branch start terminal to its end terminal
    through the element.
    """

    def __init__(self, topology: TopologyResult, system: LinearSystem, values: np.ndarray,
                 model: Optional[ElectricalModel] = None):
        self.topology = topology
        self.system = system
        self.values = values
        self.model = model or ElectricalModel()
        self.branch_currents: Dict[str, Number] = {}
        self.node_voltages: Dict[int, Number] = {}

    def calculate(self):
        """Fill branch_currents and node_voltages for the system's method"""
        method = self.system.method
        if method in (AnalysisMethod.NODAL, AnalysisMethod.NODAL_MODIFIED, AnalysisMethod.LADDER):
            self._nodal_voltages()
            self._nodal_currents()
        elif method in (AnalysisMethod.MESH, AnalysisMethod.MESH_MODIFIED):
            self._mesh_currents()
            self._reconstruct_voltages()
        elif method is AnalysisMethod.SERIES:
            self._series_currents()
            self._reconstruct_voltages()
        elif method is AnalysisMethod.PARALLEL:
            self._parallel_currents()
            self._reconstruct_voltages()
        else:
            raise StructuralError(f"Unsupported analysis method: {method!r}")

        for branch in self.topology.branches:
            branch.current = self.branch_currents.get(branch.id, 0.0)
            branch.voltage = self.branch_voltage(branch)
        for node_id, node in self.topology.nodes.items():
            node.voltage = self.node_voltages.get(node_id, 0.0)
        return self.node_voltages, self.branch_currents

    # Nodal

    def _nodal_voltages(self):
        self.node_voltages = {self.topology.ground_id: 0.0}
        for node_id, row in self.system.node_index.items():
            self.node_voltages[node_id] = _clean(self.values[row])

    def _nodal_currents(self):
        extra = self.system.extra_index
        for branch in self.topology.branches:
            if branch.id in extra:
                self.branch_currents[branch.id] = _clean(self.values[extra[branch.id]])
                continue
            drop = self._drop(branch)
            element = branch.element_type
            if element is ComponentType.CURRENT_SOURCE:
                current = branch.component.value
            elif element is ComponentType.VOLTAGE_SOURCE:
                # Norton-converted source
                source = branch.component
                current = (drop - source.value) / source.internal_resistance
            elif is_undefined(branch.impedance):
                current = 0.0
            else:
                current = drop / branch.impedance
            self.branch_currents[branch.id] = _clean(current)

    def _drop(self, branch: Branch) -> Number:
        return self.node_voltages.get(branch.start, 0.0) - self.node_voltages.get(branch.end, 0.0)

    # Loop based methods

    def _mesh_currents(self):
        polarity = self.system.metadata.get('mesh_polarity', [1] * len(self.system.meshes))
        currents: Dict[str, Number] = defaultdict(float)
        for i, mesh in enumerate(self.system.meshes):
            loop_current = polarity[i] * self.values[i]
            for branch_id, orientation in zip(mesh.branches, mesh.orientations):
                currents[branch_id] += orientation * loop_current
        for branch in self.topology.branches:
            self.branch_currents[branch.id] = _clean(currents.get(branch.id, 0.0))

    def _series_currents(self):
        loop_current = self.values[0]
        sources = self.topology.branches_of(ComponentType.VOLTAGE_SOURCE)
        orientation = self._walk_orientations(sources[0])
        for branch in self.topology.branches:
            if branch.element_type is ComponentType.CURRENT_SOURCE:
                current = branch.component.value
            else:
                current = orientation.get(branch.id, 1) * loop_current
            self.branch_currents[branch.id] = _clean(current)

    def _walk_orientations(self, source: Branch) -> Dict[str, int]:
        """Direction of the loop current in each branch, leaving the source at its start"""
        orientation = {source.id: -1}
        current_node = source.start
        for _ in range(len(self.topology.branches)):
            following = next((b for b in self.topology.branches
                              if b.id not in orientation and b.touches(current_node)), None)
            if following is None:
                break
            orientation[following.id] = 1 if following.start == current_node else -1
            current_node = following.other_end(current_node)
        return orientation

    def _parallel_currents(self):
        source = self.topology.branch(self.system.metadata['source_id'])
        delivered = 0.0
        for branch in self.topology.branches:
            row = self.system.branch_index.get(branch.id)
            if row is None:
                self.branch_currents[branch.id] = 0.0
                continue
            current = self.values[row]
            if branch.start == source.end:
                current = -current
            delivered += current if branch.start == source.start else -current
            self.branch_currents[branch.id] = _clean(current)
        self.branch_currents[source.id] = _clean(-delivered)

    def _reconstruct_voltages(self):
        """Walk from ground adding the known voltage drop of each branch"""
        ground = self.topology.ground_id
        voltages: Dict[int, Number] = {ground: 0.0}
        queue = deque([ground])
        while queue:
            node_id = queue.popleft()
            for branch in self.topology.branches:
                if not branch.touches(node_id):
                    continue
                other = branch.other_end(node_id)
                if other in voltages:
                    continue
                drop = self._element_drop(branch)
                if drop is None:
                    continue
                voltages[other] = voltages[node_id] - drop if node_id == branch.start else voltages[node_id] + drop
                queue.append(other)

        for node_id in self.topology.nodes:
            if node_id not in voltages:
                logger.debug(f"Node {node_id} not reachable through known drops, voltage set to 0")
                voltages[node_id] = 0.0
        self.node_voltages = {node_id: _clean(v) for node_id, v in voltages.items()}

    def _element_drop(self, branch: Branch) -> Optional[Number]:
        """Start-to-end voltage of a branch from its own law, None when not determined by it"""
        current = self.branch_currents.get(branch.id, 0.0)
        element = branch.element_type
        if element is ComponentType.VOLTAGE_SOURCE:
            return branch.component.value + current * branch.component.internal_resistance
        if element is ComponentType.CURRENT_SOURCE or is_undefined(branch.impedance):
            return None
        return current * branch.impedance

    def branch_voltage(self, branch: Branch) -> Number:
        return _clean(self._drop(branch))

    # Per item results

    def component_results(self, circuit: Circuit) -> Dict[str, ComponentResult]:
        results: Dict[str, ComponentResult] = {}
        frequency = self.topology.frequency
        for component in circuit.components:
            branch = self.topology.branch_for_component(component.id)
            if branch is None:
                results[component.id] = ComponentResult(0.0, 0.0, 0.0, self.model.impedance(component, frequency))
                continue
            voltage = self.branch_voltage(branch)
            current = self.branch_currents.get(branch.id, 0.0)
            if component.type is ComponentType.VOLTAGE_SOURCE:
                current = -current
            elif component.type is ComponentType.CURRENT_SOURCE:
                voltage = -voltage
            results[component.id] = ComponentResult(
                voltage=_clean(voltage),
                current=_clean(current),
                power=self._power(component, voltage, current),
                impedance=branch.impedance,
            )
        return results

    def _power(self, component: Component, voltage: Number, current: Number) -> float:
        if isinstance(voltage, complex) or isinstance(current, complex):
            return float((complex(voltage) * complex(current).conjugate()).real)
        return float(self.model.power(component, voltage, current))

    def wire_results(self, circuit: Circuit) -> Dict[str, WireResult]:
        results: Dict[str, WireResult] = {}
        ideal_currents = self._ideal_wire_currents(circuit)
        branches = {b.id: b for b in self.topology.branches if b.is_wire}
        for wire in circuit.wires:
            branch = branches.get(wire.id)
            if branch is not None:
                current = self.branch_currents.get(wire.id, 0.0)
                voltage = self.branch_voltage(branch)
            else:
                current = ideal_currents.get(wire.id, 0.0)
                voltage = 0.0
            power = float(abs(current) ** 2 * wire.resistance)
            results[wire.id] = WireResult(current=_clean(current), voltage=voltage, power=power,
                                          current_density=self.model.current_density(abs(current), wire.cross_section))
        return results

    def _ideal_wire_currents(self, circuit: Circuit) -> Dict[str, Number]:
        """
        Distribute current over ideal wires inside each electrical node.

        Each physical node needs the net current drawn by the elements attached
        to it; wires on a BFS spanning tree of the node's wire graph carry
        those currents, wires closing a loop carry none.
        """
        drawn: Dict[int, Number] = defaultdict(float)
        for branch in self.topology.branches:
            current = self.branch_currents.get(branch.id, 0.0)
            if branch.component is not None:
                start_point, end_point = branch.component.terminals[0], branch.component.terminals[1]
            else:
                start_point, end_point = branch.wire.start, branch.wire.end
            start_index = self.topology.physical_index(start_point)
            end_index = self.topology.physical_index(end_point)
            if start_index is not None:
                drawn[start_index] += current
            if end_index is not None:
                drawn[end_index] -= current

        graph = nx.Graph()
        graph.add_nodes_from(p.index for p in self.topology.physical)
        ideal: List[Wire] = []
        branch_ids = {b.id for b in self.topology.branches}
        for wire in circuit.wires:
            if wire.id in branch_ids:
                continue
            start_index = self.topology.physical_index(wire.start)
            end_index = self.topology.physical_index(wire.end)
            if start_index is None or end_index is None or start_index == end_index:
                continue
            ideal.append(wire)
            if not graph.has_edge(start_index, end_index):
                graph.add_edge(start_index, end_index, wire=wire.id)

        flows: Dict[str, Number] = {}
        for part in nx.connected_components(graph):
            if len(part) < 2:
                continue
            root = min(part)
            tree_edges = list(nx.bfs_edges(graph, root))
            subtree: Dict[int, Number] = {index: drawn.get(index, 0.0) for index in part}
            # Leaves first, so each edge carries its child's whole subtree demand
            for parent, child in reversed(tree_edges):
                wire_id = graph.edges[parent, child]['wire']
                flow = subtree[child]
                wire = circuit.get_wire(wire_id)
                from_parent = self.topology.physical_index(wire.start) == parent
                flows[wire_id] = flow if from_parent else -flow
                subtree[parent] += flow

        logger.debug(f"Distributed current over {len(flows)} of {len(ideal)} ideal wires")
        return {wire.id: _clean(flows.get(wire.id, 0.0)) for wire in ideal}
