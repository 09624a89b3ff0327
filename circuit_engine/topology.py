"""
Topology extraction: turns the geometric circuit (terminals and wires at
positions) into electrical nodes, branches and meshes, classifies the
circuit shape and validates its connectivity.
"""

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

import networkx as nx

from .components import Circuit, Component, ComponentType, Point, Wire
from .config import SimulationSettings
from .electrical_model import ElectricalModel
from .exceptions import StructuralError, ValidationWarning

logger = logging.getLogger(__name__)


class CircuitTopology(Enum):
    """Circuit topology classifications"""
    SERIES = "series"
    PARALLEL = "parallel"
    LADDER = "ladder"
    BRIDGE = "bridge"
    GENERAL = "general"


class NodeKind(Enum):
    """Role of an electrical node, from what it hosts"""
    ISOLATED = "isolated"
    GROUND = "ground"
    COMPONENT_TERMINAL = "component_terminal"
    WIRE_JUNCTION = "wire_junction"
    SIMPLE_CONNECTION = "simple_connection"
    JUNCTION = "junction"


class BranchKind(Enum):
    COMPONENT = "component"
    WIRE = "wire"


@dataclass
class PhysicalNode:
    """All terminals and wire points sharing one snapped position"""
    index: int
    key: Tuple[float, float]
    position: Point
    terminals: List[Tuple[str, int]] = field(default_factory=list)
    wire_points: List[str] = field(default_factory=list)
    is_ground: bool = False


@dataclass
class ElectricalNode:
    """Equipotential group of physical nodes"""
    id: int
    position: Point
    is_ground: bool = False
    connections: List[int] = field(default_factory=list)
    voltage: Optional[float] = None
    kind: NodeKind = NodeKind.ISOLATED
    physical_nodes: List[int] = field(default_factory=list)
    terminals: List[Tuple[str, int]] = field(default_factory=list)
    wire_points: List[str] = field(default_factory=list)

    @property
    def degree(self) -> int:
        return len(self.connections)

    def __repr__(self):
        return f"ElectricalNode({self.id}, {self.kind.value}, degree={self.degree})"


@dataclass(eq=False)
class Branch:
    """Two-terminal element between two electrical nodes"""
    id: str
    kind: BranchKind
    start: int
    end: int
    impedance: complex
    component: Optional[Component] = None
    wire: Optional[Wire] = None
    current: Optional[complex] = None
    voltage: Optional[complex] = None

    @property
    def is_wire(self) -> bool:
        return self.kind is BranchKind.WIRE

    @property
    def element_type(self) -> Optional[ComponentType]:
        return self.component.type if self.component is not None else None

    @property
    def value(self) -> float:
        if self.component is not None:
            return self.component.value
        return self.wire.resistance

    def other_end(self, node_id: int) -> int:
        return self.end if node_id == self.start else self.start

    def touches(self, node_id: int) -> bool:
        return node_id == self.start or node_id == self.end

    def __repr__(self):
        return f"Branch({self.id}, {self.start} -> {self.end}, Z={self.impedance})"


@dataclass
class Mesh:
    """Closed loop of branches; orientation +1 when walked start to end"""
    id: str
    branches: List[str]
    orientations: List[int]
    nodes: List[int]

    def orientation_of(self, branch_id: str) -> int:
        for bid, orientation in zip(self.branches, self.orientations):
            if bid == branch_id:
                return orientation
        return 0


class UnionFind:
    """Disjoint sets over integer indices with path compression and union by rank"""

    def __init__(self, size: int):
        self.parent = list(range(size))
        self.rank = [0] * size

    def find(self, index: int) -> int:
        root = index
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[index] != root:
            self.parent[index], index = root, self.parent[index]
        return root

    def union(self, a: int, b: int) -> bool:
        root_a, root_b = self.find(a), self.find(b)
        if root_a == root_b:
            return False
        if self.rank[root_a] < self.rank[root_b]:
            root_a, root_b = root_b, root_a
        self.parent[root_b] = root_a
        if self.rank[root_a] == self.rank[root_b]:
            self.rank[root_a] += 1
        return True

    def groups(self) -> Dict[int, List[int]]:
        result: Dict[int, List[int]] = defaultdict(list)
        for index in range(len(self.parent)):
            result[self.find(index)].append(index)
        return result


@dataclass
class TopologyResult:
    """Electrical view of a circuit"""
    nodes: Dict[int, ElectricalNode]
    branches: List[Branch]
    meshes: List[Mesh]
    topology: CircuitTopology
    ground_id: int
    frequency: float = 0.0
    statistics: Dict[str, int] = field(default_factory=dict)
    warnings: List[ValidationWarning] = field(default_factory=list)
    physical: List[PhysicalNode] = field(default_factory=list)
    snap_tolerance: float = 10.0

    @property
    def node_count(self) -> int:
        return len(self.nodes)

    @property
    def branch_count(self) -> int:
        return len(self.branches)

    @property
    def mesh_count(self) -> int:
        return len(self.meshes)

    def physical_index(self, point: Point) -> Optional[int]:
        """Index of the physical node at a position, if any"""
        tolerance = self.snap_tolerance
        key = (round(point.x / tolerance) * tolerance, round(point.y / tolerance) * tolerance)
        for node in self.physical:
            if node.key == key:
                return node.index
        return None

    def non_ground_nodes(self) -> List[int]:
        return [node_id for node_id in sorted(self.nodes) if node_id != self.ground_id]

    def branches_of(self, component_type: ComponentType) -> List[Branch]:
        return [b for b in self.branches if b.element_type is component_type]

    def branch(self, branch_id: str) -> Optional[Branch]:
        for branch in self.branches:
            if branch.id == branch_id:
                return branch
        return None

    def branch_for_component(self, component_id: str) -> Optional[Branch]:
        for branch in self.branches:
            if branch.component is not None and branch.component.id == component_id:
                return branch
        return None

    def node_for_terminal(self, item_id: str, terminal: int = 0) -> Optional[int]:
        for node in self.nodes.values():
            if (item_id, terminal) in node.terminals:
                return node.id
        return None

    def to_graph(self) -> nx.MultiGraph:
        """Node graph with one edge per branch"""
        graph = nx.MultiGraph()
        for node in self.nodes.values():
            graph.add_node(node.id, is_ground=node.is_ground, kind=node.kind.value)
        for branch in self.branches:
            graph.add_edge(branch.start, branch.end, key=branch.id, branch=branch)
        return graph

    def critical_nodes(self) -> List[Dict[str, object]]:
        """Ground, highly connected and source-attached nodes"""
        source_ids = {b.id for b in self.branches if b.element_type is not None and b.element_type.is_source}
        critical = []
        for node in self.nodes.values():
            if node.is_ground:
                reason = "ground reference"
            elif node.degree > 3:
                reason = f"high connectivity ({node.degree} connections)"
            elif any(item_id in source_ids for item_id, _ in node.terminals):
                reason = "source attached"
            else:
                continue
            critical.append({'node': node.id, 'reason': reason, 'connections': node.degree})
        return critical


class TopologyExtractor:
    """Builds a TopologyResult from a Circuit"""

    def __init__(self, settings: Optional[SimulationSettings] = None,
                 model: Optional[ElectricalModel] = None):
        self.settings = settings or SimulationSettings()
        self.model = model or ElectricalModel(self.settings.matrix_tolerance)

    def extract(self, circuit: Circuit, frequency: float = 0.0) -> TopologyResult:
        logger.info(f"Extracting topology from {circuit!r}")
        physical = self._physical_nodes(circuit)
        groups = self._merge_groups(circuit, physical)
        nodes, node_of_physical = self._electrical_nodes(physical, groups)
        node_of_point = self._point_lookup(physical, node_of_physical)

        warnings: List[ValidationWarning] = []
        violations: List[str] = []

        branches = self._build_branches(circuit, node_of_point, frequency, warnings)
        self._link_nodes(circuit, nodes, node_of_point)
        for node in nodes.values():
            node.kind = self._classify_node(node)

        ground_id = self._find_ground(circuit, nodes, node_of_point, warnings, violations)

        for node in nodes.values():
            if node.kind is NodeKind.ISOLATED and not node.is_ground:
                violations.append(f"Node {node.id} at {tuple(node.position)} is isolated")
        for branch in branches:
            if branch.start not in nodes or branch.end not in nodes:
                violations.append(f"Branch {branch.id} has an endpoint that is not a circuit node")

        part_count = self._count_parts(nodes)
        if part_count > 1:
            violations.append(f"Circuit is split into {part_count} disconnected parts")

        if violations:
            message = "; ".join(violations)
            logger.error(f"Topology validation failed: {message}")
            raise StructuralError(message, violations, component_count=part_count)

        topology = self._classify(nodes, branches)
        meshes = self._find_meshes(branches)
        statistics = self._statistics(nodes, branches, meshes)
        result = TopologyResult(nodes=nodes, branches=branches, meshes=meshes, topology=topology,
                                ground_id=ground_id, frequency=frequency,
                                statistics=statistics, warnings=warnings, physical=physical,
                                snap_tolerance=self.settings.snap_tolerance)
        logger.info(f"Topology: {topology.value}, {result.node_count} nodes, "
                    f"{result.branch_count} branches, {result.mesh_count} meshes")
        return result

    # Physical nodes

    def _snap(self, point: Point) -> Tuple[float, float]:
        tolerance = self.settings.snap_tolerance
        return (round(point.x / tolerance) * tolerance, round(point.y / tolerance) * tolerance)

    def _physical_nodes(self, circuit: Circuit) -> List[PhysicalNode]:
        buckets: Dict[Tuple[float, float], PhysicalNode] = {}
        positions: Dict[Tuple[float, float], List[Point]] = defaultdict(list)

        def bucket(point: Point) -> PhysicalNode:
            key = self._snap(point)
            positions[key].append(point)
            if key not in buckets:
                buckets[key] = PhysicalNode(index=len(buckets), key=key, position=Point(*key))
            return buckets[key]

        for component in circuit.components:
            for terminal_index, terminal in enumerate(component.terminals):
                node = bucket(terminal)
                node.terminals.append((component.id, terminal_index))
                if component.type is ComponentType.GROUND:
                    node.is_ground = True
        for wire in circuit.wires:
            for point in wire.points():
                bucket(point).wire_points.append(wire.id)

        for key, node in buckets.items():
            members = positions[key]
            node.position = Point(sum(p.x for p in members) / len(members),
                                  sum(p.y for p in members) / len(members))
        return sorted(buckets.values(), key=lambda n: n.index)

    def _merge_groups(self, circuit: Circuit, physical: List[PhysicalNode]) -> Dict[int, List[int]]:
        index_of = {node.key: node.index for node in physical}
        union_find = UnionFind(len(physical))
        epsilon = self.settings.ideal_wire_resistance

        for wire in circuit.wires:
            start = index_of[self._snap(wire.start)]
            for point in wire.junctions:
                union_find.union(start, index_of[self._snap(point)])
            if wire.is_ideal(epsilon):
                union_find.union(start, index_of[self._snap(wire.end)])

        grounds = [node.index for node in physical if node.is_ground]
        for index in grounds[1:]:
            union_find.union(grounds[0], index)
        return union_find.groups()

    def _electrical_nodes(self, physical: List[PhysicalNode],
                          groups: Dict[int, List[int]]) -> Tuple[Dict[int, ElectricalNode], Dict[int, int]]:
        ordered = sorted(groups.values(), key=lambda members: min(members))
        # Ground group first so it gets id 0
        ordered.sort(key=lambda members: not any(physical[i].is_ground for i in members))

        nodes: Dict[int, ElectricalNode] = {}
        node_of_physical: Dict[int, int] = {}
        for node_id, members in enumerate(ordered):
            member_nodes = [physical[i] for i in sorted(members)]
            position = Point(sum(p.position.x for p in member_nodes) / len(member_nodes),
                             sum(p.position.y for p in member_nodes) / len(member_nodes))
            node = ElectricalNode(id=node_id, position=position,
                                  is_ground=any(p.is_ground for p in member_nodes),
                                  physical_nodes=[p.index for p in member_nodes])
            for member in member_nodes:
                node.terminals.extend(member.terminals)
                node.wire_points.extend(member.wire_points)
                node_of_physical[member.index] = node_id
            nodes[node_id] = node
        return nodes, node_of_physical

    def _point_lookup(self, physical: List[PhysicalNode], node_of_physical: Dict[int, int]):
        by_key = {p.key: node_of_physical[p.index] for p in physical}

        def node_of_point(point: Point) -> int:
            return by_key.get(self._snap(point), -1)

        return node_of_point

    # Branches and connections

    def _build_branches(self, circuit: Circuit, node_of_point, frequency: float,
                        warnings: List[ValidationWarning]) -> List[Branch]:
        branches: List[Branch] = []
        epsilon = self.settings.ideal_wire_resistance
        omega = 2 * math.pi * frequency

        for component in circuit.components:
            if component.type is ComponentType.GROUND or len(component.terminals) < 2:
                continue
            start = node_of_point(component.terminals[0])
            end = node_of_point(component.terminals[1])
            if start == end:
                warnings.append(ValidationWarning(component.name, "both terminals are on the same node"))
            branches.append(Branch(id=component.id, kind=BranchKind.COMPONENT, start=start, end=end,
                                   impedance=self.model.impedance(component, frequency),
                                   component=component))

        for wire in circuit.wires:
            if wire.is_ideal(epsilon):
                continue
            start = node_of_point(wire.start)
            end = node_of_point(wire.end)
            if start == end:
                continue
            branches.append(Branch(id=wire.id, kind=BranchKind.WIRE, start=start, end=end,
                                   impedance=complex(wire.resistance, omega * wire.inductance),
                                   wire=wire))
        return branches

    def _link_nodes(self, circuit: Circuit, nodes: Dict[int, ElectricalNode], node_of_point):
        def link(a: int, b: int):
            if a == b or a not in nodes or b not in nodes:
                return
            if b not in nodes[a].connections:
                nodes[a].connections.append(b)
            if a not in nodes[b].connections:
                nodes[b].connections.append(a)

        for wire in circuit.wires:
            link(node_of_point(wire.start), node_of_point(wire.end))
        for component in circuit.components:
            if component.type is ComponentType.GROUND or len(component.terminals) < 2:
                continue
            link(node_of_point(component.terminals[0]), node_of_point(component.terminals[1]))

    def _classify_node(self, node: ElectricalNode) -> NodeKind:
        component_count = len(node.terminals)
        wire_count = len(node.wire_points)
        if component_count == 0 and wire_count == 0:
            return NodeKind.ISOLATED
        if node.is_ground:
            return NodeKind.GROUND
        if node.degree == 0:
            return NodeKind.ISOLATED
        if component_count > 0 and wire_count == 0:
            return NodeKind.COMPONENT_TERMINAL
        if component_count == 0 and wire_count > 0:
            return NodeKind.WIRE_JUNCTION
        if component_count + wire_count == 2:
            return NodeKind.SIMPLE_CONNECTION
        return NodeKind.JUNCTION

    # Ground

    def _find_ground(self, circuit: Circuit, nodes: Dict[int, ElectricalNode], node_of_point,
                     warnings: List[ValidationWarning], violations: List[str]) -> int:
        for node in nodes.values():
            if node.is_ground:
                return node.id
        if not nodes:
            violations.append("Circuit has no nodes")
            return -1
        if not self.settings.allow_synthetic_ground:
            violations.append("Circuit has no ground reference")
            return -1

        ground_id = None
        sources = circuit.components_of(ComponentType.VOLTAGE_SOURCE)
        if sources:
            ground_id = node_of_point(sources[0].terminals[1])
        if ground_id is None or ground_id not in nodes:
            ground_id = max(nodes.values(), key=lambda n: (n.degree, -n.id)).id

        node = nodes[ground_id]
        node.is_ground = True
        node.kind = NodeKind.GROUND
        warnings.append(ValidationWarning("", f"No ground found, using node {ground_id} as reference"))
        logger.warning(f"No ground in circuit, node {ground_id} designated as reference")
        return ground_id

    @staticmethod
    def _count_parts(nodes: Dict[int, ElectricalNode]) -> int:
        graph = nx.Graph()
        graph.add_nodes_from(nodes)
        for node in nodes.values():
            graph.add_edges_from((node.id, other) for other in node.connections)
        if graph.number_of_nodes() == 0:
            return 0
        return nx.number_connected_components(graph)

    # Classification

    def _classify(self, nodes: Dict[int, ElectricalNode], branches: List[Branch]) -> CircuitTopology:
        if self._is_series(nodes):
            return CircuitTopology.SERIES
        if self._is_parallel(branches):
            return CircuitTopology.PARALLEL
        # a bridge degree pattern also matches the ladder rule, so it goes first
        if self._is_bridge(nodes):
            return CircuitTopology.BRIDGE
        if self._is_ladder(nodes):
            return CircuitTopology.LADDER
        return CircuitTopology.GENERAL

    @staticmethod
    def _is_series(nodes: Dict[int, ElectricalNode]) -> bool:
        inner = [n for n in nodes.values()
                 if not n.is_ground and n.kind is not NodeKind.COMPONENT_TERMINAL]
        return bool(inner) and all(n.degree == 2 for n in inner)

    @staticmethod
    def _is_parallel(branches: List[Branch]) -> bool:
        if len(branches) <= 1:
            return False
        elements = [b for b in branches if not b.is_wire]
        if not elements:
            return False
        pair = {elements[0].start, elements[0].end}
        return all({b.start, b.end} == pair for b in elements[1:])

    @staticmethod
    def _is_ladder(nodes: Dict[int, ElectricalNode]) -> bool:
        return {n.degree for n in nodes.values()} == {2, 3}

    @staticmethod
    def _is_bridge(nodes: Dict[int, ElectricalNode]) -> bool:
        if len(nodes) != 5:
            return False
        return sorted(n.degree for n in nodes.values()) == [2, 3, 3, 3, 3]

    # Meshes

    def _find_meshes(self, branches: List[Branch]) -> List[Mesh]:
        """
        Greedy loop walk: from each unvisited branch follow the first unvisited
        branch touching the current node until the walk returns to its start.

        Finds one loop per walk, not a complete set of independent meshes.
        """
        meshes: List[Mesh] = []
        visited: Set[str] = set()
        limit = len(branches) + 1

        for first in branches:
            if first.id in visited:
                continue
            visited.add(first.id)
            walk = [first]
            orientations = [1]
            current = first.end
            steps = 0
            while current != first.start and steps < limit:
                following = next((b for b in branches if b.id not in visited and b.touches(current)), None)
                if following is None:
                    break
                visited.add(following.id)
                walk.append(following)
                orientations.append(1 if following.start == current else -1)
                current = following.other_end(current)
                steps += 1

            if current == first.start and len(walk) > 2:
                node_ids: List[int] = []
                for branch in walk:
                    for node_id in (branch.start, branch.end):
                        if node_id not in node_ids:
                            node_ids.append(node_id)
                meshes.append(Mesh(id=f"mesh_{len(meshes)}", branches=[b.id for b in walk],
                                   orientations=orientations, nodes=node_ids))
        return meshes

    @staticmethod
    def _statistics(nodes: Dict[int, ElectricalNode], branches: List[Branch],
                    meshes: List[Mesh]) -> Dict[str, int]:
        kinds = [n.kind for n in nodes.values()]
        return {
            'nodes': len(nodes),
            'branches': len(branches),
            'meshes': len(meshes),
            'isolated_nodes': kinds.count(NodeKind.ISOLATED),
            'junction_nodes': kinds.count(NodeKind.JUNCTION),
            'terminal_nodes': kinds.count(NodeKind.COMPONENT_TERMINAL),
            'max_degree': max((n.degree for n in nodes.values()), default=0),
        }
