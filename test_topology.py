"""
Tests for topology extraction: node merging, branches, grounds,
connectivity checks, classification and loop finding.
"""

import pytest

from circuit_engine import (Circuit, CircuitTopology, Component, ComponentType, SimulationSettings,
                            StructuralError, TopologyExtractor, Wire)
from circuit_engine.topology import BranchKind, NodeKind, UnionFind
from conftest import build_series


def test_ideal_wires_merge_terminals_into_nodes(simple_circuit):
    topology = TopologyExtractor().extract(simple_circuit)

    assert topology.node_count == 2
    assert topology.branch_count == 2
    assert topology.ground_id == 0
    assert topology.node_for_terminal("V1", 1) == 0
    assert topology.node_for_terminal("V1", 0) == topology.node_for_terminal("R1", 0)
    assert topology.nodes[0].is_ground
    assert topology.nodes[1].kind is NodeKind.JUNCTION


def test_snapping_joins_nearby_points():
    circuit = Circuit()
    circuit.add(Component.voltage_source(5, (0, 0), (0, 100)))
    circuit.add(Component.resistor(100, (2, 1), (1, 98)))
    circuit.add(Component.ground((0, 100)))
    topology = TopologyExtractor().extract(circuit)
    assert topology.node_count == 2


def test_resistive_wire_becomes_a_branch():
    circuit = Circuit()
    circuit.add(Component.voltage_source(5, (0, 0), (0, 100)))
    circuit.add(Component.resistor(100, (100, 0), (100, 100)))
    circuit.add(Component.ground((0, 100)))
    circuit.connect((0, 0), (100, 0), resistance=0.5)
    circuit.connect((0, 100), (100, 100))
    topology = TopologyExtractor().extract(circuit)

    assert topology.node_count == 3
    wire_branch = topology.branch("W1")
    assert wire_branch.kind is BranchKind.WIRE
    assert wire_branch.impedance == pytest.approx(complex(0.5, 0))
    assert topology.branch("W2") is None


def test_wire_junctions_join_the_wire_start():
    circuit = Circuit()
    circuit.add(Component.voltage_source(5, (0, 0), (0, 100)))
    circuit.add(Component.resistor(100, (50, 0), (50, 100)))
    circuit.add(Component.ground((0, 100)))
    circuit.connect((0, 100), (50, 100))
    circuit.add_wire(Wire((0, 0), (100, 0), junctions=[(50, 0)], resistance=1.0))
    topology = TopologyExtractor().extract(circuit)

    assert topology.branch("W2").kind is BranchKind.WIRE
    assert topology.node_for_terminal("V1", 0) == topology.node_for_terminal("R1", 0)


def test_multiple_grounds_share_one_node(triangle_circuit):
    triangle_circuit.add(Component.ground((100, 0)))
    topology = TopologyExtractor().extract(triangle_circuit)

    assert topology.node_count == 2
    assert sum(1 for n in topology.nodes.values() if n.is_ground) == 1
    assert any("same node" in w.message for w in topology.warnings)


def test_missing_ground_uses_source_negative_terminal(simple_circuit):
    simple_circuit.remove(simple_circuit.components_of(ComponentType.GROUND)[0])
    topology = TopologyExtractor().extract(simple_circuit)

    assert topology.ground_id == topology.node_for_terminal("V1", 1)
    assert topology.nodes[topology.ground_id].is_ground
    assert any("No ground" in w.message for w in topology.warnings)


def test_missing_ground_can_be_an_error(simple_circuit):
    simple_circuit.remove(simple_circuit.components_of(ComponentType.GROUND)[0])
    extractor = TopologyExtractor(SimulationSettings(allow_synthetic_ground=False))
    with pytest.raises(StructuralError) as excinfo:
        extractor.extract(simple_circuit)
    assert "no ground" in str(excinfo.value)


def test_disconnected_parts_are_counted(simple_circuit):
    simple_circuit.add(Component.resistor(100, (1000, 1000), (1100, 1000)))
    with pytest.raises(StructuralError) as excinfo:
        TopologyExtractor().extract(simple_circuit)

    assert excinfo.value.component_count == 2
    assert "2 disconnected parts" in str(excinfo.value)


def test_isolated_node_is_reported():
    circuit = Circuit()
    circuit.add(Component.voltage_source(5, (0, 0), (0, 100)))
    circuit.add(Component.resistor(100, (0, 0), (0, 100)))
    circuit.add(Component.ground((0, 100)))
    circuit.add(Component.resistor(100, (500, 500), (500, 500)))
    with pytest.raises(StructuralError) as excinfo:
        TopologyExtractor().extract(circuit)
    assert any("isolated" in v for v in excinfo.value.violations)


def test_series_classification(divider_circuit):
    topology = TopologyExtractor().extract(divider_circuit)
    assert topology.topology is CircuitTopology.SERIES
    assert topology.node_count == 3


def test_parallel_classification(parallel_circuit):
    topology = TopologyExtractor().extract(parallel_circuit)
    assert topology.topology is CircuitTopology.PARALLEL
    assert topology.node_count == 2
    assert topology.branch_count == 3


def test_ladder_classification(ladder_circuit):
    topology = TopologyExtractor().extract(ladder_circuit)
    assert topology.topology is CircuitTopology.LADDER


def test_general_classification_and_mesh(triangle_circuit):
    topology = TopologyExtractor().extract(triangle_circuit)

    assert topology.topology is CircuitTopology.GENERAL
    assert topology.mesh_count == 1
    mesh = topology.meshes[0]
    assert mesh.branches == ["V1", "R2", "R1"]
    assert mesh.orientations == [1, -1, -1]
    assert mesh.orientation_of("R2") == -1
    assert mesh.orientation_of("missing") == 0


def test_two_element_loop_is_not_a_mesh(simple_circuit):
    topology = TopologyExtractor().extract(simple_circuit)
    assert topology.mesh_count == 0


def test_frequency_sets_branch_impedance():
    circuit = build_series(1, [(ComponentType.RESISTOR, 1000), (ComponentType.CAPACITOR, 1e-6)])
    topology = TopologyExtractor().extract(circuit, frequency=1000)
    capacitor = topology.branch_for_component("C1")
    assert capacitor.impedance.imag < 0
    assert topology.frequency == 1000


def test_graph_views(ladder_circuit):
    topology = TopologyExtractor().extract(ladder_circuit)
    graph = topology.to_graph()

    assert graph.number_of_nodes() == topology.node_count
    assert graph.number_of_edges() == topology.branch_count
    reasons = {entry['node']: entry['reason'] for entry in topology.critical_nodes()}
    assert reasons[topology.ground_id] == "ground reference"
    assert topology.statistics['nodes'] == 4
    assert topology.statistics['max_degree'] == 3


def test_union_find():
    sets = UnionFind(5)
    assert sets.union(0, 1)
    assert sets.union(3, 4)
    assert not sets.union(1, 0)
    assert sets.find(1) == sets.find(0)
    assert sets.find(2) != sets.find(3)
    assert sorted(len(members) for members in sets.groups().values()) == [1, 2, 2]


def test_bridge_classification():
    """Wheatstone bridge fed through a series resistor: five nodes, one of degree two"""
    circuit = Circuit()
    circuit.add(Component.voltage_source(10, (0, 0), (100, 200)))
    circuit.add(Component.resistor(100, (0, 0), (100, 0)))
    circuit.add(Component.resistor(100, (100, 0), (50, 100)))
    circuit.add(Component.resistor(200, (100, 0), (150, 100)))
    circuit.add(Component.resistor(100, (50, 100), (100, 200)))
    circuit.add(Component.resistor(200, (150, 100), (100, 200)))
    circuit.add(Component.resistor(1000, (50, 100), (150, 100)))
    circuit.add(Component.ground((100, 200)))
    topology = TopologyExtractor().extract(circuit)

    assert topology.node_count == 5
    assert sorted(node.degree for node in topology.nodes.values()) == [2, 3, 3, 3, 3]
    assert topology.topology is CircuitTopology.BRIDGE
