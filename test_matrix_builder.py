"""
Tests for linear system construction and matrix diagnostics.
"""

import numpy as np
import pytest

from circuit_engine import (AnalysisMethod, Circuit, Component, ComponentType, MatrixBuilder,
                            StructuralError, TopologyExtractor)
from circuit_engine.matrix_builder import LinearSystem, determinant
from conftest import build_triangle


def build(circuit, method):
    topology = TopologyExtractor().extract(circuit)
    return topology, MatrixBuilder().build(topology, method)


def test_modified_nodal_adds_a_row_per_ideal_source(simple_circuit):
    _, system = build(simple_circuit, AnalysisMethod.NODAL_MODIFIED)

    assert system.size == 2
    assert not system.is_complex
    assert system.matrix[0, 0] == pytest.approx(1e-3)
    assert system.matrix[0, 1] == 1 and system.matrix[1, 0] == 1
    assert system.rhs.tolist() == [0.0, 12.0]
    assert system.extra_index == {"V1": 1}
    assert system.metadata['extra_rows'] == 1


def test_plain_nodal_uses_norton_equivalent_for_real_sources(simple_circuit):
    simple_circuit.get_component("V1").internal_resistance = 2.0
    _, system = build(simple_circuit, AnalysisMethod.NODAL)

    assert system.size == 1
    assert system.matrix[0, 0] == pytest.approx(0.5 + 1e-3)
    assert system.rhs[0] == pytest.approx(6.0)


def test_ladder_is_built_as_modified_nodal(ladder_circuit):
    _, system = build(ladder_circuit, AnalysisMethod.LADDER)
    assert system.metadata['is_ladder']
    assert system.size == 4
    assert np.allclose(system.matrix, system.matrix.T)


def test_mesh_system(triangle_circuit):
    topology, system = build(triangle_circuit, AnalysisMethod.MESH)

    assert system.size == 1
    assert system.matrix[0, 0] == pytest.approx(600)
    assert system.rhs[0] == pytest.approx(12)
    assert system.metadata['mesh_polarity'] == [-1]
    assert system.meshes == topology.meshes


def test_mesh_requires_meshes(simple_circuit):
    topology = TopologyExtractor().extract(simple_circuit)
    with pytest.raises(StructuralError) as excinfo:
        MatrixBuilder().build(topology, AnalysisMethod.MESH)
    assert str(excinfo.value) == "No meshes found for mesh analysis"


def test_series_system(divider_circuit):
    _, system = build(divider_circuit, AnalysisMethod.SERIES)

    assert system.size == 1
    assert system.matrix[0, 0] == pytest.approx(1200)
    assert system.metadata['source_voltage'] == 12
    assert not system.metadata['open_circuit']


def test_parallel_system(parallel_circuit):
    _, system = build(parallel_circuit, AnalysisMethod.PARALLEL)

    assert np.allclose(np.diag(system.matrix), [100, 100])
    assert np.allclose(system.rhs, [10, 10])
    assert system.metadata['source_id'] == "V1"


def test_mesh_modified_pins_current_source_mesh():
    circuit = build_triangle(12, (ComponentType.CURRENT_SOURCE, 0.01), (ComponentType.RESISTOR, 400))
    topology, system = build(circuit, AnalysisMethod.MESH_MODIFIED)

    assert topology.meshes[0].branches == ["V1", "R1", "I1"]
    assert system.metadata['mesh_polarity'] == [-1]
    assert system.matrix.tolist() == [[1.0]]
    assert system.rhs[0] == pytest.approx(0.01)

    _, plain = build(circuit, AnalysisMethod.MESH)
    assert any("current source treated as its internal resistance" in w.message for w in plain.warnings)


def test_mesh_with_several_voltage_sources_is_flagged():
    circuit = build_triangle(12, (ComponentType.VOLTAGE_SOURCE, 5), (ComponentType.RESISTOR, 400))
    _, system = build(circuit, AnalysisMethod.MESH)

    assert system.rhs[0] == pytest.approx(17)
    assert system.matrix[0, 0] == pytest.approx(400)
    assert [w.message for w in system.warnings] == [
        "several voltage sources in one mesh are summed with the same polarity"]


def test_parallel_closed_form_rejects_other_branches(parallel_circuit):
    parallel_circuit.get_component("V1").internal_resistance = 1.0
    topology = TopologyExtractor().extract(parallel_circuit)
    assert MatrixBuilder().parallel_conflicts(topology) == ["V1 has internal resistance"]
    with pytest.raises(StructuralError) as excinfo:
        MatrixBuilder().build(topology, AnalysisMethod.PARALLEL)
    assert excinfo.value.violations == ["V1 has internal resistance"]

    parallel_circuit.get_component("V1").internal_resistance = 0.0
    topology = TopologyExtractor().extract(parallel_circuit, frequency=50)
    assert MatrixBuilder().parallel_conflicts(topology) == ["closed form is DC only, got 50 Hz"]


def test_closed_forms_need_a_voltage_source():
    circuit = Circuit()
    circuit.add(Component.current_source(0.01, (0, 100), (0, 0)))
    circuit.add(Component.resistor(1000, (0, 0), (0, 100)))
    circuit.add(Component.ground((0, 100)))
    topology = TopologyExtractor().extract(circuit)

    with pytest.raises(StructuralError) as excinfo:
        MatrixBuilder().build(topology, AnalysisMethod.SERIES)
    assert str(excinfo.value) == "Circuit lacks a voltage source for series analysis"

    system = MatrixBuilder().build(topology, AnalysisMethod.NODAL)
    assert system.rhs[0] == pytest.approx(0.01)


def test_unsupported_method(simple_circuit):
    topology = TopologyExtractor().extract(simple_circuit)
    with pytest.raises(StructuralError):
        MatrixBuilder().build(topology, "transient")


def test_conditioning_diagnostics():
    builder = MatrixBuilder()
    good = builder.analyze_conditioning(np.array([[2.0, -1.0], [-1.0, 2.0]]))
    assert good.determinant == pytest.approx(3)
    assert good.symmetric and good.positive_definite and good.diagonally_dominant
    assert not good.near_singular
    assert good.warning is None

    bad = builder.analyze_conditioning(np.array([[1.0, 2.0], [2.0, 4.0]]))
    assert bad.near_singular
    assert not bad.positive_definite
    assert bad.warning == "matrix is singular or nearly singular"


def test_positive_definite_above_three():
    matrix = 4 * np.eye(5) + 0.5 * (np.ones((5, 5)) - np.eye(5))
    assert MatrixBuilder().is_positive_definite(matrix)
    matrix[4, 4] = -1
    assert not MatrixBuilder().is_positive_definite(matrix)


def test_determinant():
    matrix = np.array([[2.0, 0.0, 1.0], [1.0, 3.0, 2.0], [1.0, 1.0, 2.0]])
    assert determinant(matrix) == pytest.approx(np.linalg.det(matrix))
    assert determinant(np.zeros((0, 0))) == 1.0


def test_dimension_validation():
    system = LinearSystem(matrix=np.eye(2), rhs=np.zeros(3), method=AnalysisMethod.NODAL)
    with pytest.raises(StructuralError):
        MatrixBuilder.validate_dimensions(system)


def test_incidence_matrix(ladder_circuit):
    topology = TopologyExtractor().extract(ladder_circuit)
    incidence = MatrixBuilder().incidence_matrix(topology)

    assert incidence.shape == (topology.node_count - 1, topology.branch_count)
    # Every branch leaves one node and enters another; ground rows are dropped
    assert set(np.abs(incidence).sum(axis=0)) <= {1.0, 2.0}
    assert set(incidence.sum(axis=0)) <= {-1.0, 0.0, 1.0}


def test_scale_rows_and_norm():
    builder = MatrixBuilder()
    matrix = np.array([[2.0, -4.0], [0.5, 0.25]])
    rhs = np.array([8.0, 1.0])
    scaled, scaled_rhs = builder.scale_rows(matrix, rhs)

    assert np.allclose(np.abs(scaled).max(axis=1), [1, 1])
    assert np.allclose(scaled_rhs, [2, 2])
    assert matrix[0, 1] == -4.0
    assert MatrixBuilder.matrix_norm(np.array([[3.0, 0.0], [0.0, 4.0]])) == pytest.approx(5)
