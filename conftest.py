"""
Shared circuit builders for the test suite.

Circuits are laid out on a 100 unit grid the way the editor draws them:
the source stands on the left with its positive terminal at the top and
ground at its negative terminal.
"""

import pytest

from circuit_engine import AnalysisCoordinator, Circuit, Component, ComponentType


def build_series(voltage, elements, ground=True, **source_params):
    """Source followed by a wired chain of (type, value) elements along the top rail"""
    circuit = Circuit()
    circuit.add(Component.voltage_source(voltage, (0, 0), (0, 200), **source_params))
    previous = (0, 0)
    x = 0
    for element_type, value in elements:
        start, end = (x + 100, 0), (x + 200, 0)
        circuit.connect(previous, start)
        circuit.add(Component(element_type, [start, end], value=value))
        previous = end
        x += 200
    circuit.connect(previous, (x, 200))
    circuit.connect((x, 200), (0, 200))
    if ground:
        circuit.add(Component.ground((0, 200)))
    return circuit


def build_parallel(voltage, resistances):
    """Source and resistors standing side by side between two wired rails"""
    circuit = Circuit()
    circuit.add(Component.voltage_source(voltage, (0, 0), (0, 200)))
    for k, resistance in enumerate(resistances, start=1):
        x = 100 * k
        circuit.add(Component.resistor(resistance, (x, 0), (x, 200)))
        circuit.connect((x - 100, 0), (x, 0))
        circuit.connect((x - 100, 200), (x, 200))
    circuit.add(Component.ground((0, 200)))
    return circuit


def build_triangle(voltage, first, second):
    """Wireless loop: source, then two elements given as (type, value)"""
    circuit = Circuit()
    circuit.add(Component.voltage_source(voltage, (0, 0), (0, 100)))
    circuit.add(Component(first[0], [(0, 0), (100, 0)], value=first[1]))
    circuit.add(Component(second[0], [(100, 0), (0, 100)], value=second[1]))
    circuit.add(Component.ground((0, 100)))
    return circuit


@pytest.fixture
def coordinator():
    return AnalysisCoordinator()


@pytest.fixture
def simple_circuit():
    """12 V source across a 1 kΩ resistor"""
    circuit = Circuit()
    circuit.add(Component.voltage_source(12, (0, 0), (0, 100)))
    circuit.add(Component.resistor(1000, (100, 0), (100, 100)))
    circuit.add(Component.ground((0, 100)))
    circuit.connect((0, 0), (100, 0))
    circuit.connect((0, 100), (100, 100))
    return circuit


@pytest.fixture
def divider_circuit():
    """12 V across 500 Ω and 700 Ω in series"""
    return build_series(12, [(ComponentType.RESISTOR, 500), (ComponentType.RESISTOR, 700)])


@pytest.fixture
def parallel_circuit():
    """10 V across two 100 Ω resistors"""
    return build_parallel(10, [100, 100])


@pytest.fixture
def triangle_circuit():
    """12 V loop through 200 Ω then 400 Ω without wires"""
    return build_triangle(12, (ComponentType.RESISTOR, 200), (ComponentType.RESISTOR, 400))


@pytest.fixture
def ladder_circuit():
    """10 V driving a two-section ladder of 100 Ω resistors"""
    circuit = Circuit()
    circuit.add(Component.voltage_source(10, (0, 0), (0, 100)))
    circuit.add(Component.resistor(100, (0, 0), (100, 0)))
    circuit.add(Component.resistor(100, (100, 0), (0, 100)))
    circuit.add(Component.resistor(100, (100, 0), (200, 0)))
    circuit.add(Component.resistor(100, (200, 0), (0, 100)))
    circuit.add(Component.ground((0, 100)))
    return circuit
