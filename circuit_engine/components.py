"""
Circuit data model: components, wires and the circuit container.

Components are plain records. Their electrical fields (voltage, current,
power) are written only by the analysis coordinator after a valid solve.
"""

import math
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Set, Tuple, Union

from .config import (DEFAULT_CROSS_SECTION, MATERIAL_RESISTIVITY,
                     REFERENCE_TEMPERATURE, RESISTOR_DEFAULT_POWER_RATING)


class ComponentType(Enum):
    """Closed set of supported component kinds"""
    RESISTOR = "resistor"
    VOLTAGE_SOURCE = "voltage"
    CURRENT_SOURCE = "current"
    CAPACITOR = "capacitor"
    INDUCTOR = "inductor"
    DIODE = "diode"
    GROUND = "ground"

    @property
    def prefix(self) -> str:
        return LABEL_PREFIXES[self]

    @property
    def unit(self) -> str:
        return COMPONENT_UNITS[self]

    @property
    def is_source(self) -> bool:
        return self in (ComponentType.VOLTAGE_SOURCE, ComponentType.CURRENT_SOURCE)


class SourceWaveform(Enum):
    """Output waveform of a source"""
    DC = "dc"
    AC = "ac"
    PULSE = "pulse"
    RAMP = "ramp"


LABEL_PREFIXES = {
    ComponentType.RESISTOR: "R",
    ComponentType.VOLTAGE_SOURCE: "V",
    ComponentType.CURRENT_SOURCE: "I",
    ComponentType.CAPACITOR: "C",
    ComponentType.INDUCTOR: "L",
    ComponentType.DIODE: "D",
    ComponentType.GROUND: "GND",
}

COMPONENT_UNITS = {
    ComponentType.RESISTOR: "Ω",
    ComponentType.VOLTAGE_SOURCE: "V",
    ComponentType.CURRENT_SOURCE: "A",
    ComponentType.CAPACITOR: "F",
    ComponentType.INDUCTOR: "H",
    ComponentType.DIODE: "V",
    ComponentType.GROUND: "",
}

WIRE_PREFIX = "W"


class Point(NamedTuple):
    x: float
    y: float


PointLike = Union[Point, Tuple[float, float]]


def as_point(value: PointLike) -> Point:
    return value if isinstance(value, Point) else Point(float(value[0]), float(value[1]))


class LabelSequence:
    """
    Per-prefix label generator (R1, R2, V1, ...) scoped to one circuit-building
    session. Labels can be registered when loading saved circuits and released
    when components are removed so that numbers are reused.
    """

    def __init__(self):
        self._used: Dict[str, Set[str]] = {}
        self._counters: Dict[str, int] = {}

    def next_label(self, prefix: str) -> str:
        used = self._used.setdefault(prefix, set())
        i = 1
        while f"{prefix}{i}" in used:
            i += 1
        label = f"{prefix}{i}"
        used.add(label)
        self._counters[prefix] = max(self._counters.get(prefix, 0), i)
        return label

    def register(self, label: str) -> bool:
        """Mark an externally chosen label as used; False if it was taken"""
        prefix = label.rstrip("0123456789") or label
        used = self._used.setdefault(prefix, set())
        if label in used:
            return False
        used.add(label)
        suffix = label[len(prefix):]
        if suffix.isdigit():
            self._counters[prefix] = max(self._counters.get(prefix, 0), int(suffix))
        return True

    def release(self, label: str):
        prefix = label.rstrip("0123456789") or label
        self._used.get(prefix, set()).discard(label)

    def is_used(self, label: str) -> bool:
        prefix = label.rstrip("0123456789") or label
        return label in self._used.get(prefix, set())

    def counters(self) -> Dict[str, int]:
        return dict(self._counters)


@dataclass(eq=False)
class Component:
    """Two-terminal circuit element (ground has a single terminal)"""
    type: ComponentType
    terminals: List[Point]
    value: float = 0.0
    unit: str = ""
    id: str = ""
    label: Optional[str] = None

    # Sources
    internal_resistance: float = 0.0
    waveform: SourceWaveform = SourceWaveform.DC
    frequency: float = 60.0
    amplitude: Optional[float] = None
    offset: float = 0.0
    phase: float = 0.0
    duty_cycle: float = 0.5
    rise_time: float = 1e-3
    fall_time: float = 1e-3
    compliance: Optional[float] = None
    max_current: float = math.inf

    # Resistors
    temperature: float = REFERENCE_TEMPERATURE
    temp_coefficient: float = 0.0  # ppm/degC
    is_variable: bool = False
    tap_position: float = 1.0
    power_rating: float = RESISTOR_DEFAULT_POWER_RATING

    # Diodes
    forward_voltage: float = 0.7
    series_resistance: float = 0.1
    reverse_resistance: float = 1e6
    saturation_current: float = 1e-12

    # Solved values
    voltage: Optional[float] = None
    current: Optional[float] = None
    power: Optional[float] = None

    SOLVED_FIELDS = ("voltage", "current", "power")

    def __post_init__(self):
        self.terminals = [as_point(p) for p in self.terminals]
        if not self.unit:
            self.unit = self.type.unit
        if self.type is ComponentType.GROUND and len(self.terminals) != 1:
            raise ValueError("Ground components have exactly one terminal")
        if self.type is not ComponentType.GROUND and len(self.terminals) < 2:
            raise ValueError(f"{self.type.value} components need two terminals")

    @property
    def name(self) -> str:
        return self.label or self.id

    @property
    def effective_compliance(self) -> float:
        if self.compliance is not None:
            return abs(self.compliance)
        return abs(self.value) * 1.1

    @property
    def effective_amplitude(self) -> float:
        return self.value if self.amplitude is None else self.amplitude

    def parameters(self) -> tuple:
        """Every input field, in declaration order, for structural fingerprints"""
        values = []
        for f in fields(self):
            if f.name in self.SOLVED_FIELDS or f.name in ("id", "label"):
                continue
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, list):
                value = tuple(value)
            values.append(value)
        return tuple(values)

    def clear_results(self):
        self.voltage = None
        self.current = None
        self.power = None

    # Factories

    @classmethod
    def resistor(cls, resistance: float, start: PointLike, end: PointLike, **params) -> "Component":
        return cls(ComponentType.RESISTOR, [start, end], value=resistance, **params)

    @classmethod
    def voltage_source(cls, voltage: float, positive: PointLike, negative: PointLike, **params) -> "Component":
        return cls(ComponentType.VOLTAGE_SOURCE, [positive, negative], value=voltage, **params)

    @classmethod
    def current_source(cls, current: float, start: PointLike, end: PointLike, **params) -> "Component":
        """Current flows inside the source from start to end, leaving through end"""
        return cls(ComponentType.CURRENT_SOURCE, [start, end], value=current, **params)

    @classmethod
    def capacitor(cls, capacitance: float, start: PointLike, end: PointLike, **params) -> "Component":
        return cls(ComponentType.CAPACITOR, [start, end], value=capacitance, **params)

    @classmethod
    def inductor(cls, inductance: float, start: PointLike, end: PointLike, **params) -> "Component":
        return cls(ComponentType.INDUCTOR, [start, end], value=inductance, **params)

    @classmethod
    def diode(cls, anode: PointLike, cathode: PointLike, **params) -> "Component":
        params.setdefault("value", params.get("forward_voltage", 0.7))
        return cls(ComponentType.DIODE, [anode, cathode], **params)

    @classmethod
    def ground(cls, position: PointLike, **params) -> "Component":
        return cls(ComponentType.GROUND, [position], **params)

    def __repr__(self):
        return f"Component({self.name}, {self.type.value}, {self.value} {self.unit})"


@dataclass(eq=False)
class Wire:
    """Connection between two points; near-zero resistance means an ideal short"""
    start: Point
    end: Point
    junctions: List[Point] = field(default_factory=list)
    resistance: float = 0.0
    inductance: float = 0.0
    capacitance: float = 0.0
    max_current: float = math.inf
    material: str = "copper"
    cross_section: float = DEFAULT_CROSS_SECTION  # m^2
    id: str = ""
    label: Optional[str] = None

    voltage: Optional[float] = None
    current: Optional[float] = None
    power: Optional[float] = None

    def __post_init__(self):
        self.start = as_point(self.start)
        self.end = as_point(self.end)
        self.junctions = [as_point(p) for p in self.junctions]

    @classmethod
    def from_geometry(cls, start: PointLike, end: PointLike, material: str = "copper",
                      cross_section: float = DEFAULT_CROSS_SECTION,
                      units_per_meter: float = 1000.0, **params) -> "Wire":
        """Wire whose parasitics follow from its length, material and cross section"""
        wire = cls(start, end, material=material, cross_section=cross_section, **params)
        length = wire.length(units_per_meter)
        if length > 0 and cross_section > 0:
            resistivity = MATERIAL_RESISTIVITY.get(material, MATERIAL_RESISTIVITY["copper"])
            wire.resistance = resistivity * length / cross_section
            wire.inductance = max(0.0, 2e-7 * length * (math.log(length / math.sqrt(cross_section)) - 0.75))
            wire.capacitance = 1e-11 * length
        return wire

    @property
    def name(self) -> str:
        return self.label or self.id

    def points(self) -> List[Point]:
        return [self.start, *self.junctions, self.end]

    def length(self, units_per_meter: float = 1000.0) -> float:
        """Path length in meters"""
        pts = self.points()
        total = sum(math.hypot(b.x - a.x, b.y - a.y) for a, b in zip(pts, pts[1:]))
        return total / units_per_meter

    def is_ideal(self, epsilon: float) -> bool:
        return self.resistance < epsilon

    def parameters(self) -> tuple:
        return (tuple(self.start), tuple(self.end), tuple(tuple(p) for p in self.junctions),
                self.resistance, self.inductance, self.max_current,
                self.material, self.cross_section)

    def clear_results(self):
        self.voltage = None
        self.current = None
        self.power = None

    def __repr__(self):
        return f"Wire({self.name}, {tuple(self.start)} -> {tuple(self.end)}, {self.resistance} Ω)"


CircuitItem = Union[Component, Wire]
Observer = Callable[[str, CircuitItem], None]


class Circuit:
    """
    Ordered collection of components and wires.

    Mutations return the affected item. An optional observer callable is
    invoked as observer(event, item) after every mutation.
    """

    def __init__(self, components: Iterable[Component] = (), wires: Iterable[Wire] = (),
                 labels: Optional[LabelSequence] = None, observer: Optional[Observer] = None):
        self.components: List[Component] = []
        self.wires: List[Wire] = []
        self.labels = labels or LabelSequence()
        self.observer = observer
        for component in components:
            self.add(component)
        for wire in wires:
            self.add_wire(wire)

    def _notify(self, event: str, item: CircuitItem):
        if self.observer is not None:
            self.observer(event, item)

    def _assign_identity(self, item: CircuitItem, prefix: str):
        if item.label is None:
            item.label = self.labels.next_label(prefix)
        else:
            self.labels.register(item.label)
        if not item.id:
            item.id = item.label
        if any(existing.id == item.id for existing in self._all_items()):
            raise ValueError(f"Duplicate circuit item id: {item.id}")

    def _all_items(self) -> List[CircuitItem]:
        return [*self.components, *self.wires]

    def add(self, component: Component) -> Component:
        self._assign_identity(component, component.type.prefix)
        self.components.append(component)
        self._notify("component_added", component)
        return component

    def add_wire(self, wire: Wire) -> Wire:
        self._assign_identity(wire, WIRE_PREFIX)
        self.wires.append(wire)
        self._notify("wire_added", wire)
        return wire

    def connect(self, start: PointLike, end: PointLike, **params) -> Wire:
        return self.add_wire(Wire(start, end, **params))

    def remove(self, item: CircuitItem) -> CircuitItem:
        if isinstance(item, Component):
            self.components.remove(item)
            event = "component_removed"
        else:
            self.wires.remove(item)
            event = "wire_removed"
        if item.label:
            self.labels.release(item.label)
        self._notify(event, item)
        return item

    def get_component(self, component_id: str) -> Optional[Component]:
        for component in self.components:
            if component.id == component_id:
                return component
        return None

    def get_wire(self, wire_id: str) -> Optional[Wire]:
        for wire in self.wires:
            if wire.id == wire_id:
                return wire
        return None

    def components_of(self, component_type: ComponentType) -> List[Component]:
        return [c for c in self.components if c.type is component_type]

    def clear_results(self):
        for item in self._all_items():
            item.clear_results()

    def __len__(self):
        return len(self.components) + len(self.wires)

    def __repr__(self):
        return f"Circuit({len(self.components)} components, {len(self.wires)} wires)"
