"""
Results Formatter - human readable reports of analysis results.
"""

import math
from typing import TYPE_CHECKING, Dict, List, Optional

from ..components import Circuit

if TYPE_CHECKING:
    from ..coordinator import AnalysisResult

SI_PREFIXES = [
    (1e9, "G"),
    (1e6, "M"),
    (1e3, "k"),
    (1.0, ""),
    (1e-3, "m"),
    (1e-6, "μ"),
    (1e-9, "n"),
    (1e-12, "p"),
]


def format_value(value, unit: str) -> str:
    """Format a value with an SI prefix, e.g. 0.012 A -> '12 mA'"""
    if isinstance(value, complex):
        return f"{format_value(abs(value), unit)} ∠{math.degrees(math.atan2(value.imag, value.real)):.1f}°"
    if value is None or not math.isfinite(value):
        return f"{value} {unit}"
    magnitude = abs(value)
    if magnitude == 0:
        return f"0 {unit}"
    for scale, prefix in SI_PREFIXES:
        if magnitude >= scale:
            return f"{value / scale:.6g} {prefix}{unit}"
    return f"{value:.2e} {unit}"


class ResultsFormatter:
    """
    Handles formatting and presentation of analysis results.
    """

    def __init__(self, result: "AnalysisResult", circuit: Optional[Circuit] = None):
        self.result = result
        self.circuit = circuit

    def get_results_description(self, include_wire_currents: bool = False) -> str:
        """
        Generate comprehensive description of analysis results.
        """
        result = self.result
        if not result.is_valid:
            description = f"Analysis failed: {result.error}\n"
            return description + self._format_warnings()

        method = result.method.value if result.method else "unknown"
        topology = result.topology.value if result.topology else "unknown"
        if result.frequency:
            heading = f"AC Analysis Results at {format_value(result.frequency, 'Hz')}"
        else:
            heading = "DC Analysis Results"
        description = f"{heading} ({method}, {topology}):\n"
        description += self._format_node_voltages()
        description += self._format_component_currents()
        if include_wire_currents:
            description += self._format_wire_currents()
        description += self._format_power()
        description += self._format_warnings()
        return description

    def _format_node_voltages(self) -> str:
        description = "Node Voltages:\n"
        voltages = self.result.node_voltages
        if not voltages:
            return description + "  No node voltage data.\n\n"

        for node_id in sorted(voltages):
            ground_status = " (Ground)" if node_id == self.result.ground_id else ""
            description += f"  Node {node_id}{ground_status}: {format_value(voltages[node_id], 'V')}\n"
        return description + "\n"

    def _format_component_currents(self) -> str:
        description = "Component Currents:\n"
        components = self.result.component_results
        if not components:
            return description + "  No component current data.\n\n"

        for component_id, values in components.items():
            current = values.current
            arrow = self._arrow(current)
            name = self._name(component_id)
            description += (f"  {name}: {format_value(abs(current), 'A')} {arrow}, "
                            f"{format_value(values.voltage, 'V')}, {format_value(values.power, 'W')}\n")
        return description + "\n"

    def _format_wire_currents(self) -> str:
        description = "Wire Currents (Conventional Current Flow):\n"
        wires = self.result.wire_results
        if not wires:
            return description + "  No wire current data.\n\n"

        for wire_id, values in wires.items():
            current = values.current
            if abs(current) <= 1e-9:
                flow = "No current"
            elif self._real(current) > 0:
                flow = "start to end"
            else:
                flow = "end to start"
            description += f"  {self._name(wire_id)}: {format_value(abs(current), 'A')} {self._arrow(current)} ({flow})\n"
        return description + "\n"

    def _format_power(self) -> str:
        power = self.result.power
        if power is None:
            return ""
        description = "Power:\n"
        description += f"  Supplied: {format_value(power.supplied, 'W')}\n"
        description += f"  Dissipated: {format_value(power.dissipated, 'W')}\n"
        if power.stored_energy:
            description += f"  Stored: {format_value(power.stored_energy, 'J')}\n"
        description += f"  Efficiency: {power.efficiency:.1f}%\n"
        for spot in power.hot_spots:
            description += f"  Hot spot: {spot.label} at {spot.temperature:.1f} °C\n"
        return description + "\n"

    def _format_warnings(self) -> str:
        if not self.result.warnings:
            return ""
        description = "Warnings:\n"
        for warning in self.result.warnings:
            description += f"  - {warning}\n"
        return description

    def _name(self, item_id: str) -> str:
        if self.circuit is not None:
            item = self.circuit.get_component(item_id) or self.circuit.get_wire(item_id)
            if item is not None:
                return item.name
        return item_id

    @staticmethod
    def _real(value) -> float:
        return value.real if isinstance(value, complex) else value

    def _arrow(self, value) -> str:
        real = self._real(value)
        if abs(value) <= 1e-12:
            return "-"
        return "→" if real >= 0 else "←"

    def get_summary_stats(self) -> Dict[str, float]:
        """Get summary statistics of the analysis results."""
        voltages: List[float] = [abs(v) if isinstance(v, complex) else v
                                 for v in self.result.node_voltages.values()]
        currents: List[float] = [abs(c.current) for c in self.result.component_results.values()]
        return {
            'num_nodes': len(voltages),
            'num_components': len(self.result.component_results),
            'num_wires': len(self.result.wire_results),
            'max_voltage': max(voltages) if voltages else 0,
            'min_voltage': min(voltages) if voltages else 0,
            'max_current': max(currents) if currents else 0,
            'min_current': min(currents) if currents else 0,
        }
