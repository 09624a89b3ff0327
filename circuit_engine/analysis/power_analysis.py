"""
Power and thermal analysis of solved circuits, plus the plausibility checks
that turn suspicious results into warnings.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..components import Circuit, ComponentType
from ..config import (HOTSPOT_TEMPERATURE, MAX_PLAUSIBLE_CURRENT, MAX_PLAUSIBLE_POWER,
                      MAX_PLAUSIBLE_VOLTAGE, POWER_BALANCE_TOLERANCE, REFERENCE_TEMPERATURE,
                      REGULATION_LIMIT)
from ..electrical_model import ElectricalModel, ResistorThermal
from ..exceptions import ValidationWarning
from .current_calculator import ComponentResult, WireResult

logger = logging.getLogger(__name__)


@dataclass
class HotSpot:
    component_id: str
    label: str
    temperature: float
    power: float


@dataclass
class PowerReport:
    """Circuit-wide power figures in W, stored energy in J"""
    supplied: float = 0.0
    dissipated: float = 0.0
    stored_energy: float = 0.0
    resistive_losses: float = 0.0
    wire_losses: float = 0.0
    other_losses: float = 0.0
    component_power: Dict[str, float] = field(default_factory=dict)
    thermal: Dict[str, ResistorThermal] = field(default_factory=dict)
    hot_spots: List[HotSpot] = field(default_factory=list)

    @property
    def useful(self) -> float:
        return self.supplied - self.wire_losses - self.other_losses

    @property
    def efficiency(self) -> float:
        """Share of supplied power reaching resistive loads, in percent"""
        if self.supplied <= 0:
            return 0.0
        return self.resistive_losses / self.supplied * 100

    @property
    def balance_error(self) -> float:
        return abs(self.supplied - self.dissipated)

    @property
    def relative_balance_error(self) -> float:
        if self.supplied <= 0:
            return 0.0
        return self.balance_error / self.supplied

    @property
    def max_temperature(self) -> float:
        return max([REFERENCE_TEMPERATURE] + [t.temperature for t in self.thermal.values()])


class PowerAnalyzer:
    """Builds a PowerReport from per-item results"""

    def __init__(self, model: Optional[ElectricalModel] = None, ambient: float = REFERENCE_TEMPERATURE):
        self.model = model or ElectricalModel()
        self.ambient = ambient

    def analyze(self, circuit: Circuit, components: Dict[str, ComponentResult],
                wires: Dict[str, WireResult]) -> PowerReport:
        report = PowerReport()
        for component in circuit.components:
            result = components.get(component.id)
            if result is None:
                continue
            power = result.power
            report.component_power[component.id] = power
            component_type = component.type

            if component_type.is_source:
                report.supplied += power
            elif component_type is ComponentType.RESISTOR:
                report.resistive_losses += power
                thermal = self.model.resistor_thermal(component, power, self.ambient)
                report.thermal[component.id] = thermal
                if thermal.temperature > HOTSPOT_TEMPERATURE:
                    report.hot_spots.append(HotSpot(component.id, component.name, thermal.temperature, power))
            elif component_type in (ComponentType.CAPACITOR, ComponentType.INDUCTOR):
                report.stored_energy += abs(self.model.stored_energy(
                    component, abs(result.voltage), abs(result.current)))
            elif component_type is ComponentType.GROUND:
                continue
            else:
                report.other_losses += abs(power)

        report.wire_losses = sum(w.power for w in wires.values())
        report.dissipated = report.resistive_losses + report.wire_losses + report.other_losses
        logger.info(f"Power: supplied {report.supplied:.6g} W, dissipated {report.dissipated:.6g} W, "
                    f"stored {report.stored_energy:.6g} J")
        return report


def check_physical_limits(circuit: Circuit, components: Dict[str, ComponentResult],
                          wires: Dict[str, WireResult], report: PowerReport,
                          model: Optional[ElectricalModel] = None) -> List[ValidationWarning]:
    """Warnings for implausible or unsafe operating points"""
    model = model or ElectricalModel()
    warnings: List[ValidationWarning] = []

    for component in circuit.components:
        result = components.get(component.id)
        if result is None:
            continue
        name = component.name
        if abs(result.current) > MAX_PLAUSIBLE_CURRENT:
            warnings.append(ValidationWarning(name, f"very high current ({abs(result.current):.3g} A)"))
        if abs(result.voltage) > MAX_PLAUSIBLE_VOLTAGE:
            warnings.append(ValidationWarning(name, f"very high voltage ({abs(result.voltage):.3g} V)"))
        if abs(result.power) > MAX_PLAUSIBLE_POWER:
            warnings.append(ValidationWarning(name, f"very high power ({abs(result.power):.3g} W)"))

        if component.type is ComponentType.VOLTAGE_SOURCE:
            regulation = model.voltage_regulation(component, abs(result.current))
            if regulation > REGULATION_LIMIT:
                warnings.append(ValidationWarning(name, f"poor voltage regulation ({regulation:.1f}%)"))
        elif component.type is ComponentType.RESISTOR:
            thermal = report.thermal.get(component.id)
            if thermal is not None and thermal.overloaded:
                warnings.append(ValidationWarning(
                    name, f"dissipates {abs(result.power):.3g} W, above its derated rating "
                          f"of {thermal.max_safe_power:.3g} W"))

    for wire in circuit.wires:
        result = wires.get(wire.id)
        if result is None:
            continue
        limit = model.current_density_limit(wire.material)
        if result.current_density > limit:
            warnings.append(ValidationWarning(
                wire.name, f"current density {result.current_density:.3g} A/m^2 exceeds {wire.material} limit"))
        if abs(result.current) > wire.max_current:
            warnings.append(ValidationWarning(wire.name, f"current exceeds wire rating of {wire.max_current} A"))

    if report.supplied > 0 and report.relative_balance_error > POWER_BALANCE_TOLERANCE:
        warnings.append(ValidationWarning(
            "", f"power balance error of {report.relative_balance_error * 100:.2f}%"))

    for warning in warnings:
        logger.warning(f"Physical check: {warning}")
    return warnings
