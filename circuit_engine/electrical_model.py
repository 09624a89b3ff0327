"""
Per-component electrical laws: voltage/current relations, power, impedance,
stored energy and the thermal and waveform derivatives used by power analysis.

Each component type has a ComponentModel; ElectricalModel dispatches on the
closed ComponentType enum and refuses types without a registered model.
"""

import cmath
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Tuple

import numpy as np

from .components import Component, ComponentType, SourceWaveform
from .config import (BOLTZMANN_CONSTANT, DEFAULT_CURRENT_DENSITY_LIMIT, DEFAULT_TIME_STEP,
                     MATRIX_TOLERANCE, MAX_CURRENT_DENSITY, MAX_RESISTANCE_WARNING,
                     MAX_SOURCE_CURRENT_WARNING, MAX_SOURCE_VOLTAGE_WARNING,
                     MIN_RESISTANCE_WARNING, REFERENCE_TEMPERATURE,
                     RESISTOR_DERATING_START, RESISTOR_THERMAL_RESISTANCE)
from .exceptions import StructuralError

UNDEFINED_IMPEDANCE = complex(math.inf, 0.0)


def is_undefined(impedance: complex) -> bool:
    """True for the open-circuit sentinel or any non-finite impedance"""
    return not (math.isfinite(impedance.real) and math.isfinite(impedance.imag))


def angular_frequency(frequency: float) -> float:
    return 2 * math.pi * frequency


class ComponentModel(ABC):
    """Abstract base class for component models"""

    def __init__(self, tolerance: float = MATRIX_TOLERANCE):
        self.tolerance = tolerance

    @abstractmethod
    def voltage(self, component: Component, current: float, dt: float = DEFAULT_TIME_STEP) -> float:
        """Voltage across the component for the given current"""
        pass

    @abstractmethod
    def current(self, component: Component, voltage: float, dt: float = DEFAULT_TIME_STEP) -> float:
        """Current through the component for the given voltage"""
        pass

    @abstractmethod
    def impedance(self, component: Component, frequency: float = 0.0) -> complex:
        """Complex impedance at the given frequency"""
        pass

    def power(self, component: Component, voltage: float, current: float) -> float:
        return voltage * current

    def stored_energy(self, component: Component, voltage: float, current: float) -> float:
        return 0.0


class ResistorModel(ComponentModel):
    """Resistor with linear temperature coefficient and optional tap"""

    def effective_resistance(self, component: Component) -> float:
        resistance = component.value
        temp_delta = component.temperature - REFERENCE_TEMPERATURE
        resistance *= 1 + component.temp_coefficient * temp_delta / 1e6
        if component.is_variable:
            resistance *= component.tap_position
        return resistance

    def voltage(self, component, current, dt=DEFAULT_TIME_STEP):
        return current * self.effective_resistance(component)

    def current(self, component, voltage, dt=DEFAULT_TIME_STEP):
        resistance = self.effective_resistance(component)
        return voltage / resistance if resistance > self.tolerance else 0.0

    def power(self, component, voltage, current):
        resistance = self.effective_resistance(component)
        if abs(current) > self.tolerance:
            return current * current * resistance
        if abs(voltage) > self.tolerance and resistance > self.tolerance:
            return voltage * voltage / resistance
        return abs(voltage * current)

    def impedance(self, component, frequency=0.0):
        return complex(self.effective_resistance(component), 0.0)


class CapacitorModel(ComponentModel):
    """Capacitor; open at DC, forward Euler for time-stepped excitation"""

    def voltage(self, component, current, dt=DEFAULT_TIME_STEP):
        previous = component.voltage or 0.0
        if abs(current) < self.tolerance or component.value <= 0:
            return previous
        return previous + current * dt / component.value

    def current(self, component, voltage, dt=DEFAULT_TIME_STEP):
        if dt <= 0:
            return 0.0
        previous = component.voltage or 0.0
        return component.value * (voltage - previous) / dt

    def impedance(self, component, frequency=0.0):
        omega = angular_frequency(frequency)
        if omega == 0 or component.value <= 0:
            return UNDEFINED_IMPEDANCE
        return complex(0.0, -1.0 / (omega * component.value))

    def stored_energy(self, component, voltage, current):
        return 0.5 * component.value * voltage * voltage


class InductorModel(ComponentModel):
    """Inductor; short at DC, forward Euler for time-stepped excitation"""

    def voltage(self, component, current, dt=DEFAULT_TIME_STEP):
        previous = component.current or 0.0
        if abs(current - previous) < self.tolerance or dt <= 0:
            return 0.0
        return component.value * (current - previous) / dt

    def current(self, component, voltage, dt=DEFAULT_TIME_STEP):
        previous = component.current or 0.0
        if dt <= 0 or component.value <= 0:
            return previous
        return previous + voltage * dt / component.value

    def impedance(self, component, frequency=0.0):
        return complex(0.0, angular_frequency(frequency) * component.value)

    def stored_energy(self, component, voltage, current):
        return 0.5 * component.value * current * current


class DiodeModel(ComponentModel):
    """Piecewise-linear diode: Vf + I*Rs forward, large resistance in reverse"""

    def voltage(self, component, current, dt=DEFAULT_TIME_STEP):
        if current > 0:
            return component.forward_voltage + current * component.series_resistance
        return current * component.reverse_resistance

    def current(self, component, voltage, dt=DEFAULT_TIME_STEP):
        if voltage > component.forward_voltage and component.series_resistance > 0:
            return (voltage - component.forward_voltage) / component.series_resistance
        return component.saturation_current

    def power(self, component, voltage, current):
        return abs(voltage * current)

    def impedance(self, component, frequency=0.0):
        return complex(component.series_resistance, 0.0)


class VoltageSourceModel(ComponentModel):
    """Voltage source with internal resistance and output compliance"""

    def voltage(self, component, current, dt=DEFAULT_TIME_STEP):
        compliance = component.effective_compliance
        output = component.value - current * component.internal_resistance
        return max(-compliance, min(compliance, output))

    def current(self, component, voltage, dt=DEFAULT_TIME_STEP):
        # Set by the surrounding circuit
        return 0.0

    def impedance(self, component, frequency=0.0):
        return complex(component.internal_resistance, 0.0)


class CurrentSourceModel(ComponentModel):
    """Current source; its voltage is set by the surrounding circuit"""

    def voltage(self, component, current, dt=DEFAULT_TIME_STEP):
        return 0.0

    def current(self, component, voltage, dt=DEFAULT_TIME_STEP):
        return component.value

    def impedance(self, component, frequency=0.0):
        return complex(component.internal_resistance, 0.0)


class GroundModel(ComponentModel):

    def voltage(self, component, current, dt=DEFAULT_TIME_STEP):
        return 0.0

    def current(self, component, voltage, dt=DEFAULT_TIME_STEP):
        return 0.0

    def impedance(self, component, frequency=0.0):
        return complex(0.0, 0.0)


MODEL_CLASSES = {
    ComponentType.RESISTOR: ResistorModel,
    ComponentType.CAPACITOR: CapacitorModel,
    ComponentType.INDUCTOR: InductorModel,
    ComponentType.DIODE: DiodeModel,
    ComponentType.VOLTAGE_SOURCE: VoltageSourceModel,
    ComponentType.CURRENT_SOURCE: CurrentSourceModel,
    ComponentType.GROUND: GroundModel,
}

_unmodelled = set(ComponentType) - set(MODEL_CLASSES)
if _unmodelled:
    raise ImportError(f"No electrical model for: {sorted(t.value for t in _unmodelled)}")


@dataclass
class ResistorThermal:
    """Steady-state thermal estimate for a resistor"""
    power: float
    temperature: float
    temperature_rise: float
    thermal_resistance: float
    derating: float
    max_safe_power: float

    @property
    def overloaded(self) -> bool:
        return abs(self.power) > self.max_safe_power


class ElectricalModel:
    """
    Facade over the per-type component models.

    All formulas are pure: nothing here mutates the component.
    """

    def __init__(self, tolerance: float = MATRIX_TOLERANCE):
        self.tolerance = tolerance
        self._models: Dict[ComponentType, ComponentModel] = {
            component_type: model_class(tolerance) for component_type, model_class in MODEL_CLASSES.items()
        }

    def model_for(self, component: Component) -> ComponentModel:
        try:
            return self._models[component.type]
        except KeyError:
            raise StructuralError(f"Unsupported component type: {component.type!r}")

    def voltage(self, component: Component, current: float, dt: float = DEFAULT_TIME_STEP) -> float:
        return self.model_for(component).voltage(component, current, dt)

    def current(self, component: Component, voltage: float, dt: float = DEFAULT_TIME_STEP) -> float:
        return self.model_for(component).current(component, voltage, dt)

    def power(self, component: Component, voltage: float, current: float) -> float:
        return self.model_for(component).power(component, voltage, current)

    def impedance(self, component: Component, frequency: float = 0.0) -> complex:
        return self.model_for(component).impedance(component, frequency)

    def stored_energy(self, component: Component, voltage: float, current: float) -> float:
        return self.model_for(component).stored_energy(component, voltage, current)

    def effective_resistance(self, component: Component) -> float:
        return self._models[ComponentType.RESISTOR].effective_resistance(component)

    def admittance(self, impedance: complex) -> complex:
        """conj(Z)/|Z|^2, or the undefined sentinel when Z is open or a short"""
        if is_undefined(impedance):
            return UNDEFINED_IMPEDANCE
        denominator = impedance.real ** 2 + impedance.imag ** 2
        if denominator < self.tolerance:
            return UNDEFINED_IMPEDANCE
        return impedance.conjugate() / denominator

    # Thermal and noise

    def resistor_thermal(self, component: Component, power: float,
                         ambient: float = REFERENCE_TEMPERATURE) -> ResistorThermal:
        temperature_rise = power * RESISTOR_THERMAL_RESISTANCE
        temperature = ambient + temperature_rise
        derating = 1.0
        if temperature > RESISTOR_DERATING_START:
            derating = max(0.0, 1 - (temperature - RESISTOR_DERATING_START) / 100)
        return ResistorThermal(
            power=power,
            temperature=temperature,
            temperature_rise=temperature_rise,
            thermal_resistance=RESISTOR_THERMAL_RESISTANCE,
            derating=derating,
            max_safe_power=component.power_rating * derating,
        )

    def thermal_noise(self, resistance: float, temperature: float, bandwidth: float) -> Dict[str, float]:
        """Johnson noise of a resistor; temperature in degC"""
        kelvin = temperature + 273.15
        noise_voltage = math.sqrt(4 * BOLTZMANN_CONSTANT * kelvin * resistance * bandwidth)
        noise_power = noise_voltage ** 2 / resistance if resistance > 0 else 0.0
        return {
            'voltage_rms': noise_voltage,
            'voltage_peak_to_peak': noise_voltage * 6.6,
            'power': noise_power,
            'temperature': temperature,
            'bandwidth': bandwidth,
        }

    # Sources

    def source_output(self, component: Component, time: float = 0.0, output_current: float = 0.0) -> float:
        """Instantaneous source output including internal drop and compliance clamp"""
        value = self._waveform_value(component, time)
        if component.type is ComponentType.VOLTAGE_SOURCE:
            if component.internal_resistance > 0 and output_current != 0:
                value -= output_current * component.internal_resistance
            compliance = component.effective_compliance
            value = max(-compliance, min(compliance, value))
        return value

    def _waveform_value(self, component: Component, time: float) -> float:
        waveform = component.waveform
        if waveform is SourceWaveform.DC:
            return component.value
        if waveform is SourceWaveform.AC:
            return (component.effective_amplitude
                    * math.sin(2 * math.pi * component.frequency * time + component.phase)
                    + component.offset)
        if waveform is SourceWaveform.PULSE:
            period = 1.0 / component.frequency
            return component.value if (time % period) < period * component.duty_cycle else 0.0
        if waveform is SourceWaveform.RAMP:
            period = component.rise_time + component.fall_time
            cycle_time = time % period
            if cycle_time < component.rise_time:
                return component.value * cycle_time / component.rise_time
            return component.value * (1 - (cycle_time - component.rise_time) / component.fall_time)
        raise StructuralError(f"Unsupported source waveform: {waveform!r}")

    def generate_waveform(self, component: Component, duration: float = 1.0,
                          sample_rate: float = 1000.0) -> Tuple[np.ndarray, np.ndarray]:
        samples = int(math.floor(duration * sample_rate))
        times = np.arange(samples) / sample_rate
        values = np.array([self.source_output(component, t) for t in times], dtype=float)
        return times, values

    def waveform_parameters(self, component: Component, duration: float = 1.0,
                            sample_rate: float = 1000.0) -> Dict[str, float]:
        """Average, RMS, peak values and shape factors of the source waveform"""
        _, values = self.generate_waveform(component, duration, sample_rate)
        if values.size == 0:
            return {'average': 0.0, 'rms': 0.0, 'peak': 0.0, 'valley': 0.0,
                    'peak_to_peak': 0.0, 'form_factor': math.inf, 'crest_factor': math.inf}
        average = float(np.mean(values))
        rms = float(np.sqrt(np.mean(values ** 2)))
        peak = float(np.max(values))
        valley = float(np.min(values))
        return {
            'average': average,
            'rms': rms,
            'peak': peak,
            'valley': valley,
            'peak_to_peak': peak - valley,
            'form_factor': rms / abs(average) if abs(average) > self.tolerance else math.inf,
            'crest_factor': peak / rms if rms > self.tolerance else math.inf,
        }

    def harmonic_analysis(self, component: Component) -> Dict[str, object]:
        """Fourier amplitudes of the standard waveforms (odd harmonics 3 to 15)"""
        waveform = component.waveform
        harmonics: List[Dict[str, float]] = []
        if waveform is SourceWaveform.DC:
            fundamental = component.value
        elif waveform is SourceWaveform.AC:
            fundamental = component.effective_amplitude
        elif waveform is SourceWaveform.PULSE:
            fundamental = (4 * component.value / math.pi) * component.duty_cycle
            harmonics = [{'order': n, 'amplitude': fundamental / n} for n in range(3, 16, 2)]
        elif waveform is SourceWaveform.RAMP:
            fundamental = 8 * component.value / (math.pi ** 2)
            harmonics = [{'order': n, 'amplitude': fundamental / (n * n)} for n in range(3, 16, 2)]
        else:
            raise StructuralError(f"Unsupported source waveform: {waveform!r}")
        return {'fundamental': fundamental, 'harmonics': harmonics}

    def voltage_regulation(self, component: Component, output_current: float) -> float:
        """Internal-resistance drop as a percentage of the nominal voltage"""
        if component.internal_resistance <= 0 or component.value == 0:
            return 0.0
        return abs(output_current * component.internal_resistance / component.value) * 100

    # Wires

    @staticmethod
    def current_density(current: float, cross_section: float) -> float:
        if cross_section <= 0:
            return math.inf
        return abs(current) / cross_section

    @staticmethod
    def current_density_limit(material: str) -> float:
        return MAX_CURRENT_DENSITY.get(material, DEFAULT_CURRENT_DENSITY_LIMIT)

    @staticmethod
    def phase(value: complex) -> float:
        return cmath.phase(value)


def validate_component(component: Component) -> Tuple[List[str], List[str]]:
    """Value checks for a single component, returned as (errors, warnings)"""
    errors: List[str] = []
    warnings: List[str] = []
    name = component.name
    value = component.value

    if not isinstance(value, (int, float)) or not math.isfinite(value):
        errors.append(f"{name}: value is not a valid number")
        return errors, warnings

    component_type = component.type
    if component_type is ComponentType.RESISTOR:
        if value <= 0:
            errors.append(f"{name}: resistance must be greater than zero")
        elif value < MIN_RESISTANCE_WARNING:
            warnings.append(f"{name}: very low resistance may cause numerical problems")
        elif value > MAX_RESISTANCE_WARNING:
            warnings.append(f"{name}: very high resistance may cause numerical problems")
        if component.is_variable and not 0 <= component.tap_position <= 1:
            errors.append(f"{name}: tap position must be within [0, 1]")
    elif component_type is ComponentType.VOLTAGE_SOURCE:
        if abs(value) > MAX_SOURCE_VOLTAGE_WARNING:
            warnings.append(f"{name}: very high voltage, check safety")
        if component.internal_resistance < 0:
            errors.append(f"{name}: internal resistance cannot be negative")
    elif component_type is ComponentType.CURRENT_SOURCE:
        if abs(value) > MAX_SOURCE_CURRENT_WARNING:
            warnings.append(f"{name}: very high current, check safety")
    elif component_type is ComponentType.CAPACITOR:
        if value <= 0:
            errors.append(f"{name}: capacitance must be greater than zero")
    elif component_type is ComponentType.INDUCTOR:
        if value <= 0:
            errors.append(f"{name}: inductance must be greater than zero")
    elif component_type is ComponentType.DIODE:
        if component.series_resistance <= 0:
            errors.append(f"{name}: diode series resistance must be greater than zero")
    elif component_type is ComponentType.GROUND:
        pass
    else:
        raise StructuralError(f"Unsupported component type: {component_type!r}")

    return errors, warnings
