"""
Result assembly modules for circuit analysis.

Turn solved linear systems into node voltages, branch and wire currents,
power figures and readable reports.
"""

from .current_calculator import ComponentResult, CurrentCalculator, WireResult
from .power_analysis import HotSpot, PowerAnalyzer, PowerReport, check_physical_limits
from .results_formatter import ResultsFormatter, format_value

__all__ = ['ComponentResult', 'CurrentCalculator', 'WireResult', 'HotSpot', 'PowerAnalyzer',
           'PowerReport', 'check_physical_limits', 'ResultsFormatter', 'format_value']
