"""Sensor and simulation telemetry generation."""

from edgesim.telemetry.generator import TelemetryGenerator
from edgesim.telemetry.sensors import SENSOR_RANGES, SensorGenerator, draw_anomaly, generate_values, phase_for

__all__ = ['SENSOR_RANGES', 'SensorGenerator', 'TelemetryGenerator', 'draw_anomaly', 'generate_values', 'phase_for']
