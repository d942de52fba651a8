"""Health monitoring, predictive risk and preventive action exports."""

from pipeline_resilience.monitoring.health import HealthMonitor
from pipeline_resilience.monitoring.preventive import (
    PreventiveActionRunner,
    default_preventive_actions,
)
from pipeline_resilience.monitoring.probes import ResourceProbe, TelemetryRecorder
from pipeline_resilience.monitoring.risk import (
    PredictiveRiskAssessor,
    assess_input_complexity,
)

__all__ = [
    "HealthMonitor",
    "PredictiveRiskAssessor",
    "PreventiveActionRunner",
    "ResourceProbe",
    "TelemetryRecorder",
    "assess_input_complexity",
    "default_preventive_actions",
]
