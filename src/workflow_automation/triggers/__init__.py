"""Event intake for the automation engine."""

from .detector import TriggerDetector

__all__ = ["TriggerDetector"]
