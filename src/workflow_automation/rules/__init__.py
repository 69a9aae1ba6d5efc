"""Rules engine module."""

from .engine import RuleEngine, RuleOutcome, ProcessResult
from .evaluator import ConditionEvaluator

__all__ = ["RuleEngine", "RuleOutcome", "ProcessResult", "ConditionEvaluator"]
