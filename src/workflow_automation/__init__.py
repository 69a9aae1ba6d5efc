"""
Transaction Workflow Automation Engine

Reacts to transaction-management events and applies workflow templates:
- Rule matching against status, task, document and date/time triggers
- Tracked executions with linear-backoff retries
- Durable retry queue and audit trail
"""

__version__ = "0.1.0"
