"""
Approval routing engine and SLA escalation watchdog.
"""

__version__ = "1.0.0"
