"""
Escalation Module
=================

Bounded Context for SLA monitoring of open work items.

Responsibilities:
- Classify open work items as on_track, at_risk or breached
- Escalate breached items to the parent (or root) workspace, once per
  overdue episode
- Hot-reload per-item-type escalation rules from YAML
- Run the periodic sweeps in the background
"""

__version__ = "1.0.0"
