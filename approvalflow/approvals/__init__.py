"""
Approvals Module
================

Bounded Context for approval policy routing and chain execution.

Responsibilities:
- Select the policy governing a submitted work item
- Walk approval instances through their chain of levels
- Enforce self-approval and approver eligibility rules
- Auto-approve levels left open past the policy timeout
- Publish active instances to the escalation watchdog
"""

__version__ = "1.0.0"
