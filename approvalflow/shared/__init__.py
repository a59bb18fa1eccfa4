"""
Shared Kernel Module
====================

Shared infrastructure and domain elements used by both bounded contexts
(Approvals and Escalation).

Architecture Pattern: Modular Monolith
- Each module (approvals, escalation) is a bounded context
- Shared kernel holds the work item, notification intent and the
  organizational hierarchy port, which both contexts speak
- Generic infrastructure (logging, middleware) lives here too

DO NOT add approval chain or escalation rules logic to the shared kernel.
"""

__version__ = "1.0.0"
