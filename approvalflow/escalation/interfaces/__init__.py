"""
Escalation Interfaces Layer
===========================

FastAPI route handlers for the escalation module.
"""

from approvalflow.escalation.interfaces.controllers import router as escalation_router

__all__ = ["escalation_router"]
