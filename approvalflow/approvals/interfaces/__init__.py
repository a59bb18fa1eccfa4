"""
Approvals Interfaces Layer
==========================

FastAPI route handlers for the approvals module.
"""

from approvalflow.approvals.interfaces.controllers import router as approvals_router

__all__ = ["approvals_router"]
