"""Signup flow handlers."""

from .audit import AuditTrail
from .crm_sync import CrmSync, is_paying
from .welcome_email import WelcomeEmail

__all__ = [
    "AuditTrail",
    "CrmSync",
    "WelcomeEmail",
    "is_paying",
]
