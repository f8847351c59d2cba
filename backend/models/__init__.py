"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  CRM - Models Package                                                        ║
║                                                                              ║
║  from models import ContactStatus, BatchImportRequest, sanitize_client, ... ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from models.client import (
    ContactStatus,
    CONTACT_STATUSES,
    DEFAULT_CONTACT_STATUS,
    PaymentMethodEntry,
    PaymentMethodError,
    StatusChange,
    ClientStatusUpdate,
    ClientNoteCreate,
    BatchImportOptions,
    BatchImportRequest,
    add_payment_method,
    set_default_payment_method,
    remove_payment_method,
    build_status_change,
    sanitize_client,
)

__all__ = [
    "ContactStatus",
    "CONTACT_STATUSES",
    "DEFAULT_CONTACT_STATUS",
    "PaymentMethodEntry",
    "PaymentMethodError",
    "StatusChange",
    "ClientStatusUpdate",
    "ClientNoteCreate",
    "BatchImportOptions",
    "BatchImportRequest",
    "add_payment_method",
    "set_default_payment_method",
    "remove_payment_method",
    "build_status_change",
    "sanitize_client",
]
