"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  CRM - Modèle Client                                                         ║
║                                                                              ║
║  RÈGLES PAIEMENT:                                                            ║
║  - paymentMethod ne contient JAMAIS de numéro de carte complet ni de CVV     ║
║  - Au plus 1 moyen de paiement isDefault=True                                ║
║  - Le premier moyen ajouté devient automatiquement le défaut                 ║
║                                                                              ║
║  RÈGLE: statusHistory est append-only (jamais réordonné, jamais tronqué)     ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import copy
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ContactStatus(str, Enum):
    SAMPLING = "Sampling"
    NEW_PROSPECT = "New Prospect"
    UNCATEGORIZED = "Uncategorized"
    CLOSED_LOST = "Closed lost"
    INITIAL_CONTACT = "Initial Contact"
    CLOSED_WON = "Closed won"
    COMMITTED = "Committed"
    CONSIDERATION = "Consideration"


# Pour validation
CONTACT_STATUSES = [s.value for s in ContactStatus]
DEFAULT_CONTACT_STATUS = ContactStatus.UNCATEGORIZED.value

# Clés qui trahissent des données carte brutes
RAW_CARD_KEYS = ("cardNumber", "card_number", "number", "cvv", "cvc", "securityCode")


class PaymentMethodError(Exception):
    """Raised when a payment method operation would break the vault rules"""
    pass


class PaymentMethodEntry(BaseModel):
    """Moyen de paiement tokenisé (affichage uniquement)"""
    id: str
    brand: str
    last4: str = Field(pattern=r"^\d{4}$")
    expMonth: int = Field(ge=1, le=12)
    expYear: int = Field(ge=2020)
    nameOnCard: Optional[str] = Field(default=None, max_length=100)
    billingZip: Optional[str] = Field(default=None, max_length=20)
    isDefault: bool = False
    createdAt: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class StatusChange(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    status: ContactStatus
    changedAt: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    changedBy: str
    notes: str = Field(default="", max_length=500)


# ==================== REQUEST MODELS ====================

class ClientStatusUpdate(BaseModel):
    """Changement de statut (Kanban)"""
    status: ContactStatus
    notes: Optional[str] = Field(default="", max_length=500)


class ClientNoteCreate(BaseModel):
    note: str = Field(min_length=1, max_length=500)


class BatchImportOptions(BaseModel):
    skipValidation: bool = True
    skipPaymentTokenization: bool = True


class BatchImportRequest(BaseModel):
    """Import JSON (fast path): lignes déjà assainies côté client"""
    rows: List[Any]
    batchSize: Optional[int] = None
    options: BatchImportOptions = Field(default_factory=BatchImportOptions)


# ==================== PAYMENT VAULT ====================

def _methods(payment_method: Optional[Dict]) -> List[Dict]:
    if not payment_method:
        return []
    return list(payment_method.get("paymentMethods") or [])


def add_payment_method(payment_method: Optional[Dict], entry: Dict) -> Dict:
    """
    Ajoute un moyen de paiement tokenisé et retourne le nouveau sous-document.

    - Refuse toute donnée carte brute (numéro complet, CVV)
    - Premier moyen ou isDefault demandé → devient le seul défaut
    """
    if any(key in entry for key in RAW_CARD_KEYS):
        raise PaymentMethodError("Cannot store raw card data. Please use tokenized payment information.")

    result = copy.deepcopy(payment_method) if payment_method else {}
    methods = _methods(result)

    validated = PaymentMethodEntry(**entry).model_dump()
    if not methods or validated["isDefault"]:
        for pm in methods:
            pm["isDefault"] = False
        validated["isDefault"] = True

    methods.append(validated)
    result["paymentMethods"] = methods
    return result


def set_default_payment_method(payment_method: Optional[Dict], payment_method_id: str) -> Dict:
    methods = _methods(payment_method)
    if not methods:
        raise PaymentMethodError("No payment methods available")
    if not any(pm.get("id") == payment_method_id for pm in methods):
        raise PaymentMethodError("Payment method not found")

    result = copy.deepcopy(payment_method)
    for pm in result["paymentMethods"]:
        pm["isDefault"] = pm.get("id") == payment_method_id
    return result


def remove_payment_method(payment_method: Optional[Dict], payment_method_id: str) -> Dict:
    """Supprime un moyen; si c'était le défaut, le premier restant le devient"""
    methods = _methods(payment_method)
    index = next((i for i, pm in enumerate(methods) if pm.get("id") == payment_method_id), None)
    if index is None:
        raise PaymentMethodError("Payment method not found")

    result = copy.deepcopy(payment_method)
    removed = result["paymentMethods"].pop(index)
    remaining = result["paymentMethods"]
    if removed.get("isDefault") and remaining:
        remaining[0]["isDefault"] = True
    return result


# ==================== STATUS HISTORY ====================

def build_status_change(status: str, changed_by: str, notes: str = "") -> Dict:
    """Entrée d'historique validée, à $push dans statusHistory"""
    return StatusChange(status=status, changedBy=changed_by, notes=notes or "").model_dump()


# ==================== SERIALIZATION ====================

def sanitize_client(client: Dict) -> Dict:
    """
    Version API d'un document client:
    - pas de stripeCustomerId
    - id des moyens de paiement conservés (handles locaux, jamais un id passerelle)
    """
    data = copy.deepcopy(client)
    data["id"] = data.pop("_id", data.get("id"))

    payment = data.get("paymentMethod")
    if payment:
        payment.pop("stripeCustomerId", None)

    methods = _methods(payment)
    data["hasPaymentMethod"] = bool(methods)
    parts = [data.get(k) for k in ("address", "city", "state", "postalCode")]
    data["fullAddress"] = ", ".join(p for p in parts if p)
    return data
