"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  CRM - Tokenisation des colonnes carte (import CSV legacy)                   ║
║                                                                              ║
║  Dérive une représentation affichable: brand, last4, expMonth, expYear       ║
║                                                                              ║
║  INVARIANTS:                                                                 ║
║  - le numéro complet n'est JAMAIS retourné                                   ║
║  - le CVV est vérifié en forme (3-4 chiffres) puis oublié                    ║
║  - détection de brand par motifs IIN, pas de validation réseau               ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import re
import uuid
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

MIN_PAN_DIGITS = 13
MAX_PAN_DIGITS = 19

BRAND_PATTERNS = (
    ("visa", re.compile(r"^4\d{12,18}$")),
    ("mastercard", re.compile(r"^(5[1-5]\d{14}|2(22[1-9]\d{12}|2[3-9]\d{13}|[3-6]\d{14}|7[01]\d{13}|720\d{12}))$")),
    ("amex", re.compile(r"^3[47]\d{13}$")),
    ("discover", re.compile(
        r"^(6011\d{12}|65\d{14}|64[4-9]\d{13}|622(12[6-9]|1[3-9]\d|[2-8]\d{2}|9([01]\d|2[0-5]))\d{10})$"
    )),
)
GENERIC_BRAND = "card"

EXPIRY_PATTERN = re.compile(r"^(\d{1,2})[/\-](\d{2,4})$")
CVV_PATTERN = re.compile(r"^\d{3,4}$")


class CardTokenizationError(Exception):
    """Carte non tokenisable; reason est un code court agrégé dans le résumé"""

    def __init__(self, reason: str, message: str = ""):
        super().__init__(message or reason)
        self.reason = reason


@dataclass
class PaymentRaw:
    """Canal latéral: colonnes carte extraites d'une ligne, jamais persistées telles quelles"""
    card_number: str = ""
    expiry: str = ""
    cvv: str = ""
    name_on_card: str = ""
    billing_zip: str = ""

    def is_empty(self) -> bool:
        return not any(
            (v or "").strip()
            for v in (self.card_number, self.expiry, self.cvv, self.name_on_card, self.billing_zip)
        )


@dataclass
class TokenizedCard:
    brand: str
    last4: str
    exp_month: int
    exp_year: int
    name_on_card: Optional[str] = None
    billing_zip: Optional[str] = None

    def to_payment_method(self, token_id: Optional[str] = None) -> Dict:
        """Entrée prête pour models.client.add_payment_method (toujours par défaut)"""
        return {
            "id": token_id or f"csv_{self.brand}_{self.last4}_{uuid.uuid4().hex[:12]}",
            "brand": self.brand,
            "last4": self.last4,
            "expMonth": self.exp_month,
            "expYear": self.exp_year,
            "nameOnCard": self.name_on_card or None,
            "billingZip": self.billing_zip or None,
            "isDefault": True,
        }


def card_digits(value) -> str:
    return re.sub(r"\D+", "", str(value or ""))


def detect_brand(pan: str) -> str:
    for brand, pattern in BRAND_PATTERNS:
        if pattern.match(pan):
            return brand
    return GENERIC_BRAND


def mask_card_number(value) -> Tuple[str, str]:
    """
    Version affichable d'un numéro: ("**** 4242", "4242").
    Moins de 4 chiffres → ("", "").
    """
    digits = card_digits(value)
    if len(digits) < 4:
        return "", ""
    last4 = digits[-4:]
    return f"**** {last4}", last4


def normalize_expiry(value) -> str:
    """
    Réécrit une date d'expiration texte en MM/YY.

    926 → 09/26, 0926 → 09/26, 9/26 → 09/26, 09-26 → 09/26.
    Les autres formes (ex: 09/2026) sont retournées telles quelles.
    """
    raw = str(value or "").strip()
    if not raw:
        return ""
    digits = card_digits(raw)

    # MYY
    if len(digits) == 3:
        return f"0{digits[0]}/{digits[1:]}"
    # MMYY
    if len(digits) == 4:
        return f"{digits[:2]}/{digits[2:]}"
    return raw


def parse_expiry(value) -> Tuple[int, int]:
    """
    (mois, année 4 chiffres). YY → 2000 + YY, mois borné à 1..12.
    Lève CardTokenizationError("invalid_expiry").
    """
    match = EXPIRY_PATTERN.match(normalize_expiry(value))
    if not match:
        raise CardTokenizationError("invalid_expiry", f"Unrecognized expiry: {value!r}")

    month = min(12, max(1, int(match.group(1))))
    year_text = match.group(2)
    if len(year_text) == 2:
        year = 2000 + int(year_text)
    elif len(year_text) == 4:
        year = int(year_text)
    else:
        raise CardTokenizationError("invalid_expiry", f"Unrecognized expiry year: {value!r}")
    return month, year


def is_valid_cvv_shape(value) -> bool:
    return bool(CVV_PATTERN.match(str(value or "").strip()))


def tokenize_card(raw: PaymentRaw) -> TokenizedCard:
    """
    Dérive une carte tokenisée depuis les colonnes legacy.

    Raisons d'échec (CardTokenizationError.reason):
    - invalid_card_number: moins de 13 ou plus de 19 chiffres
    - invalid_cvv: CVV présent mais pas 3-4 chiffres
    - invalid_expiry: expiration illisible
    """
    digits = card_digits(raw.card_number)
    if not (MIN_PAN_DIGITS <= len(digits) <= MAX_PAN_DIGITS):
        raise CardTokenizationError("invalid_card_number", f"Card number has {len(digits)} digits")

    if raw.cvv and not is_valid_cvv_shape(raw.cvv):
        raise CardTokenizationError("invalid_cvv")

    exp_month, exp_year = parse_expiry(raw.expiry)

    return TokenizedCard(
        brand=detect_brand(digits),
        last4=digits[-4:],
        exp_month=exp_month,
        exp_year=exp_year,
        name_on_card=(raw.name_on_card or "").strip() or None,
        billing_zip=(raw.billing_zip or "").strip() or None,
    )
