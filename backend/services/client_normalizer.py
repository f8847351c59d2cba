"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  CRM - Normalisation des lignes d'import clients                             ║
║                                                                              ║
║  Une ligne brute {en-tête libre: valeur} devient un brouillon ClientRecord:  ║
║  - en-têtes comparés sans casse, espaces, underscores ni tirets              ║
║  - table d'alias ORDONNÉE: champ canonique → orthographes acceptées          ║
║  - colonnes carte routées vers PaymentRaw, JAMAIS copiées dans le brouillon  ║
║  - name jamais vide (fallback jusqu'à "Unnamed Client")                      ║
║  - ownedBy = utilisateur importateur si ni owner ni ownedBy                  ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from services.payment_tokenizer import PaymentRaw, mask_card_number, normalize_expiry

UNNAMED_CLIENT = "Unnamed Client"

# Politique de coercition de forecastedAmount illisible
AMOUNT_OMIT = "omit"   # CSV: valeur laissée au validateur → omise + warning
AMOUNT_ZERO = "zero"   # JSON batch: 0


FIELD_ALIASES = (
    ("_id", ("_id", "id", "Client_id", "ClientId")),
    ("externalId", ("externalId", "external_id")),
    ("name", ("name", "Client Name", "customer name")),
    ("description", ("description", "desc")),
    ("owner", ("owner",)),
    ("ownedBy", ("ownedBy", "Owned By")),
    ("contactStatus", ("contactStatus", "Contact Status", "status")),
    ("contactType", ("contactType", "Contact Type", "type")),
    ("companyType", ("companyType", "Company Type")),
    ("phone", ("phone", "telephone", "mobile", "phoneNumber", "Phone Number")),
    ("email", ("email", "e-mail", "Email Address")),
    ("address", ("address", "street", "address1")),
    ("city", ("city", "town")),
    ("state", ("state", "province", "region")),
    ("postalCode", ("postalCode", "Postal Code", "zip")),
    ("website", ("website", "url")),
    ("facebookPage", ("facebookPage", "Facebook Page", "facebook", "fb")),
    ("industry", ("industry",)),
    ("forecastedAmount", ("forecastedAmount", "Forecasted Amount", "forecast", "amount")),
    ("interactionCount", ("interactionCount", "Interaction Count")),
    ("createdAt", ("createdAt", "Created At", "createdAtText")),
    ("projectedCloseDate", ("projectedCloseDate", "Projected Close Date")),
    ("profileImage", ("profileImage", "Profile Image", "avatar", "image")),
    ("lastNote", ("lastNote", "Last Note", "note", "notes")),
    ("fullName", ("fullName", "Full Name")),
    ("firstName", ("firstName", "First Name", "givenname")),
    ("lastName", ("lastName", "Last Name", "surname", "familyname")),
    ("company", ("company", "Company Name", "business", "organization", "org")),
    ("folderLink", ("folderLink", "folder", "drive", "gdrive")),
    ("defaultShippingTerms", ("defaultShippingTerms", "Default Shipping Terms")),
    ("defaultPaymentMethod", ("defaultPaymentMethod", "Default Payment Method")),
)

# Colonnes sensibles → PaymentRaw uniquement (attribut PaymentRaw, orthographes)
PAYMENT_ALIASES = (
    ("card_number", ("CC Number", "ccNumber", "CCNumber", "cardNumber", "ccNumberText", "Credit Card Number")),
    ("expiry", ("Expiration Date", "ccExp", "expirationDateText", "expDate", "expiry", "expiration", "mm/yy")),
    ("cvv", ("Security Code", "ccCvv", "securityCodeText", "cvv", "cvc")),
    ("name_on_card", ("Name on Card", "nameCC", "nameOnCard")),
    ("billing_zip", ("Zip Code", "zipCodeText", "billingZip")),
)

# Champs d'aide au calcul de name, jamais persistés
NAME_HELPER_FIELDS = ("firstName", "lastName", "company")


def normalize_key(header: Any) -> str:
    """'Forecasted Amount ' → 'forecastedamount' (casse, espaces, _ et - ignorés)"""
    text = str(header or "").replace("\u00a0", " ").lower()
    return re.sub(r"[\s_\-]+", "", text)


def _build_index(aliases) -> Dict[str, str]:
    index = {}
    for canonical, spellings in aliases:
        for spelling in (canonical,) + tuple(spellings):
            index.setdefault(normalize_key(spelling), canonical)
    return index


FIELD_INDEX = _build_index(FIELD_ALIASES)
PAYMENT_INDEX = _build_index(PAYMENT_ALIASES)


def resolve_field(header: Any) -> Optional[str]:
    """Champ canonique pour un en-tête, None si inconnu ou sensible"""
    key = normalize_key(header)
    if key in PAYMENT_INDEX:
        return None
    return FIELD_INDEX.get(key)


def resolve_payment_field(header: Any) -> Optional[str]:
    return PAYMENT_INDEX.get(normalize_key(header))


def coerce_amount(value: Any) -> Optional[float]:
    """'$12,500.00' → 12500.0 ; illisible → None"""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = re.sub(r"[^0-9.\-]", "", str(value or ""))
    try:
        return float(cleaned)
    except ValueError:
        return None


def coerce_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(float(str(value).strip().replace(",", "")))
    except (TypeError, ValueError):
        return None


@dataclass
class NormalizedRow:
    row_number: int
    data: Dict[str, Any]
    payment_raw: Optional[PaymentRaw] = None
    unmapped: List[str] = field(default_factory=list)


def derive_name(data: Mapping[str, Any]) -> str:
    """name → fullName → company → prénom + nom → email → phone → 'Unnamed Client'"""
    first_last = " ".join(p for p in (data.get("firstName"), data.get("lastName")) if p).strip()
    for candidate in (
        data.get("name"),
        data.get("fullName"),
        data.get("company"),
        first_last,
        data.get("email"),
        data.get("phone"),
    ):
        if candidate and str(candidate).strip():
            return str(candidate).strip()
    return UNNAMED_CLIENT


def _legacy_payment_fields(payment: PaymentRaw) -> Dict[str, str]:
    """Champs texte d'affichage: nom, numéro masqué, MM/YY, zip. Jamais de CVV."""
    fields = {}
    if payment.name_on_card:
        fields["nameCC"] = payment.name_on_card
    masked, last4 = mask_card_number(payment.card_number)
    if masked:
        fields["ccNumberText"] = masked
        fields["maskedCCLast4"] = last4
    if payment.expiry:
        fields["expirationDateText"] = normalize_expiry(payment.expiry)
    if payment.billing_zip:
        fields["zipCodeText"] = payment.billing_zip
    return fields


def normalize_row(
    raw: Mapping[str, Any],
    row_number: int,
    importing_user: str,
    amount_policy: str = AMOUNT_OMIT,
) -> NormalizedRow:
    """
    Mappe une ligne brute vers le schéma client.

    Args:
        raw: {en-tête: valeur} tel que lu (CSV ou JSON)
        row_number: numéro de ligne (1 = première ligne de données)
        importing_user: email de l'utilisateur qui importe (owner par défaut)
        amount_policy: AMOUNT_OMIT (CSV) ou AMOUNT_ZERO (JSON batch)
    """
    data: Dict[str, Any] = {}
    payment = PaymentRaw()
    unmapped = []

    for header, value in raw.items():
        if value is None:
            continue
        text = value.strip() if isinstance(value, str) else value
        if text == "":
            continue

        payment_attr = resolve_payment_field(header)
        if payment_attr:
            setattr(payment, payment_attr, str(text))
            continue

        target = resolve_field(header)
        if target is None:
            unmapped.append(str(header))
            continue
        # Premier en-tête non vide gagne (ex: "Client_id" et "id")
        data.setdefault(target, text)

    if "_id" in data:
        data["_id"] = str(data["_id"]).strip()
        data.setdefault("externalId", data["_id"])

    if "email" in data:
        data["email"] = str(data["email"]).strip().lower()

    if "forecastedAmount" in data:
        amount = coerce_amount(data["forecastedAmount"])
        if amount is not None:
            data["forecastedAmount"] = amount
        elif amount_policy == AMOUNT_ZERO:
            data["forecastedAmount"] = 0.0

    if "interactionCount" in data and amount_policy == AMOUNT_ZERO:
        data["interactionCount"] = max(coerce_int(data["interactionCount"]) or 0, 0)

    if "createdAt" in data:
        data["createdAtText"] = str(data["createdAt"])

    data["name"] = derive_name(data)
    for helper in NAME_HELPER_FIELDS:
        data.pop(helper, None)

    if not data.get("owner") and not data.get("ownedBy") and importing_user:
        data["ownedBy"] = importing_user

    payment_raw = None
    if not payment.is_empty():
        data.update(_legacy_payment_fields(payment))
        payment_raw = payment

    return NormalizedRow(row_number=row_number, data=data, payment_raw=payment_raw, unmapped=unmapped)


# ==================== PREVIEW: SUGGESTIONS DE MAPPING ====================

# Mots-clés (sous-chaînes) pour les en-têtes hors table d'alias
MAPPING_HINTS = (
    ("name", ("client name", "business name", "company name", "name")),
    ("email", ("email", "e-mail")),
    ("phone", ("phone", "telephone", "tel", "mobile")),
    ("contactStatus", ("lead status", "stage", "status")),
    ("industry", ("industry", "sector", "business type")),
    ("city", ("city", "location", "town")),
    ("state", ("state", "province", "region")),
    ("website", ("website", "url", "web", "site")),
    ("ownedBy", ("owned by", "assigned to", "sales rep", "owner")),
    ("forecastedAmount", ("amount", "value", "forecast", "revenue", "deal size")),
)

AVAILABLE_CLIENT_FIELDS = (
    ("name", "Name", True),
    ("email", "Email", False),
    ("phone", "Phone", False),
    ("contactStatus", "Contact Status", False),
    ("contactType", "Contact Type", False),
    ("companyType", "Company Type", False),
    ("industry", "Industry", False),
    ("address", "Address", False),
    ("city", "City", False),
    ("state", "State", False),
    ("postalCode", "Postal Code", False),
    ("website", "Website", False),
    ("facebookPage", "Facebook Page", False),
    ("ownedBy", "Owner Email", False),
    ("forecastedAmount", "Forecasted Amount", False),
    ("projectedCloseDate", "Projected Close Date", False),
    ("fullName", "Full Name", False),
    ("description", "Description", False),
    ("lastNote", "Last Note", False),
)


def detect_column_mappings(headers: List[str]) -> Dict[str, str]:
    """
    {en-tête: champ suggéré}. Table d'alias d'abord, puis mots-clés.
    Les colonnes carte sont signalées comme "paymentMethod".
    """
    mappings = {}
    for header in headers:
        if not header:
            continue
        if resolve_payment_field(header):
            mappings[header] = "paymentMethod"
            continue
        target = resolve_field(header)
        if target is None:
            lowered = header.lower().strip()
            target = next(
                (f for f, hints in MAPPING_HINTS if any(h in lowered for h in hints)),
                None,
            )
        if target:
            mappings[header] = target
    return mappings


def available_client_fields() -> List[Dict[str, Any]]:
    return [
        {"field": name, "label": label, "required": required}
        for name, label, required in AVAILABLE_CLIENT_FIELDS
    ]
