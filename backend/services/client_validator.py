"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  CRM - Validation des lignes d'import clients                                ║
║                                                                              ║
║  VALIDATION PERMISSIVE:                                                      ║
║  - champ invalide → warning + valeur omise (ou défaut sûr)                   ║
║  - contactStatus inconnu → "Uncategorized" + warning                         ║
║  - forecastedAmount négatif → warning, valeur CONSERVÉE                      ║
║                                                                              ║
║  ERREURS BLOQUANTES (ligne exclue):                                          ║
║  - collision id/email non pré-approuvée (allowUpdates=False)                 ║
║  - name vide après fallback (garde-fou)                                      ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from models.client import CONTACT_STATUSES, DEFAULT_CONTACT_STATUS
from services.client_normalizer import NormalizedRow, coerce_amount, coerce_int
from services.duplicate_detector import ExistingClients, check_duplicate

MAX_NAME_LENGTH = 200

EMAIL_PATTERN = re.compile(r"^\w+(?:[.+\-]\w+)*@\w+(?:[.\-]\w+)*\.\w{2,}$")
PHONE_PATTERN = re.compile(r"^\+?\(?[0-9]{3}\)?[-\s.]?[0-9]{3}[-\s.]?[0-9]{4,6}$")
US_DATE_PATTERN = re.compile(r"^(0[1-9]|1[0-2])/(0[1-9]|[12][0-9]|3[01])/(\d{4})$")
EU_DATE_PATTERN = re.compile(r"^(0[1-9]|[12][0-9]|3[01])/(0[1-9]|1[0-2])/(\d{4})$")

# Copiés tels quels (texte trimmé) s'ils sont présents
PASSTHROUGH_FIELDS = (
    "description", "contactType", "companyType", "address", "city", "state",
    "postalCode", "industry", "fullName", "lastNote", "defaultShippingTerms",
    "defaultPaymentMethod", "externalId", "owner", "folderLink", "profileImage",
    "createdAtText",
    # Affichage carte legacy (déjà masqué par le normaliseur)
    "nameCC", "ccNumberText", "maskedCCLast4", "expirationDateText", "zipCodeText",
)


@dataclass
class ValidationResult:
    row_number: int
    is_valid: bool
    data: Dict[str, Any]
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.data.get("name", "")


@dataclass
class BatchValidation:
    results: List[ValidationResult]

    @property
    def valid_rows(self) -> List[ValidationResult]:
        return [r for r in self.results if r.is_valid]

    @property
    def invalid_rows(self) -> List[ValidationResult]:
        return [r for r in self.results if not r.is_valid]

    @property
    def rows_with_warnings(self) -> List[ValidationResult]:
        return [r for r in self.results if r.warnings]

    def counts(self) -> Dict[str, int]:
        return {
            "totalRows": len(self.results),
            "validCount": len(self.valid_rows),
            "invalidCount": len(self.invalid_rows),
            "warningCount": len(self.rows_with_warnings),
        }


# ==================== FORMATS ====================

def is_valid_email(value: Any) -> bool:
    return bool(EMAIL_PATTERN.match(str(value or "").strip()))


def is_valid_phone(value: Any) -> bool:
    return bool(PHONE_PATTERN.match(str(value or "").strip()))


def is_valid_url(value: Any) -> bool:
    parsed = urlparse(str(value or "").strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def parse_date(value: Any) -> Optional[datetime]:
    """
    ISO-8601, puis MM/DD/YYYY, puis DD/MM/YYYY (UTC si pas de fuseau).
    Les dates ambiguës (03/04/2024) sont lues au format US.
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    text = str(value or "").strip()
    if not text:
        return None

    parsed = None
    try:
        iso = text[:-1] + "+00:00" if text.endswith("Z") else text
        parsed = datetime.fromisoformat(iso)
    except ValueError:
        us = US_DATE_PATTERN.match(text)
        eu = EU_DATE_PATTERN.match(text)
        try:
            if us:
                parsed = datetime(int(us.group(3)), int(us.group(1)), int(us.group(2)))
            elif eu:
                parsed = datetime(int(eu.group(3)), int(eu.group(2)), int(eu.group(1)))
        except ValueError:
            # 02/31/2024 passe le motif mais pas le calendrier
            parsed = None

    if parsed is None:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def match_contact_status(value: Any) -> Optional[str]:
    wanted = str(value or "").strip().lower()
    return next((s for s in CONTACT_STATUSES if s.lower() == wanted), None)


# ==================== VALIDATION ====================

def validate_client_row(
    row: NormalizedRow,
    existing: Optional[ExistingClients] = None,
    allow_updates: bool = True
) -> ValidationResult:
    """
    Valide un brouillon normalisé.

    Args:
        row: sortie de normalize_row
        existing: index des clients/utilisateurs existants (None = pas de contrôle)
        allow_updates: collisions id/email autorisées (mise à jour)
    """
    draft = row.data
    errors = []
    warnings = []
    data: Dict[str, Any] = {}

    # Name (jamais vide grâce au fallback du normaliseur)
    name = str(draft.get("name") or "").strip()
    if not name:
        errors.append("Name is required and could not be derived")
    elif len(name) > MAX_NAME_LENGTH:
        warnings.append(f"Name exceeded {MAX_NAME_LENGTH} characters and was truncated")
        name = name[:MAX_NAME_LENGTH]
    data["name"] = name

    if draft.get("_id"):
        data["_id"] = str(draft["_id"]).strip()

    if draft.get("email"):
        email = str(draft["email"]).strip().lower()
        if is_valid_email(email):
            data["email"] = email
        else:
            warnings.append(f'Invalid email format "{draft["email"]}"; value ignored')

    status = draft.get("contactStatus")
    if status:
        matched = match_contact_status(status)
        if matched is None:
            warnings.append(f'Unknown contact status "{status}". Defaulted to \'{DEFAULT_CONTACT_STATUS}\'.')
        data["contactStatus"] = matched or DEFAULT_CONTACT_STATUS
    else:
        data["contactStatus"] = DEFAULT_CONTACT_STATUS

    if draft.get("phone"):
        if is_valid_phone(draft["phone"]):
            data["phone"] = str(draft["phone"]).strip()
        else:
            warnings.append("Invalid phone number format; value ignored")

    for url_field, label in (("website", "website"), ("facebookPage", "Facebook page")):
        if draft.get(url_field):
            if is_valid_url(draft[url_field]):
                data[url_field] = str(draft[url_field]).strip()
            else:
                warnings.append(f"Invalid {label} URL format; value ignored")

    if "forecastedAmount" in draft:
        amount = coerce_amount(draft["forecastedAmount"])
        if amount is None:
            warnings.append(f'Forecasted amount "{draft["forecastedAmount"]}" could not be parsed as a number; value ignored')
        else:
            if amount < 0:
                warnings.append("Forecasted amount is negative; keeping as-is")
            data["forecastedAmount"] = amount

    if "interactionCount" in draft:
        count = coerce_int(draft["interactionCount"])
        if count is None or count < 0:
            warnings.append("Interaction count is not a non-negative integer; value ignored")
        else:
            data["interactionCount"] = count

    for date_field, label in (("projectedCloseDate", "projected close date"), ("createdAt", "createdAt date")):
        if draft.get(date_field):
            parsed = parse_date(draft[date_field])
            if parsed is None:
                warnings.append(f"Invalid {label} format; value ignored")
            else:
                data[date_field] = parsed

    # Propriétaire: toujours assigné, vérifié à titre indicatif
    if draft.get("ownedBy"):
        owner_email = str(draft["ownedBy"]).strip().lower()
        if not is_valid_email(owner_email):
            warnings.append("Invalid owner email format; assigning value as provided")
        elif existing is not None and not existing.has_user(owner_email):
            warnings.append(f"Owner with email {owner_email} not found; assigning anyway")
        data["ownedBy"] = owner_email

    for name_field in PASSTHROUGH_FIELDS:
        value = draft.get(name_field)
        if value is None or value == "":
            continue
        data[name_field] = value.strip() if isinstance(value, str) else value

    if existing is not None:
        duplicate = check_duplicate(data, existing, allow_updates=allow_updates)
        if duplicate.is_duplicate:
            (errors if duplicate.blocking else warnings).append(duplicate.message)

    return ValidationResult(
        row_number=row.row_number,
        is_valid=not errors,
        data=data,
        errors=errors,
        warnings=warnings,
    )


def batch_validate_clients(
    rows: List[NormalizedRow],
    existing: Optional[ExistingClients] = None,
    allow_updates: bool = True
) -> BatchValidation:
    return BatchValidation(results=[
        validate_client_row(row, existing=existing, allow_updates=allow_updates)
        for row in rows
    ])
