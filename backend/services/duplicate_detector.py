"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  CRM - DÉTECTION DES DOUBLONS À L'IMPORT CLIENTS                             ║
║                                                                              ║
║  Règles de détection:                                                        ║
║  - Client_id déjà présent en base        → id_collision                      ║
║  - email déjà présent en base            → email_collision                   ║
║  - même name + même email déjà en base   → name_email (ADVISORY)             ║
║                                                                              ║
║  Comportements:                                                              ║
║  - allowUpdates=True  → collisions id/email = mises à jour attendues         ║
║  - allowUpdates=False → collisions id/email = erreurs bloquantes             ║
║  - name_email ne bloque JAMAIS (warning seulement)                           ║
║                                                                              ║
║  Une seule lecture groupée par import ($in), pas une requête par ligne.      ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from typing import Any, Dict, Iterable, Optional, Set, Tuple
from config import db

logger = logging.getLogger("duplicate_detector")


class DuplicateResult:
    """Résultat de la détection de doublon"""

    def __init__(
        self,
        is_duplicate: bool,
        duplicate_type: Optional[str] = None,
        blocking: bool = False,
        original_client_id: Optional[str] = None,
        message: str = ""
    ):
        self.is_duplicate = is_duplicate
        self.duplicate_type = duplicate_type  # "id_collision", "email_collision", "name_email"
        self.blocking = blocking
        self.original_client_id = original_client_id
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_duplicate": self.is_duplicate,
            "duplicate_type": self.duplicate_type,
            "blocking": self.blocking,
            "original_client_id": self.original_client_id,
            "message": self.message
        }


class ExistingClients:
    """Index en mémoire des clients/utilisateurs déjà en base pour un import"""

    def __init__(
        self,
        ids: Optional[Set[str]] = None,
        emails: Optional[Dict[str, str]] = None,
        name_email: Optional[Set[Tuple[str, str]]] = None,
        known_users: Optional[Set[str]] = None
    ):
        self.ids = ids or set()
        self.emails = emails or {}              # email → _id
        self.name_email = name_email or set()   # (name, email)
        self.known_users = known_users or set()

    def has_user(self, email: str) -> bool:
        return (email or "").lower() in self.known_users


async def load_existing_clients(drafts: Iterable[Dict[str, Any]]) -> ExistingClients:
    """
    Charge en une passe les clients qui partagent un _id ou un email
    avec les brouillons, et les utilisateurs référencés par ownedBy.
    """
    ids, emails, owners = set(), set(), set()
    for data in drafts:
        if data.get("_id"):
            ids.add(str(data["_id"]))
        if data.get("email"):
            emails.add(str(data["email"]).lower())
        if data.get("ownedBy"):
            owners.add(str(data["ownedBy"]).lower())

    existing = ExistingClients()

    clauses = []
    if ids:
        clauses.append({"_id": {"$in": sorted(ids)}})
    if emails:
        clauses.append({"email": {"$in": sorted(emails)}})

    if clauses:
        docs = await db.clients.find(
            {"$or": clauses},
            {"_id": 1, "name": 1, "email": 1}
        ).to_list(None)

        for doc in docs:
            existing.ids.add(doc["_id"])
            email = (doc.get("email") or "").lower()
            if email:
                existing.emails.setdefault(email, doc["_id"])
                if doc.get("name"):
                    existing.name_email.add((doc["name"], email))

    if owners:
        users = await db.users.find(
            {"email": {"$in": sorted(owners)}},
            {"_id": 0, "email": 1}
        ).to_list(None)
        existing.known_users = {u["email"].lower() for u in users if u.get("email")}

    logger.info(
        f"Existing lookup: {len(existing.ids)} clients matched "
        f"({len(ids)} ids, {len(emails)} emails), {len(existing.known_users)}/{len(owners)} owners known"
    )
    return existing


def check_duplicate(
    data: Dict[str, Any],
    existing: ExistingClients,
    allow_updates: bool = True
) -> DuplicateResult:
    """
    Vérifie si un brouillon validé entre en collision avec un client existant.

    Ordre des contrôles:
    1. Client_id existant
    2. email existant
    3. name + email identiques (advisory)

    Args:
        data: brouillon validé (email déjà en minuscules)
        existing: index chargé par load_existing_clients
        allow_updates: collisions id/email pré-approuvées par l'appelant

    Returns:
        DuplicateResult avec les détails
    """
    client_id = data.get("_id")
    email = data.get("email")
    name = data.get("name")

    if client_id and client_id in existing.ids and not allow_updates:
        return DuplicateResult(
            is_duplicate=True,
            duplicate_type="id_collision",
            blocking=True,
            original_client_id=client_id,
            message=f"Client with id {client_id} already exists"
        )

    if email and email in existing.emails and not allow_updates and not client_id:
        return DuplicateResult(
            is_duplicate=True,
            duplicate_type="email_collision",
            blocking=True,
            original_client_id=existing.emails[email],
            message=f"Client with email {email} already exists"
        )

    if name and email and (name, email) in existing.name_email:
        return DuplicateResult(
            is_duplicate=True,
            duplicate_type="name_email",
            blocking=False,
            original_client_id=existing.emails.get(email),
            message=f'Client with name "{name}" and email "{email}" may already exist'
        )

    return DuplicateResult(is_duplicate=False)
