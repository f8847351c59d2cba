"""
Service de journalisation des activités client
"""

import logging
from typing import Dict, List, Optional

from pymongo.errors import PyMongoError

from config import db, generate_id, now_utc

logger = logging.getLogger("activity_logger")

# Types d'activité
ACTIVITY_CREATED = "created"
ACTIVITY_STATUS_CHANGED = "status_changed"
ACTIVITY_NOTE_ADDED = "note_added"

MAX_DESCRIPTION_LENGTH = 500


def build_activity(
    client_id: str,
    activity_type: str,
    user_email: str,
    description: str,
    metadata: Optional[Dict] = None
) -> Dict:
    return {
        "_id": generate_id(),
        "clientId": client_id,
        "userId": user_email,
        "type": activity_type,
        "description": description[:MAX_DESCRIPTION_LENGTH],
        "metadata": metadata or {},
        "createdAt": now_utc()
    }


def client_created_activity(client_id: str, user_email: str, client_name: str) -> Dict:
    return build_activity(
        client_id, ACTIVITY_CREATED, user_email,
        f'Client "{client_name or ""}" was created',
        {"clientName": client_name or ""}
    )


def status_changed_activity(client_id: str, user_email: str, old_status: str, new_status: str, notes: str = "") -> Dict:
    return build_activity(
        client_id, ACTIVITY_STATUS_CHANGED, user_email,
        f"Status changed from {old_status} to {new_status}",
        {"oldStatus": old_status, "newStatus": new_status, "notes": notes or ""}
    )


def note_added_activity(client_id: str, user_email: str, note: str) -> Dict:
    # Description = aperçu de 100 caractères, note complète en metadata
    preview = note[:100] + ("..." if len(note) > 100 else "")
    return build_activity(client_id, ACTIVITY_NOTE_ADDED, user_email, preview, {"fullNote": note})


async def log_activity(entry: Dict) -> Dict:
    """Enregistre une activité (erreurs propagées à l'appelant)"""
    await db.activities.insert_one(entry)
    return entry


async def log_activities(entries: List[Dict]) -> int:
    """
    Enregistre un lot d'activités (import).
    Insertion non ordonnée; un échec est journalisé, jamais propagé.

    Returns:
        Nombre d'activités effectivement insérées
    """
    if not entries:
        return 0

    try:
        result = await db.activities.insert_many(entries, ordered=False)
        return len(result.inserted_ids)
    except PyMongoError as e:
        details = getattr(e, "details", None) or {}
        inserted = details.get("nInserted", 0)
        logger.warning(f"Activity batch partially failed ({inserted}/{len(entries)} inserted): {e}")
        return inserted
