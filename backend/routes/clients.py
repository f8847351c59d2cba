"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  CRM - Routes Clients                                                        ║
║                                                                              ║
║  Import CSV / JSON batch, preview, modèle CSV                                ║
║  Statut (historique append-only), notes, moyens de paiement                  ║
║                                                                              ║
║  RÈGLE: 200 + résumé même en cas d'échecs partiels                           ║
║  RÈGLE: erreur fatale → 500, détail interne seulement en développement       ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException, Query, UploadFile, File
from fastapi.responses import JSONResponse, Response

from config import db, now_utc, is_development, MAX_CSV_SIZE
from routes.auth import get_current_user
from models.client import (
    BatchImportRequest,
    ClientNoteCreate,
    ClientStatusUpdate,
    PaymentMethodError,
    build_status_change,
    remove_payment_method,
    sanitize_client,
    set_default_payment_method,
)
from services.activity_logger import log_activity, note_added_activity, status_changed_activity
from services.client_import import (
    ImportFatalError,
    InvalidImportError,
    import_clients_batch,
    import_clients_csv,
    preview_clients_csv,
)
from services.csv_parser import CsvFormatError, validate_csv_file
from services.csv_template import TEMPLATE_FILENAME, generate_clients_template

logger = logging.getLogger("routes.clients")

router = APIRouter(prefix="/clients", tags=["Clients"])

ALLOWED_EXTENSIONS = {".csv", ".txt"}


# ==================== HELPERS ====================

def _fatal_detail(message: str, error: Exception) -> str:
    return f"{message}: {error}" if is_development() else message


async def _read_csv_upload(file: UploadFile) -> bytes:
    """Lit l'upload et applique les contrôles fichier (400 si refusé)"""
    ext = Path(file.filename or "").suffix.lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise HTTPException(status_code=400, detail="Only CSV files are allowed")

    content = await file.read()
    check = validate_csv_file(content, MAX_CSV_SIZE)
    if not check.is_valid:
        raise HTTPException(status_code=400, detail="; ".join(check.errors))
    for warning in check.warnings:
        logger.info(f"CSV upload {file.filename}: {warning}")
    return content


async def _get_client_or_404(client_id: str) -> dict:
    client = await db.clients.find_one({"_id": client_id})
    if not client:
        raise HTTPException(status_code=404, detail="Client not found")
    return client


# ==================== IMPORT ====================

@router.post("/import")
async def import_clients(
    file: UploadFile = File(...),
    skipInvalid: bool = Query(True, description="Ignorer les lignes invalides au lieu de tout refuser"),
    allowUpdates: bool = Query(True, description="Un Client_id / email existant met à jour le client"),
    user: dict = Depends(get_current_user)
):
    """
    Import CSV de clients.

    - skipInvalid=False: une seule ligne invalide → 400, rien n'est écrit
    - allowUpdates=False: collision id/email → erreur de ligne
    """
    content = await _read_csv_upload(file)

    try:
        return await import_clients_csv(
            content,
            user["email"],
            skip_invalid=skipInvalid,
            allow_updates=allowUpdates,
        )
    except CsvFormatError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except InvalidImportError as e:
        return JSONResponse(status_code=400, content=e.report)
    except ImportFatalError as e:
        logger.error(f"Import clients error ({user['email']}): {e}")
        raise HTTPException(status_code=500, detail=_fatal_detail("Error importing clients", e))


@router.post("/import/batch")
async def import_clients_json(
    data: BatchImportRequest,
    user: dict = Depends(get_current_user)
):
    """
    Import JSON (fast path): validation et tokenisation désactivées par défaut.
    batchSize borné à [IMPORT_BATCH_MIN, IMPORT_BATCH_MAX].
    """
    if not data.rows:
        raise HTTPException(status_code=400, detail="rows must be a non-empty array")

    try:
        return await import_clients_batch(
            data.rows,
            user["email"],
            batch_size=data.batchSize,
            skip_validation=data.options.skipValidation,
            skip_payment_tokenization=data.options.skipPaymentTokenization,
        )
    except ImportFatalError as e:
        logger.error(f"Batch import error ({user['email']}): {e}")
        raise HTTPException(status_code=500, detail=_fatal_detail("Error importing clients", e))


@router.post("/import/preview")
async def preview_import(
    file: UploadFile = File(...),
    user: dict = Depends(get_current_user)
):
    """Aperçu: 10 premières lignes validées + mapping suggéré, aucune écriture"""
    content = await _read_csv_upload(file)
    try:
        return await preview_clients_csv(content, user["email"])
    except CsvFormatError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ImportFatalError as e:
        logger.error(f"Import preview error ({user['email']}): {e}")
        raise HTTPException(status_code=500, detail=_fatal_detail("Error previewing clients", e))


@router.get("/import/template")
async def download_import_template(user: dict = Depends(get_current_user)):
    return Response(
        content=generate_clients_template().encode("utf-8"),
        media_type="text/csv; charset=utf-8",
        headers={
            "Content-Disposition": f'attachment; filename="{TEMPLATE_FILENAME}"'
        }
    )


# ==================== CLIENT ====================

@router.get("/{client_id}")
async def get_client(
    client_id: str,
    user: dict = Depends(get_current_user)
):
    client = await _get_client_or_404(client_id)
    return {"client": sanitize_client(client)}


@router.put("/{client_id}/status")
async def update_client_status(
    client_id: str,
    data: ClientStatusUpdate,
    user: dict = Depends(get_current_user)
):
    """Change le statut (Kanban). statusHistory: $push uniquement."""
    client = await _get_client_or_404(client_id)
    old_status = client.get("contactStatus")
    new_status = data.status.value

    entry = build_status_change(new_status, user["email"], data.notes)
    await db.clients.update_one(
        {"_id": client_id},
        {
            "$set": {"contactStatus": new_status, "updatedAt": now_utc()},
            "$push": {"statusHistory": entry}
        }
    )
    await log_activity(status_changed_activity(client_id, user["email"], old_status, new_status, data.notes))

    updated = await db.clients.find_one({"_id": client_id})
    return {"message": "Client status updated successfully", "client": sanitize_client(updated)}


@router.post("/{client_id}/notes")
async def add_client_note(
    client_id: str,
    data: ClientNoteCreate,
    user: dict = Depends(get_current_user)
):
    """Met à jour lastNote et incrémente interactionCount"""
    await _get_client_or_404(client_id)

    await db.clients.update_one(
        {"_id": client_id},
        {
            "$set": {"lastNote": data.note, "updatedAt": now_utc()},
            "$inc": {"interactionCount": 1}
        }
    )
    await log_activity(note_added_activity(client_id, user["email"], data.note))

    updated = await db.clients.find_one({"_id": client_id})
    return {"message": "Note added successfully", "client": sanitize_client(updated)}


# ==================== PAYMENT METHODS ====================

@router.put("/{client_id}/payment-methods/{payment_method_id}/default")
async def set_default_client_payment_method(
    client_id: str,
    payment_method_id: str,
    user: dict = Depends(get_current_user)
):
    client = await _get_client_or_404(client_id)
    try:
        payment_method = set_default_payment_method(client.get("paymentMethod"), payment_method_id)
    except PaymentMethodError as e:
        raise HTTPException(status_code=404, detail=str(e))

    await db.clients.update_one(
        {"_id": client_id},
        {"$set": {"paymentMethod": payment_method, "updatedAt": now_utc()}}
    )
    updated = await db.clients.find_one({"_id": client_id})
    return {"message": "Default payment method updated", "client": sanitize_client(updated)}


@router.delete("/{client_id}/payment-methods/{payment_method_id}")
async def delete_client_payment_method(
    client_id: str,
    payment_method_id: str,
    user: dict = Depends(get_current_user)
):
    """Supprime un moyen de paiement; le premier restant devient le défaut si besoin"""
    client = await _get_client_or_404(client_id)
    try:
        payment_method = remove_payment_method(client.get("paymentMethod"), payment_method_id)
    except PaymentMethodError as e:
        raise HTTPException(status_code=404, detail=str(e))

    await db.clients.update_one(
        {"_id": client_id},
        {"$set": {"paymentMethod": payment_method, "updatedAt": now_utc()}}
    )
    updated = await db.clients.find_one({"_id": client_id})
    return {"message": "Payment method removed", "client": sanitize_client(updated)}
