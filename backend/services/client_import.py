"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  CRM - PIPELINE D'IMPORT CLIENTS (CSV / JSON batch)                          ║
║                                                                              ║
║  Normalisation → Validation → Identité → Bulk upsert → Paiements → Résumé   ║
║                                                                              ║
║  IDENTITÉ:                                                                   ║
║  - _id (Client_id) présent → upsert sur _id                                  ║
║  - sinon email             → upsert sur email (_id généré à l'insertion)     ║
║  - sinon                   → insert avec _id généré                          ║
║                                                                              ║
║  INVARIANTS:                                                                 ║
║  - bulk_write(ordered=False), chunks envoyés SÉQUENTIELLEMENT                ║
║  - une erreur d'opération n'arrête jamais les autres lignes                  ║
║  - erreur store hors BulkWriteError → ImportFatalError (HTTP 500)            ║
║  - createdAt uniquement à l'insertion, updatedAt à chaque écriture           ║
║  - pool de paiement BORNÉ, attendu avant la réponse                          ║
║  - aucun numéro complet ni CVV persisté                                      ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from pymongo import InsertOne, UpdateOne
from pymongo.errors import BulkWriteError, PyMongoError

from config import (
    db, generate_id, now_utc, clamp_batch_size,
    IMPORT_BATCH_SIZE, PAYMENT_WORKERS, MAX_REPORTED_ISSUES,
)
from models.client import (
    DEFAULT_CONTACT_STATUS, PaymentMethodError,
    add_payment_method, build_status_change,
)
from services.activity_logger import client_created_activity, log_activities
from services.client_normalizer import (
    AMOUNT_OMIT, AMOUNT_ZERO, NormalizedRow, normalize_row,
    detect_column_mappings, available_client_fields,
)
from services.client_validator import (
    ValidationResult, batch_validate_clients, parse_date,
)
from services.csv_parser import parse_csv
from services.duplicate_detector import load_existing_clients
from services.payment_tokenizer import CardTokenizationError, PaymentRaw, tokenize_card

logger = logging.getLogger("client_import")

PREVIEW_ROWS = 10

# Jamais dans $set: gérés à l'insertion ou par les opérations dédiées
PROTECTED_FIELDS = ("_id", "paymentMethod", "statusHistory", "createdAt", "updatedAt")

# Identité
BY_ID = "id"
BY_EMAIL = "email"
INSERT = "insert"

# Raisons de non-attachement (paymentSkipped)
SKIP_WRITE_FAILED = "write_failed"
SKIP_UNRESOLVED = "unresolved_client"
SKIP_NOT_FOUND = "client_not_found"
SKIP_REJECTED = "rejected_by_vault"
SKIP_INVALID_ENTRY = "invalid_payment_method"
SKIP_STORE_ERROR = "store_error"


class ImportFatalError(Exception):
    """Le store ne répond plus: l'import entier échoue (HTTP 500)"""
    pass


class InvalidImportError(Exception):
    """skipInvalid=False et au moins une ligne invalide: rien n'est écrit"""

    def __init__(self, report: Dict[str, Any]):
        super().__init__("CSV contains invalid data")
        self.report = report


# ==================== IDENTITY RESOLVER ====================

@dataclass
class PlannedWrite:
    row_number: int
    name: str
    email: Optional[str]
    kind: str
    operation: Any
    client_id: Optional[str] = None
    payment_raw: Optional[PaymentRaw] = None


def resolve_identity(
    data: Dict[str, Any],
    row_number: int,
    importing_user: str,
    payment_raw: Optional[PaymentRaw] = None,
    now: Optional[datetime] = None,
) -> PlannedWrite:
    """
    Décide la forme d'écriture d'un brouillon validé.

    - $set: tous les champs sauf PROTECTED_FIELDS, + updatedAt
    - $setOnInsert: createdAt (indice importé si lisible, sinon now),
      statusHistory initial, paymentMethod vide
    """
    now = now or now_utc()
    fields = {k: v for k, v in data.items() if k not in PROTECTED_FIELDS}
    fields["updatedAt"] = now

    created_at = parse_date(data.get("createdAt")) or now
    status = fields.get("contactStatus") or DEFAULT_CONTACT_STATUS
    on_insert = {
        "createdAt": created_at,
        "statusHistory": [build_status_change(status, importing_user, "Imported")],
        "paymentMethod": {"paymentMethods": []},
    }
    if "contactStatus" not in fields:
        on_insert["contactStatus"] = status

    client_id = str(data["_id"]).strip() if data.get("_id") else None
    email = fields.get("email") or None
    name = fields.get("name", "")

    if client_id:
        operation = UpdateOne(
            {"_id": client_id},
            {"$set": fields, "$setOnInsert": on_insert},
            upsert=True,
        )
        return PlannedWrite(row_number, name, email, BY_ID, operation, client_id, payment_raw)

    if email:
        on_insert["_id"] = generate_id()
        operation = UpdateOne(
            {"email": email},
            {"$set": fields, "$setOnInsert": on_insert},
            upsert=True,
        )
        return PlannedWrite(row_number, name, email, BY_EMAIL, operation, None, payment_raw)

    client_id = generate_id()
    document = {"_id": client_id, **fields, **on_insert}
    return PlannedWrite(row_number, name, email, INSERT, InsertOne(document), client_id, payment_raw)


# ==================== BULK UPSERT EXECUTOR ====================

@dataclass
class BulkOutcome:
    created: int = 0
    updated: int = 0
    created_ids: Dict[int, str] = field(default_factory=dict)  # index → _id
    failed: Dict[int, str] = field(default_factory=dict)       # index → message
    chunks: int = 0


async def execute_bulk(collection, writes: List[PlannedWrite], chunk_size: int = IMPORT_BATCH_SIZE) -> BulkOutcome:
    """
    Envoie les opérations par chunks séquentiels, non ordonnés.

    BulkWriteError → résultat partiel lu dans details, on continue.
    Autre PyMongoError → ImportFatalError, chunks restants abandonnés.
    """
    outcome = BulkOutcome()
    chunk_size = max(1, int(chunk_size))

    for offset in range(0, len(writes), chunk_size):
        chunk = writes[offset:offset + chunk_size]
        outcome.chunks += 1
        try:
            result = await collection.bulk_write([w.operation for w in chunk], ordered=False)
            details = result.bulk_api_result
        except BulkWriteError as e:
            details = e.details
            logger.error(
                f"Chunk {outcome.chunks} (rows {chunk[0].row_number}-{chunk[-1].row_number}): "
                f"{len(details.get('writeErrors', []))} write errors"
            )
        except PyMongoError as e:
            logger.error(f"Chunk {outcome.chunks} aborted, store unavailable: {e}")
            raise ImportFatalError(f"Bulk write failed at chunk {outcome.chunks}: {e}") from e

        outcome.created += details.get("nInserted", 0) + details.get("nUpserted", 0)
        outcome.updated += details.get("nMatched", 0)

        for error in details.get("writeErrors", []):
            outcome.failed[offset + error["index"]] = error.get("errmsg", "Write failed")
        for upserted in details.get("upserted", []):
            outcome.created_ids[offset + upserted["index"]] = upserted["_id"]
        for position, write in enumerate(chunk):
            index = offset + position
            if write.kind == INSERT and index not in outcome.failed:
                outcome.created_ids[index] = write.client_id

    logger.info(
        f"Bulk write done: {len(writes)} ops in {outcome.chunks} chunks, "
        f"created={outcome.created} updated={outcome.updated} failed={len(outcome.failed)}"
    )
    return outcome


async def resolve_written_ids(writes: List[PlannedWrite], outcome: BulkOutcome) -> Dict[int, str]:
    """
    _id persisté de chaque écriture réussie.
    Résultat bulk → filtre _id → recherche groupée par email (lignes matchées).
    """
    resolved = {}
    by_email = {}
    for index, write in enumerate(writes):
        if index in outcome.failed:
            continue
        if index in outcome.created_ids:
            resolved[index] = outcome.created_ids[index]
        elif write.client_id:
            resolved[index] = write.client_id
        elif write.email:
            by_email[index] = write.email

    if by_email:
        try:
            docs = await db.clients.find(
                {"email": {"$in": sorted(set(by_email.values()))}},
                {"_id": 1, "email": 1}
            ).to_list(None)
        except PyMongoError as e:
            logger.error(f"Id resolution by email failed, store unavailable: {e}")
            raise ImportFatalError(f"Id resolution failed: {e}") from e
        email_map = {}
        for doc in docs:
            email_map.setdefault(doc.get("email"), doc["_id"])
        for index, email in by_email.items():
            if email in email_map:
                resolved[index] = email_map[email]

    return resolved


# ==================== PAYMENT ATTACHMENT ====================

@dataclass
class AttachmentTask:
    row_number: int
    client_id: str
    payment_raw: PaymentRaw


@dataclass
class AttachmentResult:
    row_number: int
    attached: bool
    reason: Optional[str] = None


async def attach_payment_method(task: AttachmentTask) -> AttachmentResult:
    """Tokenise → charge → ajoute (défaut) → sauvegarde. Ne lève jamais."""
    try:
        card = tokenize_card(task.payment_raw)
    except CardTokenizationError as e:
        return AttachmentResult(task.row_number, False, e.reason)

    try:
        client = await db.clients.find_one({"_id": task.client_id}, {"paymentMethod": 1})
        if not client:
            return AttachmentResult(task.row_number, False, SKIP_NOT_FOUND)

        payment_method = add_payment_method(client.get("paymentMethod"), card.to_payment_method())
        await db.clients.update_one(
            {"_id": task.client_id},
            {"$set": {"paymentMethod": payment_method, "updatedAt": now_utc()}}
        )
    except PaymentMethodError:
        return AttachmentResult(task.row_number, False, SKIP_REJECTED)
    except ValidationError:
        return AttachmentResult(task.row_number, False, SKIP_INVALID_ENTRY)
    except PyMongoError as e:
        logger.debug(f"Payment attach row {task.row_number}: {e}")
        return AttachmentResult(task.row_number, False, SKIP_STORE_ERROR)

    return AttachmentResult(task.row_number, True)


async def run_attachment_pool(tasks: List[AttachmentTask], workers: int = PAYMENT_WORKERS) -> List[AttachmentResult]:
    """
    N workers vident une file partagée; retour quand tout est traité.

    Un élément de la file = toutes les tâches d'un même client, traitées
    dans l'ordre des lignes par un seul worker (lecture → ajout → $set).
    """
    if not tasks:
        return []

    by_client: Dict[str, List[AttachmentTask]] = {}
    for task in tasks:
        by_client.setdefault(task.client_id, []).append(task)

    queue: asyncio.Queue = asyncio.Queue()
    for group in by_client.values():
        queue.put_nowait(group)

    results: List[AttachmentResult] = []

    async def worker():
        while True:
            try:
                group = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            for task in group:
                results.append(await attach_payment_method(task))

    await asyncio.gather(*(worker() for _ in range(max(1, min(workers, len(by_client))))))
    return results


# ==================== RESULT AGGREGATOR ====================

@dataclass
class ImportSummary:
    amount_policy: str
    total_processed: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0
    payment_attempted: int = 0
    payment_added: int = 0
    payment_skipped: Counter = field(default_factory=Counter)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    unmapped_columns: List[str] = field(default_factory=list)

    @property
    def successful(self) -> int:
        return self.created + self.updated

    def add_error(self, row: int, name: str, reason: str, stage: str):
        self.errors.append({"row": row, "name": name or "N/A", "error": reason, "stage": stage})

    def add_warnings(self, row: int, name: str, warnings: List[str]):
        if warnings:
            self.warnings.append({"row": row, "name": name or "N/A", "warnings": list(warnings)})

    def add_attachment(self, result: AttachmentResult):
        if result.attached:
            self.payment_added += 1
        else:
            self.payment_skipped[result.reason] += 1

    def to_dict(self, max_issues: int = MAX_REPORTED_ISSUES) -> Dict[str, Any]:
        return {
            "summary": {
                "totalProcessed": self.total_processed,
                "successful": self.successful,
                "created": self.created,
                "updated": self.updated,
                "failed": self.failed,
                "skipped": self.skipped,
                "paymentAttempted": self.payment_attempted,
                "paymentAdded": self.payment_added,
                "paymentSkipped": dict(self.payment_skipped),
                "amountPolicy": self.amount_policy,
                "unmappedColumns": self.unmapped_columns,
                "errorsTruncated": len(self.errors) > max_issues,
                "warningsTruncated": len(self.warnings) > max_issues,
            },
            "errors": self.errors[:max_issues],
            "warnings": self.warnings[:max_issues],
        }


# ==================== PIPELINE ====================

async def _load_existing(rows: List[NormalizedRow]):
    try:
        return await load_existing_clients(n.data for n in rows)
    except PyMongoError as e:
        logger.error(f"Existing clients lookup failed, store unavailable: {e}")
        raise ImportFatalError(f"Existing clients lookup failed: {e}") from e


def _collect_unmapped(rows: List[NormalizedRow]) -> List[str]:
    seen = []
    for row in rows:
        for header in row.unmapped:
            if header not in seen:
                seen.append(header)
    return seen


async def _write_and_attach(
    writes: List[PlannedWrite],
    summary: ImportSummary,
    user_email: str,
    chunk_size: int,
    tokenize_payments: bool = True,
):
    """Étapes I/O communes: bulk, activités 'created', pool de paiement"""
    if not writes:
        return

    outcome = await execute_bulk(db.clients, writes, chunk_size)
    summary.created += outcome.created
    summary.updated += outcome.updated
    summary.failed += len(outcome.failed)
    for index, message in sorted(outcome.failed.items()):
        summary.add_error(writes[index].row_number, writes[index].name, message, "write")

    await log_activities([
        client_created_activity(client_id, user_email, writes[index].name)
        for index, client_id in sorted(outcome.created_ids.items())
    ])

    if not tokenize_payments:
        return

    resolved = await resolve_written_ids(writes, outcome)
    tasks = []
    for index, write in enumerate(writes):
        if write.payment_raw is None:
            continue
        summary.payment_attempted += 1
        if index in outcome.failed:
            summary.payment_skipped[SKIP_WRITE_FAILED] += 1
        elif index not in resolved:
            summary.payment_skipped[SKIP_UNRESOLVED] += 1
        else:
            tasks.append(AttachmentTask(write.row_number, resolved[index], write.payment_raw))

    for result in await run_attachment_pool(tasks):
        summary.add_attachment(result)

    if summary.payment_attempted:
        logger.info(
            f"Payment attachment: {summary.payment_added}/{summary.payment_attempted} added, "
            f"skipped={dict(summary.payment_skipped)}"
        )


async def import_clients_csv(
    content: bytes,
    user_email: str,
    skip_invalid: bool = True,
    allow_updates: bool = True,
    chunk_size: int = IMPORT_BATCH_SIZE,
) -> Dict[str, Any]:
    """
    Import CSV complet (validation permissive, montants illisibles omis).

    Raises:
        CsvFormatError: CSV illisible
        InvalidImportError: skip_invalid=False et lignes invalides
        ImportFatalError: store indisponible (lecture ou écriture)
    """
    document = parse_csv(content)
    normalized = [normalize_row(r.data, r.row_number, user_email, AMOUNT_OMIT) for r in document.rows]

    existing = await _load_existing(normalized)
    validation = batch_validate_clients(normalized, existing=existing, allow_updates=allow_updates)
    counts = validation.counts()
    logger.info(f"CSV import by {user_email}: {counts}")

    if not skip_invalid and validation.invalid_rows:
        raise InvalidImportError({
            "message": "CSV contains invalid data",
            "summary": {
                "totalRows": counts["totalRows"],
                "validRows": counts["validCount"],
                "invalidRows": counts["invalidCount"],
                "rowsWithWarnings": counts["warningCount"],
            },
            "invalidRows": [
                {"row": r.row_number, "name": r.name or "N/A", "errors": r.errors, "warnings": r.warnings}
                for r in validation.invalid_rows[:MAX_REPORTED_ISSUES]
            ],
        })

    summary = ImportSummary(amount_policy=AMOUNT_OMIT, total_processed=len(normalized))
    summary.unmapped_columns = _collect_unmapped(normalized)

    now = now_utc()
    writes = []
    for row, result in zip(normalized, validation.results):
        summary.add_warnings(result.row_number, result.name, result.warnings)
        if not result.is_valid:
            summary.skipped += 1
            summary.add_error(result.row_number, result.name, "; ".join(result.errors), "validation")
            continue
        writes.append(resolve_identity(result.data, result.row_number, user_email, row.payment_raw, now))

    await _write_and_attach(writes, summary, user_email, chunk_size)

    return {"message": "CSV import completed", **summary.to_dict()}


async def import_clients_batch(
    rows: List[Any],
    user_email: str,
    batch_size: Optional[int] = None,
    skip_validation: bool = True,
    skip_payment_tokenization: bool = True,
) -> Dict[str, Any]:
    """
    Import JSON (fast path): lignes supposées assainies par le client.

    - validation sautée par défaut (skip_validation)
    - tokenisation sautée par défaut (skip_payment_tokenization)
    - montants illisibles → 0
    - lignes non-objet → erreur + skipped, les autres continuent
    """
    chunk_size = clamp_batch_size(batch_size)
    summary = ImportSummary(amount_policy=AMOUNT_ZERO, total_processed=len(rows))

    normalized = []
    for position, raw in enumerate(rows, start=1):
        if not isinstance(raw, dict):
            summary.skipped += 1
            summary.add_error(position, "N/A", "Row is not a JSON object", "input")
            continue
        normalized.append(normalize_row(raw, position, user_email, AMOUNT_ZERO))
    summary.unmapped_columns = _collect_unmapped(normalized)

    if skip_validation:
        results = [
            ValidationResult(row_number=n.row_number, is_valid=True, data=n.data)
            for n in normalized
        ]
    else:
        existing = await _load_existing(normalized)
        results = batch_validate_clients(normalized, existing=existing).results

    now = now_utc()
    writes = []
    for row, result in zip(normalized, results):
        summary.add_warnings(result.row_number, result.name, result.warnings)
        if not result.is_valid:
            summary.skipped += 1
            summary.add_error(result.row_number, result.name, "; ".join(result.errors), "validation")
            continue
        writes.append(resolve_identity(result.data, result.row_number, user_email, row.payment_raw, now))

    logger.info(
        f"Batch import by {user_email}: {len(rows)} rows, {len(writes)} writes, chunk_size={chunk_size}, "
        f"validation={'off' if skip_validation else 'on'}, tokenization={'off' if skip_payment_tokenization else 'on'}"
    )
    await _write_and_attach(
        writes, summary, user_email, chunk_size,
        tokenize_payments=not skip_payment_tokenization,
    )

    return {"message": "Batch import completed", **summary.to_dict()}


async def preview_clients_csv(content: bytes, user_email: str) -> Dict[str, Any]:
    """Valide les PREVIEW_ROWS premières lignes et suggère un mapping; n'écrit rien"""
    document = parse_csv(content)
    normalized = [
        normalize_row(r.data, r.row_number, user_email, AMOUNT_OMIT)
        for r in document.rows[:PREVIEW_ROWS]
    ]
    existing = await _load_existing(normalized)
    validation = batch_validate_clients(normalized, existing=existing)
    counts = validation.counts()

    return {
        "message": "CSV preview generated",
        "preview": {
            "headers": document.headers,
            "totalRows": len(document.rows),
            "hasMore": len(document.rows) > PREVIEW_ROWS,
            "rows": [
                {
                    "rowNumber": raw.row_number,
                    "data": result.data,
                    "isValid": result.is_valid,
                    "errors": result.errors,
                    "warnings": result.warnings,
                }
                for raw, result in zip(document.rows, validation.results)
            ],
        },
        "summary": {
            "totalRows": len(document.rows),
            "previewedRows": len(normalized),
            "validRows": counts["validCount"],
            "invalidRows": counts["invalidCount"],
            "rowsWithWarnings": counts["warningCount"],
        },
        "columnMapping": {
            "suggestedMappings": detect_column_mappings(document.headers),
            "availableFields": available_client_fields(),
        },
    }
