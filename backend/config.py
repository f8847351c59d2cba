"""
Configuration et utilitaires partagés
"""

import os
import uuid
from datetime import datetime, timezone
from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
from pathlib import Path

# Charger .env
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB
MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
DB_NAME = os.environ.get('DB_NAME', 'crm_database')

client = AsyncIOMotorClient(MONGO_URL)
db = client[DB_NAME]

ENVIRONMENT = os.environ.get('ENVIRONMENT', 'production')
CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*').split(',')


# ==================== IMPORT CLIENTS ====================

# Taille des chunks bulk_write (JSON batch: borné entre MIN et MAX)
IMPORT_BATCH_SIZE = int(os.environ.get('IMPORT_BATCH_SIZE', '2000'))
IMPORT_BATCH_MIN = int(os.environ.get('IMPORT_BATCH_MIN', '500'))
IMPORT_BATCH_MAX = int(os.environ.get('IMPORT_BATCH_MAX', '5000'))

# Workers concurrents pour l'attachement des moyens de paiement
PAYMENT_WORKERS = int(os.environ.get('PAYMENT_WORKERS', '16'))

MAX_CSV_SIZE = int(os.environ.get('MAX_CSV_SIZE', str(5 * 1024 * 1024)))  # 5 MB

# Nombre max d'erreurs / warnings renvoyés dans la réponse
MAX_REPORTED_ISSUES = int(os.environ.get('MAX_REPORTED_ISSUES', '500'))


# ==================== HELPERS ====================

def generate_id() -> str:
    """Identifiant client string (compatible avec les Client_id importés)"""
    return uuid.uuid4().hex

def now_utc() -> datetime:
    """Retourne la date/heure actuelle (UTC)"""
    return datetime.now(timezone.utc)

def now_iso() -> str:
    """Retourne la date/heure actuelle en ISO"""
    return now_utc().isoformat()

def is_development() -> bool:
    """Les détails d'erreurs internes ne sont exposés qu'en développement"""
    return ENVIRONMENT.lower() == 'development'


def clamp_batch_size(value) -> int:
    """
    Borne la taille de chunk demandée par l'appelant.
    Valeur absente ou non numérique → IMPORT_BATCH_SIZE.
    """
    try:
        size = int(value) if value is not None else IMPORT_BATCH_SIZE
    except (TypeError, ValueError):
        size = IMPORT_BATCH_SIZE
    if size <= 0:
        size = IMPORT_BATCH_SIZE
    return max(IMPORT_BATCH_MIN, min(size, IMPORT_BATCH_MAX))
