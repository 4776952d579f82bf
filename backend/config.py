"""
Configuration et utilitaires partagés
"""

import os
from datetime import datetime, timezone
from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
from pathlib import Path

# Charger .env
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# MongoDB
MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
DB_NAME = os.environ.get('DB_NAME', 'test_database')  # Default to test_database

client = AsyncIOMotorClient(MONGO_URL)
db = client[DB_NAME]

# Scheduler des objectifs (toujours en UTC, pas d'ambiguïté heure d'été)
SCHEDULER_TIMEZONE = "UTC"
TARGET_SCHEDULER_ENABLED = _env_bool('TARGET_SCHEDULER_ENABLED', True)
TARGET_SCHEDULER_CATCHUP = _env_bool('TARGET_SCHEDULER_CATCHUP', False)
TARGET_CATCHUP_MAX_CYCLES = int(os.environ.get('TARGET_CATCHUP_MAX_CYCLES', '24'))

CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*').split(',')


# ==================== HELPERS ====================

def utc_now() -> datetime:
    """Retourne la date/heure actuelle (UTC, timezone-aware)"""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """
    Naive = UTC. Aware = converti en UTC.
    Tronqué à la milliseconde (résolution des dates stockées).
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def to_iso(value: datetime) -> str:
    """
    Format ISO unique en base: 2024-07-31T23:59:59.999+00:00

    Précision milliseconde + offset explicite, pour que la comparaison
    de chaînes dans les requêtes Mongo soit chronologique.
    """
    return ensure_utc(value).isoformat(timespec="milliseconds")


def now_iso() -> str:
    """Retourne la date/heure actuelle en ISO"""
    return to_iso(utc_now())
