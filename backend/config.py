"""
Configuration and shared helpers
"""

import os
from datetime import datetime, timezone
from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
from pathlib import Path

# Load .env
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB
MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
DB_NAME = os.environ.get('DB_NAME', 'visa_crm')

client = AsyncIOMotorClient(MONGO_URL)
db = client[DB_NAME]

LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()
CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*').split(',')

# A transport failure re-runs the whole check-then-act sequence at most once
CONVERSION_TRANSPORT_RETRIES = max(0, min(1, int(os.environ.get('CONVERSION_TRANSPORT_RETRIES', '1'))))


# ==================== HELPERS ====================

def get_db():
    """FastAPI dependency returning the shared database handle"""
    return db

def now_iso() -> str:
    """Current UTC date/time as ISO string"""
    return datetime.now(timezone.utc).isoformat()

def normalize_email(email: str) -> str:
    """Case-insensitive identity key for an email address"""
    return (email or "").strip().lower()
