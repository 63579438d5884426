"""
Visa CRM - Test fixtures
In-memory async MongoDB (mongomock-motor) with the production indexes.
Run: cd backend && pytest tests -v
"""

import sys
import uuid
from pathlib import Path

import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from config import now_iso
from services.conversion_service import ConversionService


@pytest_asyncio.fixture
async def db():
    client = AsyncMongoMockClient()
    database = client[f"visa_crm_test_{uuid.uuid4().hex[:8]}"]
    await ConversionService(database).ensure_indexes()
    return database


@pytest.fixture
def service(db):
    return ConversionService(db)


class Seeder:
    """Inserts enquiries / team members / clients straight into the test DB"""

    def __init__(self, db):
        self.db = db
        self._seq = 0

    async def enquiry(self, **fields) -> dict:
        self._seq += 1
        doc = {
            "id": str(uuid.uuid4()),
            "enquiry_id": f"ENQ-{self._seq:04d}",
            "first_name": "Asha",
            "last_name": "Verma",
            "email": "asha@example.org",
            "phone": "+91 98765 43210",
            "alternate_phone": "",
            "nationality": "Indian",
            "visa_type": "Student",
            "destination_country": "Canada",
            "enquiry_source": "Walk-in",
            "branch_id": "branch-1",
            "enquiry_status": "Qualified",
            "assigned_consultant": "Ravi",
            "is_client": False,
            "client_id": None,
            "created_at": now_iso(),
            "updated_at": now_iso()
        }
        doc.update(fields)
        await self.db.enquiries.insert_one(doc)
        doc.pop("_id", None)
        return doc

    async def team_member(self, full_name: str = "Priya Nair", **fields) -> dict:
        doc = {
            "id": str(uuid.uuid4()),
            "full_name": full_name,
            "email": f"{full_name.split()[0].lower()}@visa-crm.test",
            "role": "consultant",
            "active": True
        }
        doc.update(fields)
        await self.db.team_members.insert_one(doc)
        doc.pop("_id", None)
        return doc

    async def client(self, email: str, **fields) -> dict:
        doc = {
            "id": str(uuid.uuid4()),
            "first_name": "Existing",
            "last_name": "Client",
            "email": email,
            "email_normalized": email.strip().lower(),
            "phone": "",
            "assigned_to": None,
            "source_enquiry_ids": [],
            "status": "Active",
            "created_at": now_iso(),
            "updated_at": now_iso()
        }
        doc.update(fields)
        await self.db.clients.insert_one(doc)
        doc.pop("_id", None)
        return doc


@pytest.fixture
def seed(db):
    return Seeder(db)
