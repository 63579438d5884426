"""
Visa CRM - Stores (MongoDB access for the conversion engine)

The only module touching the enquiries / clients / team_members collections
on behalf of the conversion engine. pymongo errors never leave this module
untyped:
- DuplicateKeyError on clients.email_normalized → EmailConflictError
- any other PyMongoError                      → TransportError
"""

import re
import uuid
import logging
from typing import Optional, Dict, Any, List

from pymongo.errors import DuplicateKeyError, PyMongoError

from config import now_iso, normalize_email
from models import (
    Enquiry,
    Client,
    TeamMember,
    ENQUIRY_IDENTITY_FIELDS,
    CLIENT_SEED_FIELDS,
)
from services.conversion_errors import (
    ConflictUnresolvedError,
    EmailConflictError,
    TransportError,
)

logger = logging.getLogger("stores")

# Recompute passes when a client changes mid-merge
MERGE_ATTEMPTS = 5


def _transport_error(operation: str, exc: Exception) -> TransportError:
    logger.error(f"[STORE] {operation} failed: {exc}")
    return TransportError(
        f"Data store unavailable during {operation}",
        {"operation": operation},
    )


def _blank(field: str) -> dict:
    """Filter matching an empty, null or missing field"""
    return {"$or": [{field: ""}, {field: None}]}


def _exact_ci(value: str) -> dict:
    return {"$regex": f"^{re.escape(value)}$", "$options": "i"}


class MergeOutcome:
    """Result of attaching an enquiry to an existing client"""

    def __init__(self, client: Client, enquiry_added: bool, assigned_now: bool):
        self.client = client
        self.enquiry_added = enquiry_added  # False when the id was already linked
        self.assigned_now = assigned_now    # True only if this call set assigned_to


# ════════════════════════════════════════════════════════════════════════════
# ENQUIRIES
# ════════════════════════════════════════════════════════════════════════════

class EnquiryStore:

    def __init__(self, db):
        self.db = db

    async def ensure_indexes(self):
        await self.db.enquiries.create_index("id", unique=True)
        await self.db.enquiries.create_index("enquiry_id")
        await self.db.enquiries.create_index("email")

    async def get(self, enquiry_id: str) -> Optional[Enquiry]:
        """Load by internal id or by the human-readable enquiry_id"""
        try:
            doc = await self.db.enquiries.find_one(
                {"$or": [{"id": enquiry_id}, {"enquiry_id": enquiry_id}]},
                {"_id": 0}
            )
        except PyMongoError as e:
            raise _transport_error("enquiry lookup", e)
        return Enquiry(**doc) if doc else None

    async def mark_converted(self, enquiry: Enquiry, client_id: str) -> bool:
        """
        Set is_client / client_id, once.

        The filter pins the identity fields read at the start of the attempt:
        if the enquiry was converted meanwhile, or its contact fields were
        edited mid-conversion, nothing is written and False is returned.
        """
        conditions: List[Dict[str, Any]] = [
            {"id": enquiry.id},
            {"is_client": {"$ne": True}},
        ]
        for field in ENQUIRY_IDENTITY_FIELDS:
            value = getattr(enquiry, field)
            conditions.append({field: value} if value else _blank(field))

        now = now_iso()
        try:
            result = await self.db.enquiries.update_one(
                {"$and": conditions},
                {"$set": {
                    "is_client": True,
                    "client_id": client_id,
                    "converted_at": now,
                    "updated_at": now
                }}
            )
        except PyMongoError as e:
            raise _transport_error("enquiry update", e)
        return result.modified_count == 1

    async def find_by_contact(self, email: str = "", phone: str = "") -> Optional[Dict[str, Any]]:
        """First enquiry sharing the email (case-insensitive) or the phone"""
        clauses = []
        if email:
            clauses.append({"email": _exact_ci(email.strip())})
        if phone:
            clauses.append({"phone": phone.strip()})
        if not clauses:
            return None
        try:
            return await self.db.enquiries.find_one({"$or": clauses}, {"_id": 0})
        except PyMongoError as e:
            raise _transport_error("enquiry contact lookup", e)


# ════════════════════════════════════════════════════════════════════════════
# CLIENTS
# ════════════════════════════════════════════════════════════════════════════

class ClientStore:

    def __init__(self, db):
        self.db = db

    async def ensure_indexes(self):
        # Storage-level uniqueness is the single ordering authority for an email
        await self.db.clients.create_index("email_normalized", unique=True)
        await self.db.clients.create_index("id", unique=True)

    async def get(self, client_id: str) -> Optional[Client]:
        try:
            doc = await self.db.clients.find_one({"id": client_id}, {"_id": 0})
        except PyMongoError as e:
            raise _transport_error("client lookup", e)
        return Client(**doc) if doc else None

    async def find_by_email(self, email: str) -> Optional[Client]:
        key = normalize_email(email)
        if not key:
            return None
        try:
            doc = await self.db.clients.find_one({"email_normalized": key}, {"_id": 0})
        except PyMongoError as e:
            raise _transport_error("client email lookup", e)
        return Client(**doc) if doc else None

    async def find_by_contact(self, email: str = "", phone: str = "") -> Optional[Dict[str, Any]]:
        clauses = []
        if email:
            clauses.append({"email_normalized": normalize_email(email)})
        if phone:
            clauses.append({"phone": phone.strip()})
        if not clauses:
            return None
        try:
            return await self.db.clients.find_one({"$or": clauses}, {"_id": 0})
        except PyMongoError as e:
            raise _transport_error("client contact lookup", e)

    async def create(
        self,
        seed_fields: Dict[str, Any],
        assigned_team_member_id: Optional[str],
        source_enquiry_id: str
    ) -> Client:
        """
        Insert a new client. Raises EmailConflictError when another client
        already holds the normalized email (including one inserted after the
        caller's duplicate check).
        """
        email = (seed_fields.get("email") or "").strip()
        now = now_iso()
        doc = {field: seed_fields.get(field) or "" for field in CLIENT_SEED_FIELDS}
        doc.update({
            "id": str(uuid.uuid4()),
            "client_code": None,
            "email": email,
            "email_normalized": normalize_email(email),
            "branch_id": seed_fields.get("branch_id"),
            "assigned_to": assigned_team_member_id,
            "source_enquiry_ids": [source_enquiry_id],
            "status": "Active",
            "created_at": now,
            "updated_at": now
        })

        try:
            await self.db.clients.insert_one(doc)
        except DuplicateKeyError:
            raise EmailConflictError(email)
        except PyMongoError as e:
            raise _transport_error("client insert", e)

        doc.pop("_id", None)
        return Client(**doc)

    async def merge_enquiry_source(
        self,
        client_id: str,
        enquiry_id: str,
        assigned_team_member_id: Optional[str] = None,
        fill_fields: Optional[Dict[str, Any]] = None
    ) -> Optional[MergeOutcome]:
        """
        Attach an enquiry to an existing client in ONE conditional update.

        - enquiry_id is added with set semantics ($addToSet)
        - assigned_to is written only where it is still unset
        - fill_fields only fill blank client fields, never overwrite
        The filter pins the client state the update was computed from. If the
        client changed in between, nothing is written and the merge is
        recomputed. Either the whole merge lands or none of it does.

        Returns None if the client does not exist.
        Raises ConflictUnresolvedError if the client keeps changing.
        """
        for _ in range(MERGE_ATTEMPTS):
            try:
                doc = await self.db.clients.find_one({"id": client_id}, {"_id": 0})
            except PyMongoError as e:
                raise _transport_error("client merge", e)
            if not doc:
                return None

            linked = enquiry_id in (doc.get("source_enquiry_ids") or [])
            conditions: List[Dict[str, Any]] = [
                {"id": client_id},
                {"source_enquiry_ids": enquiry_id} if linked
                else {"source_enquiry_ids": {"$ne": enquiry_id}},
            ]

            changes: Dict[str, Any] = {}
            if assigned_team_member_id and not doc.get("assigned_to"):
                changes["assigned_to"] = assigned_team_member_id
            for field, value in (fill_fields or {}).items():
                if value and not doc.get(field):
                    changes[field] = value
            conditions.extend(_blank(field) for field in changes)
            changes["updated_at"] = now_iso()

            try:
                result = await self.db.clients.update_one(
                    {"$and": conditions},
                    {
                        "$addToSet": {"source_enquiry_ids": enquiry_id},
                        "$set": changes
                    }
                )
            except PyMongoError as e:
                raise _transport_error("client merge", e)

            if result.matched_count == 1:
                doc.update(changes)
                if not linked:
                    doc["source_enquiry_ids"] = list(doc.get("source_enquiry_ids") or []) + [enquiry_id]
                return MergeOutcome(
                    client=Client(**doc),
                    enquiry_added=not linked,
                    assigned_now="assigned_to" in changes
                )

            logger.info(f"[STORE] Client {client_id[:8]}... changed during merge, recomputing")

        raise ConflictUnresolvedError(
            f"Client {client_id} kept changing during the merge; retry the conversion",
            {"client_id": client_id, "enquiry_id": enquiry_id}
        )

    # ---- Compensation (undo this attempt's own write) ----

    async def rollback_create(self, client_id: str, enquiry_id: str) -> bool:
        """Remove a client inserted by a failed attempt, only while nothing else links to it"""
        try:
            result = await self.db.clients.delete_one({
                "id": client_id,
                "source_enquiry_ids": [enquiry_id]
            })
        except PyMongoError as e:
            raise _transport_error("client rollback", e)
        return result.deleted_count == 1

    async def rollback_merge(
        self,
        client_id: str,
        enquiry_id: Optional[str] = None,
        assigned_team_member_id: Optional[str] = None
    ):
        """Undo what a failed attempt added to a client (link and/or assignment)"""
        try:
            if enquiry_id:
                await self.db.clients.update_one(
                    {"id": client_id},
                    {"$pull": {"source_enquiry_ids": enquiry_id}}
                )
            if assigned_team_member_id:
                await self.db.clients.update_one(
                    {"id": client_id, "assigned_to": assigned_team_member_id},
                    {"$set": {"assigned_to": None}}
                )
        except PyMongoError as e:
            raise _transport_error("client merge rollback", e)


# ════════════════════════════════════════════════════════════════════════════
# TEAM MEMBERS (read-only)
# ════════════════════════════════════════════════════════════════════════════

class TeamStore:

    def __init__(self, db):
        self.db = db

    async def ensure_indexes(self):
        await self.db.team_members.create_index("id", unique=True)

    async def list(self) -> List[TeamMember]:
        try:
            docs = await self.db.team_members.find(
                {"active": {"$ne": False}}, {"_id": 0}
            ).sort("full_name", 1).to_list(500)
        except PyMongoError as e:
            raise _transport_error("team member list", e)
        return [TeamMember(**d) for d in docs]

    async def get(self, member_id: str) -> Optional[TeamMember]:
        try:
            doc = await self.db.team_members.find_one({"id": member_id}, {"_id": 0})
        except PyMongoError as e:
            raise _transport_error("team member lookup", e)
        return TeamMember(**doc) if doc else None
