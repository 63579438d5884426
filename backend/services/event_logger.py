"""
Visa CRM - Event Logger

Audit trail for conversion actions (convert, merge, reconcile, abort, rollback).
Single function to call from any route/service.
"""

import uuid
import logging
from pymongo.errors import PyMongoError
from config import now_iso

logger = logging.getLogger("event_logger")


async def log_event(
    db,
    action: str,
    entity_type: str,
    entity_id: str,
    user: str = "system",
    details: dict = None,
    related: dict = None
):
    """
    Write a single event to the event_log collection.

    Args:
        db: database handle
        action: e.g. convert_enquiry, merge_enquiry, reconcile_conflict
        entity_type: enquiry | client
        entity_id: ID of the primary entity
        user: email of user performing action
        details: free-form dict (decision, reason, retryable, etc.)
        related: linked entity IDs (enquiry_id, client_id, team_member_id)
    """
    try:
        await db.event_log.insert_one({
            "id": str(uuid.uuid4()),
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "user": user,
            "details": details or {},
            "related": related or {},
            "created_at": now_iso()
        })
    except PyMongoError as e:
        # The audit trail never fails a conversion that already committed
        logger.error(f"[EVENT_LOG] {action} {entity_type}={entity_id} not recorded: {e}")
