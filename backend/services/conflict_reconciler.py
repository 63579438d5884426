"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Visa CRM - Conflict Reconciler                                              ║
║                                                                              ║
║  Repairs the race between the duplicate check and the client insert:         ║
║  another conversion inserted the same email first, the unique index          ║
║  rejected ours. Instead of failing, the enquiry is merged into the winner.   ║
║                                                                              ║
║  RULES:                                                                      ║
║  - Re-run the identity match (the winning write has landed)                  ║
║  - enquiry id appended with set semantics (idempotent)                       ║
║  - assigned_to written only if unset (first writer wins)                     ║
║  - no winner visible → ConflictUnresolvedError (retryable)                   ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from typing import Optional

from config import normalize_email
from models import Enquiry, MERGE_FILLABLE_FIELDS
from services.conversion_errors import (
    ConflictUnresolvedError,
    EmailConflictError,
)
from services.identity_matcher import match_identity
from services.stores import ClientStore, MergeOutcome

logger = logging.getLogger("conflict_reconciler")


def merge_fill_fields(enquiry: Enquiry) -> dict:
    """Enquiry values offered to blank fields of the target client"""
    return {
        field: getattr(enquiry, field)
        for field in MERGE_FILLABLE_FIELDS
        if getattr(enquiry, field)
    }


async def reconcile_conflict(
    clients: ClientStore,
    enquiry: Enquiry,
    assigned_team_member_id: Optional[str],
    conflict: Optional[EmailConflictError] = None
) -> MergeOutcome:
    """
    Merge an enquiry into the client currently holding its email.

    Args:
        clients: client store
        enquiry: enquiry being converted (contact fields as read at attempt start)
        assigned_team_member_id: owner to set if the client has none
        conflict: uniqueness violation from the failed insert; None when run
            from the operator repair entry point

    Returns:
        MergeOutcome of the merge

    Raises:
        ConflictUnresolvedError if no client holds the email (read-after-write gap)
        TransportError if the store is unavailable
    """
    key = normalize_email(enquiry.email)
    if conflict is not None and normalize_email(conflict.email) != key:
        logger.warning(
            f"[RECONCILE] Conflict email {conflict.email} differs from enquiry email {enquiry.email}"
        )

    match = await match_identity(clients, key)
    if not match.exists:
        logger.warning(f"[RECONCILE] No client visible for {key} (enquiry {enquiry.id[:8]}...)")
        raise ConflictUnresolvedError(
            f"No client found for {key}; retry the conversion",
            {"enquiry_id": enquiry.id, "email": key}
        )

    outcome = await clients.merge_enquiry_source(
        match.matched_client_id,
        enquiry.id,
        assigned_team_member_id,
        fill_fields=merge_fill_fields(enquiry)
    )
    if outcome is None:
        # Client vanished between the match and the merge
        raise ConflictUnresolvedError(
            f"Client {match.matched_client_id} disappeared during reconciliation",
            {"enquiry_id": enquiry.id, "client_id": match.matched_client_id}
        )

    logger.info(
        f"[RECONCILE] Enquiry {enquiry.id[:8]}... merged into client {outcome.client.id[:8]}... "
        f"| added={outcome.enquiry_added} assigned_now={outcome.assigned_now} "
        f"| owner={outcome.client.assigned_to}"
    )
    return outcome
