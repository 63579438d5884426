"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Visa CRM - Conversion Orchestrator (enquiry → client)                       ║
║                                                                              ║
║  Flow:                                                                       ║
║   1. Load enquiry (not found / already converted / missing fields)           ║
║   2. Resolve the team member assignment                                      ║
║   3. Identity match on email (unless allow_duplicate)                        ║
║   4. Match + no confirmation → ABORTED with the match (user decides)         ║
║   5. Optimistic commit: create client, or merge on confirmed decision        ║
║   6. Unique index violation → conflict reconciler → merge into the winner    ║
║   7. Mark enquiry converted (last write, conditional)                        ║
║                                                                              ║
║  GUARANTEES:                                                                 ║
║  - ONE client per normalized email (the unique index decides)                ║
║  - any error leaves the enquiry unconverted, this attempt's write undone     ║
║  - never a second client as fallback for any error                           ║
║  - transport failure: full sequence re-run at most once                      ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from typing import Optional, Dict, Any, List

from config import CONVERSION_TRANSPORT_RETRIES, normalize_email
from models import (
    Enquiry,
    Client,
    TeamMemberChoice,
    ConversionAttempt,
    ConversionDecision,
    ConversionStatus,
    ConversionResult,
    CLIENT_SEED_FIELDS,
)
from services.conversion_errors import (
    AlreadyConvertedError,
    AssignmentRequiredError,
    ConflictUnresolvedError,
    ConversionValidationError,
    EmailConflictError,
    EnquiryNotFoundError,
    TransportError,
)
from services.stores import EnquiryStore, ClientStore, TeamStore
from services.identity_matcher import match_identity, check_duplicate_contact
from services.conflict_reconciler import reconcile_conflict, merge_fill_fields
from services.enquiry_state_machine import (
    assert_convertible,
    mark_enquiry_converted,
    EnquiryInvariantError,
)
from services.event_logger import log_event

logger = logging.getLogger("conversion")


class _ClientWrite:
    """What an attempt wrote on the client side, kept for compensation"""

    def __init__(
        self,
        client: Client,
        created: bool = False,
        enquiry_added: bool = False,
        assigned_now: bool = False
    ):
        self.client = client
        self.created = created
        self.enquiry_added = enquiry_added
        self.assigned_now = assigned_now


class ConversionService:
    """
    Entry point of the conversion engine. One instance per request is fine:
    it holds no state besides its stores.
    """

    def __init__(
        self,
        db,
        enquiries: Optional[EnquiryStore] = None,
        clients: Optional[ClientStore] = None,
        team: Optional[TeamStore] = None,
        transport_retries: int = CONVERSION_TRANSPORT_RETRIES
    ):
        self.db = db
        self.enquiries = enquiries or EnquiryStore(db)
        self.clients = clients or ClientStore(db)
        self.team = team or TeamStore(db)
        self.transport_retries = max(0, min(1, transport_retries))

    async def ensure_indexes(self):
        await self.enquiries.ensure_indexes()
        await self.clients.ensure_indexes()
        await self.team.ensure_indexes()
        await self.db.event_log.create_index("created_at")

    # ==================== READ SIDE ====================

    async def list_team_members(self) -> List[TeamMemberChoice]:
        members = await self.team.list()
        return [TeamMemberChoice(id=m.id, display_name=m.display_name) for m in members]

    async def check_duplicate(self, enquiry_id: str) -> Dict[str, Any]:
        """First half of the two-call flow: report the identity match, write nothing"""
        enquiry = await self._load(enquiry_id)
        assert_convertible(enquiry)
        match = await match_identity(self.clients, enquiry.email, enquiry.phone)
        return {"enquiry_id": enquiry.id, **match.to_dict()}

    async def check_duplicate_contact(self, email: str = "", phone: str = "") -> Dict[str, Any]:
        return await check_duplicate_contact(self.enquiries, self.clients, email, phone)

    # ==================== CONVERT ====================

    async def convert(
        self,
        enquiry_id: str,
        assigned_team_member_id: Optional[str] = None,
        allow_duplicate: bool = False,
        skip_assignment: bool = False,
        user: str = "system"
    ) -> ConversionResult:
        """
        Single-call conversion.

        allow_duplicate=False: a matching client stops the flow with an
        ABORTED result carrying the match. allow_duplicate=True (user
        confirmed): the insert is attempted directly and a colliding email is
        merged by the reconciler.
        """
        attempt = ConversionAttempt(
            enquiry_id=enquiry_id,
            assigned_team_member_id=assigned_team_member_id,
            allow_duplicate=allow_duplicate
        )
        return await self._with_transport_retry(self._convert_once, attempt, skip_assignment, user)

    async def commit_conversion(
        self,
        enquiry_id: str,
        decision: ConversionDecision,
        assigned_team_member_id: Optional[str] = None,
        matched_client_id: Optional[str] = None,
        skip_assignment: bool = False,
        user: str = "system"
    ) -> ConversionResult:
        """Second half of the two-call flow: apply the user's decision"""
        attempt = ConversionAttempt(
            enquiry_id=enquiry_id,
            assigned_team_member_id=assigned_team_member_id,
            allow_duplicate=decision != ConversionDecision.ABORTED,
            decision=decision
        )
        return await self._with_transport_retry(
            self._commit_once, attempt, matched_client_id, skip_assignment, user
        )

    async def repair_conversion(
        self,
        enquiry_id: str,
        assigned_team_member_id: Optional[str] = None,
        user: str = "system"
    ) -> ConversionResult:
        """
        Operator entry point: re-run the reconciliation for an enquiry whose
        conversion ended with ConflictUnresolved (or left a stray link).
        Safe to run repeatedly.
        """
        enquiry = await self._load(enquiry_id)
        if enquiry.is_client:
            logger.info(f"[REPAIR] Enquiry {enquiry.id[:8]}... already linked to {enquiry.client_id}")
            return ConversionResult(
                status=ConversionStatus.MERGED,
                decision=ConversionDecision.MERGE_INTO_EXISTING,
                enquiry_id=enquiry.id,
                client_id=enquiry.client_id
            )
        assert_convertible(enquiry)
        assigned = None
        if assigned_team_member_id:
            assigned = await self._resolve_assignment(assigned_team_member_id, skip_assignment=True)

        outcome = await reconcile_conflict(self.clients, enquiry, assigned)
        write = _ClientWrite(outcome.client, enquiry_added=outcome.enquiry_added, assigned_now=outcome.assigned_now)
        await self._finalize(enquiry, write, assigned, user)

        await log_event(
            self.db, "repair_conversion", "enquiry", enquiry.id, user=user,
            details={"assigned_now": outcome.assigned_now},
            related={"client_id": outcome.client.id, "team_member_id": assigned}
        )
        return ConversionResult(
            status=ConversionStatus.MERGED,
            decision=ConversionDecision.MERGE_INTO_EXISTING,
            enquiry_id=enquiry.id,
            client_id=outcome.client.id,
            reconciled=True
        )

    # ==================== ATTEMPTS ====================

    async def _convert_once(
        self,
        attempt: ConversionAttempt,
        skip_assignment: bool,
        user: str
    ) -> ConversionResult:
        enquiry = await self._load(attempt.enquiry_id)
        assert_convertible(enquiry)
        assigned = await self._resolve_assignment(attempt.assigned_team_member_id, skip_assignment)

        if not attempt.allow_duplicate:
            match = await match_identity(self.clients, enquiry.email, enquiry.phone)
            if match.exists:
                return await self._abort(enquiry, match.matched_client_id, match.to_dict(), user)

        return await self._create_or_reconcile(enquiry, assigned, user)

    async def _commit_once(
        self,
        attempt: ConversionAttempt,
        matched_client_id: Optional[str],
        skip_assignment: bool,
        user: str
    ) -> ConversionResult:
        enquiry = await self._load(attempt.enquiry_id)
        assert_convertible(enquiry)

        if attempt.decision == ConversionDecision.ABORTED:
            return await self._abort(enquiry, matched_client_id, None, user)

        assigned = await self._resolve_assignment(attempt.assigned_team_member_id, skip_assignment)

        if attempt.decision == ConversionDecision.CREATE_NEW:
            return await self._create_or_reconcile(enquiry, assigned, user)

        return await self._merge_confirmed(enquiry, matched_client_id, assigned, user)

    async def _create_or_reconcile(
        self,
        enquiry: Enquiry,
        assigned: Optional[str],
        user: str
    ) -> ConversionResult:
        seed = {field: getattr(enquiry, field) for field in CLIENT_SEED_FIELDS}
        try:
            client = await self.clients.create(seed, assigned, enquiry.id)
        except EmailConflictError as conflict:
            logger.info(
                f"[CONVERT] Email {conflict.email} taken since the check, "
                f"reconciling enquiry {enquiry.id[:8]}..."
            )
            outcome = await reconcile_conflict(self.clients, enquiry, assigned, conflict)
            write = _ClientWrite(
                outcome.client,
                enquiry_added=outcome.enquiry_added,
                assigned_now=outcome.assigned_now
            )
            await self._finalize(enquiry, write, assigned, user)
            await log_event(
                self.db, "reconcile_conflict", "enquiry", enquiry.id, user=user,
                details={"email": normalize_email(enquiry.email), "assigned_now": outcome.assigned_now},
                related={"client_id": outcome.client.id, "team_member_id": assigned}
            )
            return ConversionResult(
                status=ConversionStatus.MERGED,
                decision=ConversionDecision.MERGE_INTO_EXISTING,
                enquiry_id=enquiry.id,
                client_id=outcome.client.id,
                matched_client_id=outcome.client.id,
                reconciled=True
            )

        await self._finalize(enquiry, _ClientWrite(client, created=True), assigned, user)
        logger.info(f"[CONVERT] Enquiry {enquiry.id[:8]}... → new client {client.id[:8]}...")
        await log_event(
            self.db, "convert_enquiry", "enquiry", enquiry.id, user=user,
            details={"decision": ConversionDecision.CREATE_NEW.value},
            related={"client_id": client.id, "team_member_id": assigned}
        )
        return ConversionResult(
            status=ConversionStatus.CONVERTED,
            decision=ConversionDecision.CREATE_NEW,
            enquiry_id=enquiry.id,
            client_id=client.id
        )

    async def _merge_confirmed(
        self,
        enquiry: Enquiry,
        matched_client_id: Optional[str],
        assigned: Optional[str],
        user: str
    ) -> ConversionResult:
        if not matched_client_id:
            raise ConversionValidationError("matched_client_id is required to merge")

        target = await self.clients.get(matched_client_id)
        if not target:
            raise ConversionValidationError(
                f"Client {matched_client_id} not found",
                {"matched_client_id": matched_client_id}
            )
        if target.email_normalized != normalize_email(enquiry.email):
            raise ConversionValidationError(
                "The selected client does not share the enquiry email",
                {"matched_client_id": matched_client_id}
            )

        outcome = await self.clients.merge_enquiry_source(
            target.id, enquiry.id, assigned, fill_fields=merge_fill_fields(enquiry)
        )
        if outcome is None:
            raise ConflictUnresolvedError(
                f"Client {target.id} disappeared during the merge",
                {"enquiry_id": enquiry.id, "client_id": target.id}
            )
        write = _ClientWrite(outcome.client, enquiry_added=outcome.enquiry_added, assigned_now=outcome.assigned_now)
        await self._finalize(enquiry, write, assigned, user)

        logger.info(f"[CONVERT] Enquiry {enquiry.id[:8]}... merged into client {target.id[:8]}...")
        await log_event(
            self.db, "merge_enquiry", "enquiry", enquiry.id, user=user,
            details={"decision": ConversionDecision.MERGE_INTO_EXISTING.value, "assigned_now": outcome.assigned_now},
            related={"client_id": target.id, "team_member_id": assigned}
        )
        return ConversionResult(
            status=ConversionStatus.MERGED,
            decision=ConversionDecision.MERGE_INTO_EXISTING,
            enquiry_id=enquiry.id,
            client_id=target.id,
            matched_client_id=target.id
        )

    async def _abort(
        self,
        enquiry: Enquiry,
        matched_client_id: Optional[str],
        match: Optional[Dict[str, Any]],
        user: str
    ) -> ConversionResult:
        logger.info(f"[CONVERT] Enquiry {enquiry.id[:8]}... aborted, matched client {matched_client_id}")
        await log_event(
            self.db, "conversion_aborted", "enquiry", enquiry.id, user=user,
            related={"client_id": matched_client_id}
        )
        return ConversionResult(
            status=ConversionStatus.ABORTED,
            decision=ConversionDecision.ABORTED,
            enquiry_id=enquiry.id,
            matched_client_id=matched_client_id,
            match=match
        )

    # ==================== FINAL WRITE + COMPENSATION ====================

    async def _finalize(
        self,
        enquiry: Enquiry,
        write: _ClientWrite,
        assigned: Optional[str],
        user: str
    ):
        """Mark the enquiry converted; on any failure undo this attempt's client write"""
        try:
            written = await mark_enquiry_converted(self.enquiries, self.clients, enquiry, write.client.id)
        except TransportError:
            await self._rollback(enquiry, write, assigned, user)
            raise
        except EnquiryInvariantError as e:
            await self._rollback(enquiry, write, assigned, user)
            raise ConflictUnresolvedError(str(e), {"enquiry_id": enquiry.id, "client_id": write.client.id})

        if written:
            return

        try:
            current = await self.enquiries.get(enquiry.id)
        except TransportError:
            await self._rollback(enquiry, write, assigned, user)
            raise

        if current and current.is_client and current.client_id == write.client.id:
            # A concurrent request converted the same enquiry onto the same client
            raise AlreadyConvertedError(current.id, current.client_id)

        await self._rollback(enquiry, write, assigned, user)
        if current is None:
            raise EnquiryNotFoundError(f"Enquiry {enquiry.id} not found", {"enquiry_id": enquiry.id})
        if current.is_client:
            raise AlreadyConvertedError(current.id, current.client_id)
        raise ConversionValidationError(
            "Enquiry contact details changed during conversion, reload and retry",
            {"enquiry_id": enquiry.id}
        )

    async def _rollback(
        self,
        enquiry: Enquiry,
        write: _ClientWrite,
        assigned: Optional[str],
        user: str
    ):
        client_id = write.client.id
        try:
            if write.created:
                removed = await self.clients.rollback_create(client_id, enquiry.id)
                if not removed:
                    # Another enquiry was merged into it meanwhile: keep it, drop our link
                    await self.clients.rollback_merge(client_id, enquiry.id)
            elif write.enquiry_added or write.assigned_now:
                await self.clients.rollback_merge(
                    client_id,
                    enquiry.id if write.enquiry_added else None,
                    assigned if write.assigned_now else None
                )
        except TransportError as e:
            logger.error(
                f"[ROLLBACK] Could not undo client write {client_id} for enquiry {enquiry.id}: "
                f"{e.message}. Run repair_conversion for this enquiry."
            )
            return

        logger.warning(f"[ROLLBACK] Client write {client_id[:8]}... undone for enquiry {enquiry.id[:8]}...")
        await log_event(
            self.db, "conversion_rollback", "enquiry", enquiry.id, user=user,
            details={"created": write.created, "enquiry_added": write.enquiry_added},
            related={"client_id": client_id}
        )

    # ==================== HELPERS ====================

    async def _load(self, enquiry_id: str) -> Enquiry:
        enquiry = await self.enquiries.get(enquiry_id)
        if not enquiry:
            raise EnquiryNotFoundError(f"Enquiry {enquiry_id} not found", {"enquiry_id": enquiry_id})
        return enquiry

    async def _resolve_assignment(self, member_id: Optional[str], skip_assignment: bool) -> Optional[str]:
        if not member_id:
            if skip_assignment:
                return None
            raise AssignmentRequiredError("Select a team member to assign the client to")

        member = await self.team.get(member_id)
        if not member or not member.active:
            raise ConversionValidationError(
                f"Unknown team member: {member_id}",
                {"assigned_team_member_id": member_id}
            )
        return member.id

    async def _with_transport_retry(self, fn, *args):
        retries = 0
        while True:
            try:
                return await fn(*args)
            except TransportError as e:
                if retries >= self.transport_retries:
                    logger.error(f"[CONVERT] Transport failure, giving up: {e.message}")
                    raise
                retries += 1
                logger.warning(f"[CONVERT] Transport failure, re-running full sequence: {e.message}")
