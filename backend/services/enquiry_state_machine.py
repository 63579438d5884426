"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Visa CRM - Enquiry State Machine (conversion side)                          ║
║                                                                              ║
║  ONLY THIS MODULE may mark an enquiry as converted                           ║
║                                                                              ║
║  INVARIANTS:                                                                 ║
║  - is_client=True IMPLIES client_id non empty                                ║
║  - is_client=True IMPLIES client_id references an existing client            ║
║  - open → converted happens once; converted is TERMINAL                      ║
║  - enquiry_status is NEVER changed by conversion                             ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from typing import Optional

from models import Enquiry, is_valid_email_format
from services.conversion_errors import (
    AlreadyConvertedError,
    ConversionValidationError,
)
from services.stores import EnquiryStore, ClientStore

logger = logging.getLogger("enquiry_state_machine")


# ════════════════════════════════════════════════════════════════════════════
# VALID STATE TRANSITIONS
# ════════════════════════════════════════════════════════════════════════════

OPEN = "open"
CONVERTED = "converted"

VALID_CONVERSION_TRANSITIONS = {
    OPEN: [CONVERTED],
    CONVERTED: [],  # TERMINAL
}


class EnquiryInvariantError(Exception):
    """Raised when a conversion invariant would be violated"""
    pass


def conversion_state(enquiry: Enquiry) -> str:
    return CONVERTED if enquiry.is_client else OPEN


def validate_conversion_transition(enquiry_id: str, from_state: str, to_state: str) -> bool:
    valid_next = VALID_CONVERSION_TRANSITIONS.get(from_state, [])
    if to_state not in valid_next:
        raise EnquiryInvariantError(
            f"INVALID TRANSITION: enquiry {enquiry_id} cannot go from '{from_state}' to '{to_state}'"
        )
    return True


def check_converted_invariants(is_client: bool, client_id: Optional[str]) -> bool:
    if is_client and not client_id:
        raise EnquiryInvariantError("INVARIANT VIOLATION: is_client=True requires client_id")
    if client_id and not is_client:
        raise EnquiryInvariantError("INVARIANT VIOLATION: client_id requires is_client=True")
    return True


# ════════════════════════════════════════════════════════════════════════════
# PRECONDITIONS
# ════════════════════════════════════════════════════════════════════════════

def assert_convertible(enquiry: Enquiry):
    """
    Raise unless the enquiry may start a conversion:
    - not converted yet
    - first_name and last_name present
    - email present and well formed (identity key of the client)
    """
    if enquiry.is_client:
        raise AlreadyConvertedError(enquiry.id, enquiry.client_id)

    missing = [
        label for label, value in (
            ("first_name", enquiry.first_name),
            ("last_name", enquiry.last_name),
            ("email", enquiry.email),
        )
        if not (value or "").strip()
    ]
    if missing:
        raise ConversionValidationError(
            f"Missing required fields: {', '.join(missing)}",
            {"missing": missing}
        )

    if not is_valid_email_format(enquiry.email):
        raise ConversionValidationError(
            f"Invalid email format: {enquiry.email}",
            {"email": enquiry.email}
        )


# ════════════════════════════════════════════════════════════════════════════
# SAFE TRANSITION (THE ONLY WAY TO MARK CONVERTED)
# ════════════════════════════════════════════════════════════════════════════

async def mark_enquiry_converted(
    enquiries: EnquiryStore,
    clients: ClientStore,
    enquiry: Enquiry,
    client_id: str
) -> bool:
    """
    🔒 Only function allowed to set is_client / client_id.

    1. Checks the invariants and the transition
    2. Checks the target client exists
    3. Conditional write (see EnquiryStore.mark_converted)

    Returns False when the conditional write matched nothing (enquiry
    converted concurrently, or identity fields edited mid-conversion).
    """
    check_converted_invariants(True, client_id)
    validate_conversion_transition(enquiry.id, conversion_state(enquiry), CONVERTED)

    if not await clients.get(client_id):
        raise EnquiryInvariantError(
            f"INVARIANT VIOLATION: client {client_id} does not exist"
        )

    written = await enquiries.mark_converted(enquiry, client_id)
    if written:
        logger.info(
            f"[STATE_MACHINE] Enquiry {enquiry.enquiry_id or enquiry.id} -> converted | "
            f"client={client_id} | status kept '{enquiry.status}'"
        )
    else:
        logger.warning(
            f"[STATE_MACHINE] Enquiry {enquiry.id} not marked: changed or converted concurrently"
        )
    return written
