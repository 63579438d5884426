"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Visa CRM - Identity Matcher                                                 ║
║                                                                              ║
║  Matching rule:                                                              ║
║  - Key: email, trimmed + lower-cased                                         ║
║  - Exact match against clients.email_normalized                              ║
║  - Phone is INFORMATIONAL only (reported, never a match key)                 ║
║                                                                              ║
║  A store failure raises TransportError: "unknown" is never read as           ║
║  "no match", so a failed lookup cannot lead to a duplicate client.           ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from typing import Optional, Dict, Any

from config import normalize_email
from models import Client, is_valid_email_format
from services.conversion_errors import ConversionValidationError
from services.stores import ClientStore, EnquiryStore

logger = logging.getLogger("identity_matcher")


class IdentityMatch:
    """Result of an identity lookup"""

    def __init__(
        self,
        exists: bool,
        matched_client_id: Optional[str] = None,
        client: Optional[Client] = None,
        phone_matches: Optional[bool] = None
    ):
        self.exists = exists
        self.matched_client_id = matched_client_id
        self.client = client
        self.phone_matches = phone_matches  # None when no phone was compared

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "exists": self.exists,
            "matched_client_id": self.matched_client_id,
        }
        if self.client:
            data["client"] = {
                "id": self.client.id,
                "first_name": self.client.first_name,
                "last_name": self.client.last_name,
                "email": self.client.email,
                "phone": self.client.phone,
                "assigned_to": self.client.assigned_to,
            }
            data["phone_matches"] = self.phone_matches
        return data


def _digits(phone: Optional[str]) -> str:
    return "".join(filter(str.isdigit, phone or ""))


async def match_identity(
    clients: ClientStore,
    email: str,
    phone: Optional[str] = None
) -> IdentityMatch:
    """
    Does a client already exist for this contact identity?

    Args:
        clients: client store
        email: required, compared case-insensitively
        phone: optional, only reported through phone_matches

    Raises:
        ConversionValidationError if email is empty
        TransportError if the store is unavailable
    """
    key = normalize_email(email)
    if not key:
        raise ConversionValidationError("Email is required for identity matching")

    client = await clients.find_by_email(key)
    if not client:
        return IdentityMatch(exists=False)

    phone_matches = None
    if _digits(phone):
        phone_matches = _digits(phone) == _digits(client.phone)
        if not phone_matches:
            # Same email, different phone: still the same person under the current rule
            logger.info(f"[MATCH] {key} matched client {client.id[:8]}... with a different phone")

    logger.info(f"[MATCH] {key} → client {client.id[:8]}...")
    return IdentityMatch(
        exists=True,
        matched_client_id=client.id,
        client=client,
        phone_matches=phone_matches
    )


# ════════════════════════════════════════════════════════════════════════════
# INTAKE CHECK (email OR phone, enquiries then clients)
# ════════════════════════════════════════════════════════════════════════════

def _user_data(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": doc.get("id"),
        "first_name": doc.get("first_name", ""),
        "last_name": doc.get("last_name", ""),
        "email": doc.get("email", ""),
        "phone": doc.get("phone", ""),
    }


async def check_duplicate_contact(
    enquiries: EnquiryStore,
    clients: ClientStore,
    email: Optional[str] = "",
    phone: Optional[str] = ""
) -> Dict[str, Any]:
    """
    Advisory check used by intake forms before saving a new enquiry.

    Looks for an existing enquiry first, then a client, sharing the email or
    the phone. This is a hint for the user, not the conversion matcher.

    Returns:
        {"exists": False} or
        {"exists": True, "type": "enquiry"|"client", "user_data": {...}}
    """
    email = (email or "").strip()
    phone = (phone or "").strip()
    if not email and not phone:
        raise ConversionValidationError("Either email or phone must be provided")
    if email and not is_valid_email_format(email):
        raise ConversionValidationError(f"Invalid email format: {email}")

    existing = await enquiries.find_by_contact(email=email, phone=phone)
    if existing:
        logger.info(f"[INTAKE] Duplicate enquiry found for {email or phone}")
        return {"exists": True, "type": "enquiry", "user_data": _user_data(existing)}

    existing = await clients.find_by_contact(email=email, phone=phone)
    if existing:
        logger.info(f"[INTAKE] Duplicate client found for {email or phone}")
        return {"exists": True, "type": "client", "user_data": _user_data(existing)}

    return {"exists": False}
