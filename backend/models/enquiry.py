"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Visa CRM - Enquiry Model                                                    ║
║                                                                              ║
║  RULES:                                                                      ║
║  1. enquiry_status is legacy, case-inconsistent free text in stored data     ║
║  2. Known values normalize to EnquiryStatus, anything else stays LEGACY      ║
║  3. is_client=True IMPLIES client_id references an existing client           ║
║  4. Conversion never touches enquiry_status                                  ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from typing import Optional
from enum import Enum
from pydantic import BaseModel, ConfigDict


class EnquiryStatus(str, Enum):
    """
    Working statuses of an enquiry (set by the enquiry editor, never by conversion)
    """
    NEW = "New"
    CONTACTED = "Contacted"
    QUALIFIED = "Qualified"
    PROCESSING = "Processing"
    CLOSED = "Closed"
    LOST = "Lost"
    ACTIVE = "active"
    NOT_CONNECT = "not connect"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    OFF_LEADS = "off leads"
    REFERRAL = "referral"
    LEGACY = "legacy"         # Unrecognized stored value, kept verbatim in NormalizedStatus.raw


# Lookup on the case/space-folded form of the stored value
_STATUS_LOOKUP = {
    " ".join(s.value.lower().replace("_", " ").replace("-", " ").split()): s
    for s in EnquiryStatus if s is not EnquiryStatus.LEGACY
}


class NormalizedStatus(BaseModel):
    """Boundary form of enquiry_status: a closed enum value plus the raw stored text"""
    model_config = ConfigDict(frozen=True)

    status: EnquiryStatus
    raw: str = ""

    @property
    def is_legacy(self) -> bool:
        return self.status is EnquiryStatus.LEGACY

    def __str__(self) -> str:
        return self.raw if self.is_legacy else self.status.value


def normalize_enquiry_status(value: Optional[str]) -> NormalizedStatus:
    """
    Map a stored enquiry_status onto the closed vocabulary.

    "new", " NEW ", "Not-Connect" and "not_connect" all resolve to their enum
    member. Unknown values (e.g. "Unassigned FB Lead") are never rejected:
    they come back as LEGACY with the original text preserved.
    Empty values are treated as NEW.
    """
    raw = (value or "").strip()
    if not raw:
        return NormalizedStatus(status=EnquiryStatus.NEW, raw="")
    key = " ".join(raw.lower().replace("_", " ").replace("-", " ").split())
    status = _STATUS_LOOKUP.get(key)
    if status is None:
        return NormalizedStatus(status=EnquiryStatus.LEGACY, raw=raw)
    return NormalizedStatus(status=status, raw=raw)


class Enquiry(BaseModel):
    """Enquiry document as read by the conversion engine"""
    model_config = ConfigDict(extra="ignore")

    id: str
    enquiry_id: Optional[str] = None  # Human-readable sequential id (ENQ-0042)

    # Contact
    first_name: Optional[str] = ""
    last_name: Optional[str] = ""
    email: Optional[str] = ""
    phone: Optional[str] = ""
    alternate_phone: Optional[str] = ""
    nationality: Optional[str] = ""

    # Classification
    visa_type: Optional[str] = ""
    destination_country: Optional[str] = ""
    enquiry_source: Optional[str] = ""
    branch_id: Optional[str] = None

    # Workflow
    enquiry_status: Optional[str] = None
    assigned_consultant: Optional[str] = None
    is_client: bool = False
    client_id: Optional[str] = None
    converted_at: Optional[str] = None

    created_at: str = ""
    updated_at: str = ""

    @property
    def status(self) -> NormalizedStatus:
        return normalize_enquiry_status(self.enquiry_status)

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


# Fields frozen while a conversion is in flight
ENQUIRY_IDENTITY_FIELDS = ("first_name", "last_name", "email", "phone")

# Fields copied onto a new client, and used to fill blanks on a merge target
CLIENT_SEED_FIELDS = (
    "first_name",
    "last_name",
    "email",
    "phone",
    "alternate_phone",
    "nationality",
    "visa_type",
    "destination_country",
    "branch_id",
)

MERGE_FILLABLE_FIELDS = (
    "phone",
    "alternate_phone",
    "nationality",
    "visa_type",
    "destination_country",
)
