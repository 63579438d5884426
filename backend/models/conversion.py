"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Visa CRM - Conversion models (enquiry → client)                             ║
║                                                                              ║
║  A conversion attempt ends with exactly one decision:                        ║
║  - create_new          → status "converted" (new client)                     ║
║  - merge_into_existing → status "merged" (enquiry attached to a client)      ║
║  - aborted             → status "aborted" (duplicate shown to the user)      ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from typing import Optional, Dict, Any
from enum import Enum
from pydantic import BaseModel


class ConversionDecision(str, Enum):
    CREATE_NEW = "create_new"
    MERGE_INTO_EXISTING = "merge_into_existing"
    ABORTED = "aborted"


class ConversionStatus(str, Enum):
    CONVERTED = "converted"
    MERGED = "merged"
    ABORTED = "aborted"


class ConversionAttempt(BaseModel):
    """Transient unit of work, one per convert/commit call"""
    enquiry_id: str
    assigned_team_member_id: Optional[str] = None
    allow_duplicate: bool = False
    decision: Optional[ConversionDecision] = None


class ConversionResult(BaseModel):
    status: ConversionStatus
    decision: ConversionDecision
    enquiry_id: str
    client_id: Optional[str] = None
    matched_client_id: Optional[str] = None
    match: Optional[Dict[str, Any]] = None  # Matched identity shown on abort
    reconciled: bool = False  # True when the commit lost the race and was repaired


# ---- Request bodies ----

class ConvertRequest(BaseModel):
    assigned_team_member_id: Optional[str] = None
    allow_duplicate: bool = False
    skip_assignment: bool = False  # Legacy path: convert without an owner


class CommitConversionRequest(BaseModel):
    decision: ConversionDecision
    assigned_team_member_id: Optional[str] = None
    matched_client_id: Optional[str] = None  # Required for merge_into_existing
    skip_assignment: bool = False


class RepairConversionRequest(BaseModel):
    assigned_team_member_id: Optional[str] = None


class DuplicateUserCheck(BaseModel):
    email: Optional[str] = ""
    phone: Optional[str] = ""
