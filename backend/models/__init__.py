"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Visa CRM - Models Package                                                   ║
║                                                                              ║
║  from models import Enquiry, Client, ConversionResult, etc.                  ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from .enquiry import (
    EnquiryStatus,
    NormalizedStatus,
    normalize_enquiry_status,
    Enquiry,
    ENQUIRY_IDENTITY_FIELDS,
    CLIENT_SEED_FIELDS,
    MERGE_FILLABLE_FIELDS,
)
from .client import Client, is_valid_email_format
from .team import TeamMember, TeamMemberChoice
from .conversion import (
    ConversionDecision,
    ConversionStatus,
    ConversionAttempt,
    ConversionResult,
    ConvertRequest,
    CommitConversionRequest,
    RepairConversionRequest,
    DuplicateUserCheck,
)
