"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Visa CRM - Client Model                                                     ║
║                                                                              ║
║  IDENTITY RULES:                                                             ║
║  - email is the natural key: ONE client per normalized email                 ║
║  - email_normalized carries the unique index (storage is the authority)      ║
║  - assigned_to is set once, first writer wins                                ║
║  - source_enquiry_ids is an ordered set (no duplicates)                      ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from typing import Optional, List
from pydantic import BaseModel, ConfigDict
import re


def is_valid_email_format(email: str) -> bool:
    """Basic email format check"""
    if not email:
        return False
    pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
    return bool(re.match(pattern, email.strip()))


class Client(BaseModel):
    """Client document"""
    model_config = ConfigDict(extra="ignore")

    id: str
    client_code: Optional[str] = None  # Optional display code

    first_name: str = ""
    last_name: str = ""
    email: str = ""
    email_normalized: str = ""
    phone: Optional[str] = ""
    alternate_phone: Optional[str] = ""
    nationality: Optional[str] = ""
    visa_type: Optional[str] = ""
    destination_country: Optional[str] = ""
    branch_id: Optional[str] = None

    assigned_to: Optional[str] = None
    source_enquiry_ids: List[str] = []

    status: str = "Active"
    created_at: str = ""
    updated_at: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()
