"""
Visa CRM - Team member (assignment target, read-only for the conversion engine)
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict


class TeamMember(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    full_name: str
    email: Optional[str] = ""
    role: Optional[str] = ""
    active: bool = True

    @property
    def display_name(self) -> str:
        return self.full_name


class TeamMemberChoice(BaseModel):
    """Entry of the assignment picker shown before converting"""
    id: str
    display_name: str
