"""Data contract returned by the helpdesk collaborator."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class HelpdeskTicket(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    subject: str = ""
    description_text: Optional[str] = None
    status: int
    priority: int
    group_id: Optional[int] = None
    company_id: Optional[int] = None
    requester_id: Optional[int] = None
    responder_id: Optional[int] = None
    type: Optional[str] = None
    is_escalated: bool = False
    tags: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class HelpdeskGroup(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str
    description: Optional[str] = None


class HelpdeskCompany(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str
    description: Optional[str] = None
