from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class EntryStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class ParticipationCategory(str, Enum):
    COMMITTEE_WORK = "Committee Work"
    COMMUNITY_SERVICE = "Community Service"
    EVENT_ORGANIZATION = "Event Organization"
    MENTORING = "Mentoring"
    PROJECT_DEVELOPMENT = "Project Development"
    ADMINISTRATIVE = "Administrative"
    OUTREACH = "Outreach"
    OTHER = "Other"


class MemberRole(str, Enum):
    WEB_STEWARD = "WEB_STEWARD"
    BOARD_CHAIR = "BOARD_CHAIR"
    COMMITTEE_LEADER = "COMMITTEE_LEADER"
    CONTENT_MODERATOR = "CONTENT_MODERATOR"
    SUPPORT_STAFF = "SUPPORT_STAFF"
    STEWARD = "STEWARD"
    PARTNER = "PARTNER"
    RESIDENT = "RESIDENT"


class Member(BaseModel):
    id: UUID
    role: MemberRole = MemberRole.RESIDENT


class LogParticipationRequest(BaseModel):
    # Field rules live in ParticipationLedger.record_entry so every caller
    # gets the same field-level messages.
    hours: Decimal
    category: str
    description: str

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "hours": 2.5,
            "category": "Community Service",
            "description": "Helped set up the harvest festival",
        }
    })


class TransitionRequest(BaseModel):
    reason: Optional[str] = Field(default=None, description="Optional note from the reviewer")


class ParticipationEntry(BaseModel):
    id: UUID
    member_id: UUID
    hours: Decimal
    category: ParticipationCategory
    description: str
    status: EntryStatus
    created_at: datetime
    approved_at: Optional[datetime] = None
    reviewed_by: Optional[UUID] = None
    review_note: Optional[str] = None
    idempotency_key: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    def can_transition(self) -> bool:
        return self.status == EntryStatus.PENDING


class MemberParticipationSummary(BaseModel):
    member_id: UUID
    total_hours: Decimal
    pending_hours: Decimal
    equity_units: int
    progress_to_next_unit: Decimal
    hours_to_next_unit: Decimal
    total_logs: int


class ParticipationListResponse(BaseModel):
    logs: list[ParticipationEntry]
    summary: MemberParticipationSummary


class CategoryHours(BaseModel):
    category: ParticipationCategory
    hours: Decimal
    count: int


class StatusCount(BaseModel):
    status: EntryStatus
    count: int


class ContributorHours(BaseModel):
    member_id: UUID
    total_hours: Decimal


class ParticipationAnalytics(BaseModel):
    period: int
    total_hours: Decimal
    total_logs: int
    hours_by_category: list[CategoryHours]
    count_by_status: list[StatusCount]
    top_contributors: list[ContributorHours]
    recent_logs: list[ParticipationEntry]
