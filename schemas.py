"""
Database Schemas for Build Together

MongoDB collections are defined below using Pydantic models. Each class name is
converted to lowercase for the collection name (User -> "user").

We will use these collections:
- user: registered users (credentials live here)
- property: funding proposals, with their team and chat log embedded
"""

import math
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, EmailStr, model_validator

PropertyStatus = Literal["FUNDING", "ACTIVE", "COMPLETED"]

# MongoDB stores integers as at most 8 bytes
MAX_BSON_INT = 2**63 - 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def funding_target(expected_members: int, per_member_cost: float) -> float:
    target = expected_members * per_member_cost
    if not math.isfinite(target):
        raise ValueError("target amount is too large")
    return target


class User(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    email: EmailStr
    password_hash: str = Field(..., description="BCrypt hash of password")


class ProjectUser(BaseModel):
    id: str = Field(..., description="Reference to user _id")
    name: Optional[str] = None


class ProjectMember(ProjectUser):
    joined_at: datetime = Field(default_factory=utcnow)


class ChatMessage(BaseModel):
    user: str = Field(..., description="Display name of the sender")
    message: str = Field(..., min_length=1, max_length=2000)
    timestamp: datetime = Field(default_factory=utcnow)


class Property(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1, max_length=200)
    images: List[str] = Field(..., min_length=1, description="Image URLs, first is the cover")
    created_by: ProjectUser
    admins: List[ProjectUser] = Field(default_factory=list)
    members: List[ProjectMember] = Field(default_factory=list)
    expected_members: int = Field(..., gt=1, le=MAX_BSON_INT)
    per_member_cost: float = Field(..., gt=0, allow_inf_nan=False)
    target_amount: float = Field(0, description="expected_members * per_member_cost, fixed at creation")
    status: PropertyStatus = "FUNDING"
    chat_messages: List[ChatMessage] = Field(default_factory=list)

    @model_validator(mode="after")
    def compute_target_amount(self):
        self.target_amount = funding_target(self.expected_members, self.per_member_cost)
        return self
