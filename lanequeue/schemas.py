"""Pydantic schemas for requests.

Request bodies use the camelCase keys display and staff clients send;
responses are returned as plain dicts directly from the service layer.
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import LaneType, QueueAction, StaffRole


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ReservationRequest(CamelModel):
    lane_id: int = Field(alias="laneId", gt=0)


class OperationRequest(CamelModel):
    action: QueueAction
    lane_id: int = Field(alias="laneId", gt=0)
    actor_id: int = Field(alias="actorId", gt=0)

    @field_validator("action", mode="before")
    @classmethod
    def _legacy_action(cls, value):
        # NEXT / CALL / BUZZ and lowercase names resolve through QueueAction._missing_
        if isinstance(value, str):
            try:
                return QueueAction(value)
            except ValueError:
                return value
        return value


class LaneCreateRequest(CamelModel):
    actor_id: int = Field(alias="actorId")
    name: str = Field(min_length=1)
    description: Optional[str] = None
    type: LaneType = LaneType.regular


class LaneUpdateRequest(CamelModel):
    actor_id: int = Field(alias="actorId")
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = Field(default=None, alias="isActive")
    current_number: Optional[int] = Field(default=None, alias="currentNumber", ge=0)
    last_served_number: Optional[int] = Field(default=None, alias="lastServedNumber", ge=0)


class AssignmentRequest(CamelModel):
    actor_id: int = Field(alias="actorId")
    user_id: int = Field(alias="userId")


class StaffCreateRequest(CamelModel):
    actor_id: int = Field(alias="actorId")
    username: str = Field(min_length=1)
    name: str
    role: StaffRole = StaffRole.user


class StaffUpdateRequest(CamelModel):
    actor_id: int = Field(alias="actorId")
    name: Optional[str] = None
    role: Optional[StaffRole] = None
    is_active: Optional[bool] = Field(default=None, alias="isActive")
