from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import Literal, List, Optional

RequestType = Literal["add", "update", "fix"]
MediaType = Literal["movie", "tv"]
RequestStatus = Literal["pending", "in_progress", "completed", "rejected"]
SortBy = Literal["created_at", "counter"]
SortOrder = Literal["asc", "desc"]


class CreateRequest(BaseModel):
    type: RequestType
    media_id: int = Field(gt=0)
    media_type: MediaType
    media_title: str = Field(min_length=1, max_length=500)
    media_poster: Optional[str] = Field(default=None, max_length=1000)
    description: Optional[str] = None
    notify_whatsapp: bool = False


class RequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    type: str
    media_id: int
    media_type: str
    media_title: str
    media_poster: Optional[str] = None
    description: Optional[str] = None
    status: str
    counter: int
    rejection_reason: str = ""
    notify_whatsapp: bool = False
    created_at: datetime
    updated_at: datetime


class UserBrief(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    email: str


class AdminRequestOut(RequestOut):
    user: Optional[UserBrief] = None


class RequestListing(BaseModel):
    items: List[AdminRequestOut]
    total: int
    has_more: bool


class PatchStatus(BaseModel):
    status: RequestStatus
    rejection_reason: Optional[str] = None


class GroupStatusUpdate(BaseModel):
    media_id: int
    media_type: MediaType
    type: RequestType
    status: RequestStatus
    rejection_reason: Optional[str] = None


class GroupStatusResult(BaseModel):
    success: bool = True
    updated: int
    message: str


class LowDemandSweep(BaseModel):
    cutoff_hours: Optional[int] = Field(default=None, ge=0)
    demand_threshold: Optional[int] = Field(default=None, ge=1)
    message: Optional[str] = None


class SweepResult(BaseModel):
    success: bool = True
    updated: int


class GroupUserOut(BaseModel):
    id: str
    name: str
    email: str
    status: str
    request_id: int
    created_at: datetime


class GroupUsers(BaseModel):
    users: List[GroupUserOut]
