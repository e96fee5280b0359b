from pydantic import BaseModel, Field, confloat
from typing import List, Optional, Any, Dict


class FeatureOut(BaseModel):
    name: str
    percentage: float
    users: List[str] = []
    groups: List[str] = []
    data: Dict[str, Any] = {}


class FeatureState(BaseModel):
    active: bool


class PercentageIn(BaseModel):
    percentage: confloat(ge=0, le=100)


class UsersIn(BaseModel):
    users: List[str] = Field(..., description="user identifiers")


class DataIn(BaseModel):
    data: Dict[str, Any]


class EvaluationResult(BaseModel):
    name: str
    user: Optional[str] = None
    active: bool


class ExistsOut(BaseModel):
    name: str
    exists: bool


class GroupMembership(BaseModel):
    group: str
    user: str
    member: bool


class AuditEvent(BaseModel):
    id: int
    feature: str
    actor: str
    action: str
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    created_at: Optional[Any] = None
