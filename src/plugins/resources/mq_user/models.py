"""Wire models for the broker user API responses."""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PendingChange(BaseModel):
    """Changes accepted by the broker but not yet applied."""

    model_config = ConfigDict(populate_by_name=True)

    console_access: Optional[bool] = Field(default=None, alias="consoleAccess")
    groups: Optional[List[str]] = None
    pending_change: Optional[str] = Field(default=None, alias="pendingChange")


class UserDescription(BaseModel):
    """Response body of DescribeUser."""

    model_config = ConfigDict(populate_by_name=True)

    broker_id: str = Field(alias="brokerId")
    username: str
    console_access: Optional[bool] = Field(default=None, alias="consoleAccess")
    groups: Optional[List[str]] = None
    replication_user: Optional[bool] = Field(default=None, alias="replicationUser")
    pending: Optional[PendingChange] = None

    @field_validator("broker_id", "username")
    @classmethod
    def not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("must not be empty")
        return v


class UserSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    username: str
    pending_change: Optional[str] = Field(default=None, alias="pendingChange")


class UserList(BaseModel):
    """One page of ListUsers."""

    model_config = ConfigDict(populate_by_name=True)

    broker_id: Optional[str] = Field(default=None, alias="brokerId")
    users: List[UserSummary] = Field(default_factory=list)
    next_token: Optional[str] = Field(default=None, alias="nextToken")
