from datetime import datetime
from typing import Literal

from pydantic import BaseModel

ConnectionType = Literal["pending", "connected", "rejected"]
ConnectionResponse = Literal["connected", "rejected"]
IntroStatus = Literal["pending", "accepted", "rejected"]
IntroResponse = Literal["accepted", "rejected"]


class ConnectionOut(BaseModel):
    id: int
    from_user_id: int
    to_user_id: int
    type: ConnectionType
    created_at: datetime
    updated_at: datetime


class ConnectionResponseRequest(BaseModel):
    status: ConnectionResponse


class ConnectionStatusOut(BaseModel):
    user_id: int
    status: Literal["pending", "connected", "rejected", "not_connected"]


class IntroOut(BaseModel):
    id: int
    requester_id: int
    target_id: int
    status: IntroStatus
    created_at: datetime
    updated_at: datetime


class IntroCreateRequest(BaseModel):
    target_id: int


class IntroResponseRequest(BaseModel):
    status: IntroResponse


class ConnectedMemberOut(BaseModel):
    id: int
    username: str
    role: str
    connected_at: datetime


class ConnectionGraphOut(BaseModel):
    user_id: int
    nodes: list[ConnectedMemberOut]
