"""
Pydantic schemas for the school backend REST API and realtime frames.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Optional

from pydantic import BaseModel, Field, StringConstraints

NonBlankStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class MessageIn(BaseModel):
    """Chat message as submitted by a client. Any timestamp sent is ignored."""

    sender: NonBlankStr = Field(..., max_length=128)
    receiver: NonBlankStr = Field(..., max_length=128)
    content: NonBlankStr = Field(..., max_length=4096)


class MessageOut(BaseModel):
    id: str
    sender: str
    receiver: str
    content: str
    timestamp: datetime


class PostIn(BaseModel):
    title: NonBlankStr
    content: str = ""
    imageUrl: str = ""


class PostOut(BaseModel):
    id: str
    title: str
    content: str = ""
    imageUrl: str = ""
    createdAt: datetime


class ModuleIn(BaseModel):
    title: NonBlankStr
    description: str = ""
    fileUrl: str = ""


class ModuleOut(BaseModel):
    id: str
    title: str
    description: str = ""
    fileUrl: str = ""
    createdAt: datetime


class EvaluationIn(BaseModel):
    studentId: NonBlankStr
    age: str = ""
    grossB: int = 0
    grossE: int = 0
    fineB: int = 0
    fineE: int = 0
    socialB: int = 0
    socialE: int = 0


class EvaluationOut(EvaluationIn):
    id: str
    createdAt: datetime


class StatusResponse(BaseModel):
    status: Literal["ok", "sent"]
    id: Optional[str] = None


class UploadResponse(BaseModel):
    url: str


class HealthResponse(BaseModel):
    status: Literal["ok"]
    online: int


class InboundFrame(BaseModel):
    """Envelope of every frame a client sends over the realtime channel."""

    event: str
    data: Any = None
