from pydantic import BaseModel, Field
from typing import Any, Optional
import uuid


def _rid():
    return uuid.uuid4().hex


class SuccessResponse(BaseModel):
    """Success envelope shared by every operator endpoint."""
    success: Optional[bool] = Field(default=True)
    request_id: str = Field(default_factory=_rid)
    data: Optional[Any] = None


class ErrorDetail(BaseModel):
    code: str
    message: Any
    details: Optional[Any] = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail
    request_id: str = Field(default_factory=_rid)
