from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, Field
from typing import Any, Dict, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Status(str, Enum):
    REQUESTED = "Requested"
    ACKNOWLEDGED_AND_LOCKED = "AcknowledgedAndLocked"
    CANCELLED = "Cancelled"  # Reserved, not used.
    COMPLETED_SUCCESS = "CompletedSuccess"
    COMPLETED_ERROR = "CompletedError"
    DELETED = "Deleted"  # Reserved, records are removed instead.


TERMINAL_STATUSES = (Status.COMPLETED_SUCCESS, Status.COMPLETED_ERROR)


class Message(BaseModel):
    id: str
    channel: str
    method: str
    args: Optional[str] = None
    result: Optional[str] = None
    error: Optional[str] = None

    status: Status = Status.REQUESTED
    acknowledged_by: Optional[str] = None
    request_time: datetime = Field(default_factory=utc_now)
    acknowledge_time: Optional[datetime] = None
    complete_time: Optional[datetime] = None
    delete_time: Optional[datetime] = None


class OperationType(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ChangeEvent(BaseModel):
    operation_type: OperationType
    document_id: str
    channel: str
    full_document: Optional[Message] = None  # insert only
    updated_fields: Optional[Dict[str, Any]] = None  # update only


class InsertResult(BaseModel):
    acknowledged: bool
    inserted_id: Optional[str] = None


class UpdateResult(BaseModel):
    acknowledged: bool
    matched_count: int = 0
    modified_count: int = 0


class DeleteResult(BaseModel):
    acknowledged: bool
    deleted_count: int = 0
