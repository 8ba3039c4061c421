# app/api/v1/schemas/sync_schemas.py
#
# Imports
from typing import Optional, List
# 3rd-party Libraries
from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr
#
# Local Imports
from stream_sync_API.app.core.DB_Management.Sync_Store_DB import MAX_TIMESTAMP_MS
#
#######################################################################################################################
#
# Schemas:
# Field names are snake_case in Python and camelCase on the wire (aliases), matching existing clients.

# --- Document Schemas ---
class SyncDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    key: StrictStr = Field(..., min_length=1, description="Logical document name chosen by the application")
    value: Optional[StrictStr] = Field(None, description="Opaque serialized value; null for tombstones")
    updated_at: StrictInt = Field(..., ge=0, le=MAX_TIMESTAMP_MS, alias="updatedAt",
                                  description="Last write time (ms since epoch)")
    deleted_at: Optional[StrictInt] = Field(None, ge=0, le=MAX_TIMESTAMP_MS, alias="deletedAt",
                                            description="Deletion time (ms since epoch) when the document is a tombstone")


# --- Pull ---
class PullRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: StrictStr = Field(..., min_length=1, alias="userId", description="Opaque owner identifier")
    since: StrictInt = Field(0, ge=0, le=MAX_TIMESTAMP_MS,
                             description="Return documents updated strictly after this time")


class PullResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: List[SyncDocument]
    timestamp: int = Field(..., description="Server time of the pull (ms since epoch)")


# --- Push ---
class PushRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: StrictStr = Field(..., min_length=1, alias="userId", description="Opaque owner identifier")
    items: List[SyncDocument] = Field(default_factory=list)


class PushResponse(BaseModel):
    success: bool = True
    timestamp: int = Field(..., description="Server time of the push (ms since epoch)")


# --- General API Response Schemas ---
class ErrorResponse(BaseModel):
    error: str
    message: Optional[str] = None

#
# End of sync_schemas.py
#######################################################################################################################
