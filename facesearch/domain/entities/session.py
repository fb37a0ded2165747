"""Search session domain entities."""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from facesearch.core.exceptions import ErrorCode
from facesearch.domain.entities.video import VideoMatch


class SessionStatus(str, Enum):
    """Lifecycle states of a search session."""
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.PROCESSING


class SearchError(BaseModel):
    """A per-site or per-candidate failure collected during a search."""
    source: str = Field(..., description="Site name the failure belongs to")
    code: ErrorCode
    message: str
    candidate_id: Optional[str] = None


class SessionSnapshot(BaseModel):
    """Copy of a session handed out by the store. Carries no user embedding."""
    id: str
    status: SessionStatus
    threshold: float
    progress: float
    created_at: datetime
    expires_at: datetime
    matches: List[VideoMatch] = Field(default_factory=list)
    processed_sites: List[str] = Field(default_factory=list)
    errors: List[SearchError] = Field(default_factory=list)
    error: Optional[ErrorCode] = None


class SessionStats(BaseModel):
    """Counts over the live sessions held by the store."""
    total_active: int = 0
    processing: int = 0
    completed: int = 0
    error: int = 0
    oldest_created_at: Optional[datetime] = None
    newest_created_at: Optional[datetime] = None
