from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from enum import Enum
from typing import List, Optional


class RequestStatus(str, Enum):
    """Help request lifecycle states"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    TIMEOUT = "timeout"


OPEN_STATUSES = (RequestStatus.PENDING, RequestStatus.IN_PROGRESS)
TERMINAL_STATUSES = (RequestStatus.RESOLVED, RequestStatus.TIMEOUT)


class KnowledgeSource(str, Enum):
    """Where a knowledge entry came from"""
    SEED = "seed"
    HUMAN_RESOLVED = "human-resolved"
    ADMIN = "admin"


# Domain records

class KnowledgeEntry(BaseModel):
    id: Optional[int] = None
    question: str
    answer: str
    category: str = "general"
    tags: List[str] = Field(default_factory=list)
    source: KnowledgeSource = KnowledgeSource.ADMIN
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    usage_count: int = Field(default=0, ge=0)
    last_used_at: Optional[datetime] = None
    is_active: bool = True
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("tags")
    @classmethod
    def _lowercase_tags(cls, tags: List[str]) -> List[str]:
        seen = []
        for tag in tags:
            tag = tag.strip().lower()
            if tag and tag not in seen:
                seen.append(tag)
        return seen


class HelpRequestMetadata(BaseModel):
    attempted_knowledge_search: bool = True
    confidence_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    context: Optional[str] = None


class HelpRequest(BaseModel):
    id: int
    question: str
    caller_id: str
    caller_name: Optional[str] = None
    session_id: str
    status: RequestStatus = RequestStatus.PENDING
    human_response: Optional[str] = None
    resolver_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    timeout_at: datetime
    resolved_at: Optional[datetime] = None
    metadata: HelpRequestMetadata = Field(default_factory=HelpRequestMetadata)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES


class SessionEvent(BaseModel):
    """Emitted after an escalation so the call session can link the request"""
    session_id: str
    request_id: int


# Operation results

class MatchResult(BaseModel):
    found: bool
    entry: Optional[KnowledgeEntry] = None
    score: Optional[float] = None
    stage: Optional[str] = None  # "text" or "category"


class SearchResponse(BaseModel):
    found: bool
    answer: Optional[str] = None
    confidence: Optional[float] = None
    category: Optional[str] = None
    entry_id: Optional[int] = None


class ResolutionResult(BaseModel):
    request: HelpRequest
    knowledge_entry: Optional[KnowledgeEntry] = None
    learning_error: Optional[str] = None


class HistoryPage(BaseModel):
    requests: List[HelpRequest]
    total: int
    limit: int
    skip: int


class LedgerStats(BaseModel):
    pending: int = 0
    in_progress: int = 0
    resolved: int = 0
    timeout: int = 0
    total: int = 0
    avg_resolution_minutes: float = 0


# API bodies

class EscalateRequestBody(BaseModel):
    question: str
    caller_id: str
    session_id: str
    caller_name: Optional[str] = None
    context: Optional[str] = None
    confidence_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class ResolveRequestBody(BaseModel):
    human_response: str
    resolver_id: str = "admin"


class ClaimRequestBody(BaseModel):
    resolver_id: str = "admin"


class SearchBody(BaseModel):
    question: str


class KBEntry(BaseModel):
    question: str
    answer: str
    category: str = "general"
    tags: List[str] = Field(default_factory=list)
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    created_by: Optional[str] = None


class KBEntryUpdate(BaseModel):
    """Partial update; fields left out keep their stored value"""
    question: Optional[str] = None
    answer: Optional[str] = None
    category: Optional[str] = None
    tags: Optional[List[str]] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    is_active: Optional[bool] = None
