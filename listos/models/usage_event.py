"""
UsageEvent model: one row per generated document.

Events are append-only. ``event_id`` is chosen by the caller so that a
retried append after an ambiguous failure is recorded once.
"""

from enum import Enum
from typing import Optional, Dict, Any
from uuid import uuid4
from pydantic import BaseModel, ConfigDict, Field


class DocumentType(str, Enum):
    WORKSHEET = "worksheet"
    EXAM = "exam"


class UsageMetadata(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    subject: str = "General"
    grade: str = "N/A"
    language: str = "es"


class NewUsageEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    document_type: DocumentType
    metadata: UsageMetadata = Field(default_factory=UsageMetadata)
    event_id: str = Field(default_factory=lambda: str(uuid4()))

    def extra_metadata(self) -> Optional[Dict[str, Any]]:
        return self.metadata.model_extra or None

