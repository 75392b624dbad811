from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class UserRole(str, Enum):
    STANDARD = "standard"
    ADMINISTRATOR = "administrator"


class UserIdentity(BaseModel):
    """Verified identity handed over by the external identity provider."""
    model_config = ConfigDict(frozen=True)

    user_id: str = Field(min_length=1, max_length=100)
    email: Optional[str] = None
    display_name: Optional[str] = None


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    role: UserRole = UserRole.STANDARD
    worksheet_count: int = 0
    created_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
