"""Pydantic model for user profiles."""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


class User(BaseModel):
    """Public profile of a user together with its edge counter.

    ``online`` is never populated here; presence is owned by whichever
    component tracks live sessions.
    """

    id: UUID = Field(default_factory=uuid4)
    username: str
    display_name: str | None = None
    avatar_url: str | None = None
    lang_tag: str = "en"
    location: str | None = None
    timezone: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    edge_count: int = 0
    online: bool = False
    create_time: datetime = Field(default_factory=datetime.now)
    update_time: datetime = Field(default_factory=datetime.now)

    model_config = ConfigDict(from_attributes=True)
