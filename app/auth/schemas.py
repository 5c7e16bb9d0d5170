from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class ApiSession(BaseModel):
    """Caller's session against the school API, passed explicitly to every client call."""

    token: str
    school_id: int
    user_id: Optional[str] = None
    expires_at: Optional[datetime] = None
