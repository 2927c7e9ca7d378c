from typing import Optional

from pydantic import BaseModel


class CurrentUser(BaseModel):
    """Acting admin resolved from the access token. Users themselves are managed elsewhere."""

    id: Optional[int] = None
    name: Optional[str] = None
    email: Optional[str] = None
    role: str
