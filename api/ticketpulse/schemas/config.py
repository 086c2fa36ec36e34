from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class ConfigEntryView(BaseModel):
    """Display form of a config entry. Encrypted values are always masked."""

    key: str
    value: str
    encrypted: bool
    updated_by: Optional[str] = None
    updated_at: datetime
