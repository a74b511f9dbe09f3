"""Per-conversation extraction watermark."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class Cursor(BaseModel):
    conversation_id: str
    last_processed_ts: Optional[datetime] = None
    last_processed_message_id: Optional[str] = None
    last_run_ended_at: Optional[datetime] = None
