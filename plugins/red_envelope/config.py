from decimal import Decimal
from typing import Optional

from pydantic import BaseModel


class Config(BaseModel):
    red_envelope_expire_seconds: int = 24 * 60 * 60  # 0 disables expiry
    red_envelope_min_amount: Decimal = Decimal("0.01")
    red_envelope_max_amount: Decimal = Decimal("1000000")
    red_envelope_max_count: int = 100
    red_envelope_note_max_length: int = 50
    red_envelope_item_slots: int = 54
    red_envelope_max_attempts: int = 100
    red_envelope_database_url: Optional[str] = None
    red_envelope_settle_delay_seconds: int = 60
