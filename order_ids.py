"""Human readable order ids in the form ORD-YYYYMMDD-XXXX."""
import random
from datetime import datetime
from typing import Optional

# 0, O, I and 1 are left out so ids survive being read over the phone.
ORDER_ID_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
SUFFIX_LENGTH = 4

_random = random.SystemRandom()


def generate_order_id(now: Optional[datetime] = None) -> str:
    # Not checked for uniqueness; the store-assigned _id is the primary key.
    now = now or datetime.now()
    suffix = "".join(_random.choice(ORDER_ID_ALPHABET) for _ in range(SUFFIX_LENGTH))
    return f"ORD-{now:%Y%m%d}-{suffix}"
