# guidebook/repositories/payment_repository.py
"""Payment record data access."""

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models.payment import PaymentRecord
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class PaymentRepository(BaseRepository[PaymentRecord]):
    def __init__(self, db: Session):
        super().__init__(db, PaymentRecord)

    def get_for_leg(self, booking_id: str, leg: str) -> Optional[PaymentRecord]:
        return self.find_one_by(booking_id=booking_id, leg=leg)

    def get_by_idempotency_key(self, idempotency_key: str) -> Optional[PaymentRecord]:
        return self.find_one_by(idempotency_key=idempotency_key)

    def list_for_booking(self, booking_id: str) -> List[PaymentRecord]:
        stmt = (
            select(PaymentRecord)
            .where(PaymentRecord.booking_id == booking_id)
            .order_by(PaymentRecord.created_at, PaymentRecord.id)
        )
        return list(self.db.execute(stmt).scalars().all())
