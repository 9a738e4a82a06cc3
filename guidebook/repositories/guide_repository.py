"""Guide and guide-service lookups (read-only reference data)."""

from typing import Optional

from sqlalchemy.orm import Session

from ..models.guide import Guide, GuideService
from .base_repository import BaseRepository


class GuideRepository(BaseRepository[Guide]):
    def __init__(self, db: Session):
        super().__init__(db, Guide)

    def get_service(self, service_id: str) -> Optional[GuideService]:
        return self.db.get(GuideService, service_id)
