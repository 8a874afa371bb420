from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column
from groundwave.db.base import Base

BOOTSTRAP_CLAIM = "bootstrap"


class SetupClaim(Base):
    """One row per one-shot setup path; the primary key makes bootstrap single-winner."""

    __tablename__ = "setup_claims"

    kind: Mapped[str] = mapped_column(String(32), primary_key=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now())
