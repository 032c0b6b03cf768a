from sqlalchemy import JSON, BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from ridefare.database import Base
from ridefare.models.common import now_ms


class PriceQuote(Base):
    """Persisted fare snapshot; bindable to exactly one order until it expires."""

    __tablename__ = "price_quotes"

    quote_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    context: Mapped[dict] = mapped_column(JSON, nullable=False)
    breakdown: Mapped[dict] = mapped_column(JSON, nullable=False)
    applied_rule_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=now_ms)
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
