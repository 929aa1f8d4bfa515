"""ProviderRate model"""
from sqlalchemy import Column, Integer, String, Boolean, Numeric, DateTime, UniqueConstraint
from datetime import datetime, timezone
from billing.models.base import Base


class ProviderRate(Base):
    """Registered per-model prices used when a usage call carries no explicit prices"""
    __tablename__ = "provider_rates"

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(100), nullable=False)
    model = Column(String(100), nullable=False)
    input_price_per_million = Column(Numeric(18, 10), nullable=False)
    output_price_per_million = Column(Numeric(18, 10), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        UniqueConstraint('provider', 'model', name='uq_provider_rates_provider_model'),
    )
