"""Regime stability state model."""
from sqlalchemy import Column, String, TIMESTAMP, Integer, Float
from sqlalchemy.sql import func
from src.models.base import Base

class RegimeStability(Base):
    """
    One row per ticker: the prevailing regime and its flip cooldown.
    """
    __tablename__ = 'regime_stability'

    # Primary key
    id = Column(Integer, primary_key=True)
    ticker = Column(String(10), unique=True, nullable=False, index=True)

    current_regime = Column(String(40), nullable=False)
    previous_regime = Column(String(40))
    market_regime = Column(String(32))
    regime_confidence = Column(Float, nullable=False, default=0)

    regime_since = Column(TIMESTAMP(timezone=True), nullable=False)
    last_observed_at = Column(TIMESTAMP(timezone=True), nullable=False)
    last_flip_at = Column(TIMESTAMP(timezone=True))
    cooldown_until = Column(TIMESTAMP(timezone=True))

    consecutive_readings = Column(Integer, nullable=False, default=1)
    flip_count = Column(Integer, nullable=False, default=0)

    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
