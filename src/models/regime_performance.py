"""Regime performance model feeding Kelly sizing."""
from sqlalchemy import Column, String, Numeric, TIMESTAMP, Integer, UniqueConstraint
from sqlalchemy.sql import func
from src.models.base import Base

class RegimePerformance(Base):
    """
    Closed-trade statistics per (market regime, dealer position).
    """
    __tablename__ = 'regime_performance'
    __table_args__ = (UniqueConstraint('market_regime', 'dealer_position', name='uq_regime_dealer'),)

    # Primary key
    id = Column(Integer, primary_key=True)
    market_regime = Column(String(32), nullable=False)
    dealer_position = Column(String(16), nullable=False)

    total_trades = Column(Integer, nullable=False, default=0)
    winning_trades = Column(Integer, nullable=False, default=0)
    avg_win = Column(Numeric, default=0)
    avg_loss = Column(Numeric, default=0)
    total_pnl = Column(Numeric, default=0)

    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
