"""Option position database model."""
from sqlalchemy import Column, String, Numeric, TIMESTAMP, Integer, Date
from sqlalchemy.sql import func
from src.models.base import Base

class Position(Base):
    """
    Option positions (both open and closed).

    quantity is the opened size; partial_exits_taken counts contracts
    already closed by partial exits.
    """
    __tablename__ = 'positions'

    # Primary key
    id = Column(Integer, primary_key=True)
    position_id = Column(String(64), unique=True, nullable=False, index=True)
    ticker = Column(String(10), nullable=False, index=True)
    symbol = Column(String(32))
    option_type = Column(String(4), nullable=False)
    strike = Column(Numeric)
    expiration = Column(Date, nullable=False, index=True)

    # Entry details
    opened_at = Column(TIMESTAMP(timezone=True), nullable=False)
    entry_price = Column(Numeric, nullable=False)
    quantity = Column(Integer, nullable=False)
    entry_decision_id = Column(String(36), index=True)

    # Regime at entry
    entry_market_regime = Column(String(32))
    entry_dealer_position = Column(String(16))

    # Exit plan
    planned_stop_loss = Column(Numeric)
    planned_target1 = Column(Numeric)
    planned_target2 = Column(Numeric)
    trailing_stop_pct = Column(Numeric)

    # Live management
    partial_exits_taken = Column(Integer, default=0)
    highest_price_since_entry = Column(Numeric)
    last_price = Column(Numeric)
    last_evaluated_at = Column(TIMESTAMP(timezone=True))

    # Exit details
    closed_at = Column(TIMESTAMP(timezone=True))
    exit_price = Column(Numeric)
    realized_pnl = Column(Numeric)

    # State
    status = Column(String(20), default='OPEN', index=True)

    # Timestamps
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
