"""Decision log database model."""
from sqlalchemy import Column, String, Numeric, TIMESTAMP, Integer, Boolean, Float, JSON
from sqlalchemy.sql import func
from src.models.base import Base

class DecisionLog(Base):
    """
    Append-only record of every orchestrator decision.

    Only the outcome columns are written after insert, exactly once.
    record holds the full sealed decision so record_hash can be
    re-verified later.
    """
    __tablename__ = 'decision_log'

    # Primary key
    id = Column(Integer, primary_key=True)
    decision_id = Column(String(36), unique=True, nullable=False, index=True)
    schema_version = Column(Integer, nullable=False, default=1)

    # Decision
    decision_type = Column(String(10), nullable=False, index=True)
    ticker = Column(String(10), nullable=False, index=True)
    action = Column(String(20), nullable=False)
    action_reason = Column(String(255))
    confidence = Column(Float)
    quantity = Column(Integer)
    price = Column(Numeric)

    # Evidence
    context_snapshot = Column(JSON)
    rules_triggered = Column(JSON)
    record_hash = Column(String(64), nullable=False)
    record = Column(JSON)

    decided_at = Column(TIMESTAMP(timezone=True), nullable=False, index=True)
    duration_ms = Column(Float)

    # Outcome
    outcome_pnl = Column(Numeric)
    outcome_correct = Column(Boolean)
    outcome_at = Column(TIMESTAMP(timezone=True))

    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
