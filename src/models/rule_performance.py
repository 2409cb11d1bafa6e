"""Rule performance statistics model."""
from sqlalchemy import Column, String, Numeric, TIMESTAMP, Integer, Float
from sqlalchemy.sql import func
from src.models.base import Base

class RulePerformance(Base):
    """
    Running statistics and tuning state per rule id.

    times_triggered counts logged decisions where the rule fired;
    times_outcomes counts outcomes received for those decisions.
    """
    __tablename__ = 'rule_performance'

    # Primary key
    id = Column(Integer, primary_key=True)
    rule_id = Column(String(64), unique=True, nullable=False, index=True)
    category = Column(String(20))

    # Counters
    times_triggered = Column(Integer, nullable=False, default=0)
    times_outcomes = Column(Integer, nullable=False, default=0)
    times_correct = Column(Integer, nullable=False, default=0)

    # Running statistics
    accuracy_rate = Column(Float)
    avg_pnl_when_triggered = Column(Numeric, default=0)

    # Tuning
    current_threshold = Column(Float)
    suggested_threshold = Column(Float)
    tune_direction = Column(String(10), default='KEEP')
    tune_confidence = Column(Float, default=0)

    last_triggered_at = Column(TIMESTAMP(timezone=True))
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
