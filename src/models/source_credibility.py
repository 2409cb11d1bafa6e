"""Learned per-source credibility."""
from sqlalchemy import Column, String, TIMESTAMP, Integer, Float
from sqlalchemy.sql import func
from src.models.base import Base

class SourceCredibility(Base):
    """
    Outcome counts per signal source.

    recent_correct decays over a rolling window of recent_total outcomes.
    credibility_score and adjusted_weight are the values computed at the
    last update; entries recompute them from the counts.
    """
    __tablename__ = 'source_credibility'

    # Primary key
    id = Column(Integer, primary_key=True)
    source = Column(String(32), unique=True, nullable=False, index=True)

    total_signals = Column(Integer, nullable=False, default=0)
    correct_signals = Column(Integer, nullable=False, default=0)
    accuracy_rate = Column(Float)
    recent_total = Column(Integer, nullable=False, default=0)
    recent_correct = Column(Float, nullable=False, default=0)
    recent_accuracy = Column(Float)

    credibility_score = Column(Float)
    adjusted_weight = Column(Float)

    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
