"""Experiment event model."""
from sqlalchemy import Column, String, Integer, Float, DateTime, Index
from datetime import datetime

from trafficlab.database import Base


class ExperimentEvent(Base):
    """Exposure or conversion recorded against a variant (append-only)."""

    __tablename__ = "experiment_events"
    __table_args__ = (
        Index("ix_experiment_events_variant", "experiment_id", "variant_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    experiment_id = Column(String(100), nullable=False)
    variant_id = Column(String(100), nullable=False)
    user_id = Column(String(200))
    event_type = Column(String(20), nullable=False)  # "exposure" | "conversion"
    value = Column(Float)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<ExperimentEvent {self.event_type} {self.variant_id}>"
