"""Experiment and variant models."""
from sqlalchemy import Column, String, Integer, Text, Boolean, DateTime, Float, ForeignKey, JSON, Enum as SQLEnum
from sqlalchemy.orm import relationship
from datetime import datetime

from trafficlab.database import Base
from trafficlab.schemas.experiment import ExperimentStatus


class Experiment(Base):
    """Experiment configuration for one store."""

    __tablename__ = "experiments"

    id = Column(String(100), primary_key=True)
    store_id = Column(String(100), index=True)
    name = Column(String(200), default="", nullable=False)
    description = Column(Text)
    status = Column(SQLEnum(ExperimentStatus), default=ExperimentStatus.DRAFT, nullable=False)
    # {"feature_flags": {...}, "ui_elements": {...}, "target_pages": [...]}
    config = Column(JSON, default=dict, nullable=False)
    # Bumped in the same transaction as every variant set change
    allocation_version = Column(Integer, default=1, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    variants = relationship(
        "Variant",
        back_populates="experiment",
        cascade="all, delete-orphan",
        order_by="Variant.id"
    )

    def __repr__(self):
        return f"<Experiment {self.id} status={self.status.value}>"


class Variant(Base):
    """One arm of an experiment."""

    __tablename__ = "variants"

    # Variant ids are only unique within their experiment
    id = Column(String(100), primary_key=True)
    experiment_id = Column(String(100), ForeignKey("experiments.id", ondelete="CASCADE"), primary_key=True)
    name = Column(String(200))
    traffic_percentage = Column(Float, nullable=False)
    is_control = Column(Boolean, default=False, nullable=False)
    config = Column(JSON, default=dict, nullable=False)

    # Relationships
    experiment = relationship("Experiment", back_populates="variants")

    def __repr__(self):
        return f"<Variant {self.id} {self.traffic_percentage}%>"
