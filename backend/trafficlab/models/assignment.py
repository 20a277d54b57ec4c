"""Assignment model."""
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, UniqueConstraint
from datetime import datetime

from trafficlab.database import Base


class Assignment(Base):
    """A user's variant in one experiment; one row per (experiment, user)."""

    __tablename__ = "assignments"
    __table_args__ = (
        UniqueConstraint("experiment_id", "user_id", name="uq_assignment_experiment_user"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    experiment_id = Column(String(100), ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(200), nullable=False)
    variant_id = Column(String(100), nullable=False)
    assigned_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Assignment {self.experiment_id}/{self.user_id} -> {self.variant_id}>"
