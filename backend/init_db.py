"""Initialize database with a sample experiment."""
import sys
from sqlalchemy.orm import Session
from trafficlab.database import SessionLocal, engine, Base
from trafficlab.exceptions import TrafficLabError
from trafficlab.models import Experiment as ExperimentRow
from trafficlab.schemas.experiment import Experiment, ExperimentConfig, ExperimentStatus, Variant
from trafficlab.services.experiments import ExperimentService
from trafficlab.services.store import SqlAlchemyEventLog, SqlAlchemyExperimentStore


SAMPLE_EXPERIMENT = Experiment(
    id="exp_checkout_v2",
    store_id="store_demo",
    name="One-click checkout",
    status=ExperimentStatus.RUNNING,
    variants=[
        Variant(id="control", name="Current checkout", traffic_percentage=50, is_control=True),
        Variant(id="one_click", name="One-click checkout", traffic_percentage=50),
    ],
    config=ExperimentConfig(
        feature_flags={"one_click_checkout": True},
        target_pages=["/checkout"],
    ),
)


def init_database():
    """Create tables and seed the sample experiment."""
    print("Creating database tables...")
    Base.metadata.create_all(bind=engine)

    db: Session = SessionLocal()

    try:
        if db.query(ExperimentRow).first():
            print("✓ Database already initialized")
            return

        service = ExperimentService(SqlAlchemyExperimentStore(db), SqlAlchemyEventLog(db))
        experiment = service.create_experiment(
            SAMPLE_EXPERIMENT,
            description="Test the one-click checkout against the current flow"
        )
        print(f"✓ Created experiment: {experiment.id}")

        print("\n" + "="*50)
        print("✓ Database initialized successfully!")
        print("="*50)
        print("Try an assignment with curl:")
        print(
            f"  curl -X POST -H 'Content-Type: application/json' "
            f"-d '{{\"user_id\": \"user_123\"}}' "
            f"http://localhost:8000/experiments/{experiment.id}/assign"
        )
        print("\n" + "="*50)

    except TrafficLabError as e:
        print(f"✗ Error initializing database: {e}")
        db.rollback()
        sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    init_database()
