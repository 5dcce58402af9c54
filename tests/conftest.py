
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from abplatform.database import Base
from abplatform.models import Experiment, ExperimentStatus, FeatureFlag, FlagStatus
from abplatform.utils import cache


SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db():
    """Create a fresh database for each test"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(db):
    """Sessions on the same test database, one per worker thread"""
    return TestingSessionLocal


@pytest.fixture(autouse=True)
def clear_flag_cache():
    # ids get reused once tables are dropped, so cached snapshots must not leak
    cache.clear_all()
    yield
    cache.clear_all()


@pytest.fixture
def make_experiment(db):
    """Factory for experiment rows in any status"""
    def _make(name="Test Experiment", status=ExperimentStatus.RUNNING, traffic_percentage=100,
              control="control", test="variant_b", minimum_sample_size=None):
        experiment = Experiment(
            name=name,
            description="A test experiment",
            status=status,
            traffic_percentage=traffic_percentage,
            control_variant_name=control,
            test_variant_name=test,
            environment="production",
            minimum_sample_size=minimum_sample_size,
            current_sample_size=0
        )
        db.add(experiment)
        db.commit()
        db.refresh(experiment)
        return experiment
    return _make


@pytest.fixture
def sample_experiment(make_experiment):
    return make_experiment()


@pytest.fixture
def make_flag(db):
    def _make(name="new_checkout", enabled=True, status=FlagStatus.ACTIVE,
              environment="production", rollout_percentage=50):
        flag = FeatureFlag(
            name=name,
            enabled=enabled,
            status=status,
            environment=environment,
            rollout_percentage=rollout_percentage
        )
        db.add(flag)
        db.commit()
        db.refresh(flag)
        return flag
    return _make
