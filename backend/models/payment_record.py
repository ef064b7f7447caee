from sqlalchemy import create_engine, Column, String, Date, DateTime, Numeric
from sqlalchemy.orm import declarative_base, sessionmaker
from datetime import datetime
import uuid

from core.config import settings

Base = declarative_base()

# PostgreSQL in production, SQLite for local runs
DATABASE_URL = settings.DATABASE_URL

if "sqlite" in DATABASE_URL:
    engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False})
else:
    engine = create_engine(DATABASE_URL, pool_pre_ping=True)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def new_id() -> str:
    return str(uuid.uuid4())


class PaymentRecord(Base):
    """
    A payment received against a debtor account.
    Rows are never updated once written; corrections are new records.
    """
    __tablename__ = "payment_records"

    id = Column(String, primary_key=True, default=new_id)
    debtor_id = Column(String, index=True, nullable=False)
    tenant_id = Column(String, index=True, nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    payment_date = Column(Date, nullable=False)
    reference = Column(String, unique=True, index=True, nullable=True)  # bank / file reference, used for idempotency
    source = Column(String, default="manual")  # "manual", "import", "api"
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


def init_db():
    # Import every model so the tables get registered on Base
    from models.ptp import PTP, ManualPTP  # noqa: F401
    from models.account_activity import AccountActivity  # noqa: F401
    Base.metadata.create_all(bind=engine)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
