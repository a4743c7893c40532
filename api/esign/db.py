from sqlmodel import SQLModel, create_engine, Session
from sqlalchemy import inspect, text
from sqlalchemy.exc import NoSuchTableError
from .config import DATABASE_URL

_connect_args = {"check_same_thread": False, "timeout": 30} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, echo=False, pool_pre_ping=True, connect_args=_connect_args)

def init_db():
    from .models import (  # noqa: F401
        ApiClient, SigningGroup, Template, Document, Recipient, AccessToken,
        OtpRecord, LockRecord, IdempotencyRecord, RateLimitCounter, AuditEvent,
    )
    SQLModel.metadata.create_all(engine)
    _ensure_late_columns()

def get_session():
    with Session(engine) as session:
        yield session

def new_session() -> Session:
    # resolved at call time so tests can swap ``engine``
    return Session(engine)

# columns added after the first release; create_all does not alter existing tables
LATE_COLUMNS = {
    "document": {"batch_id": "TEXT", "reminders_sent": "JSON"},
    "recipient": {"mfa_verified_members": "JSON"},
}


def _ensure_late_columns():
    inspector = inspect(engine)
    for table, wanted in LATE_COLUMNS.items():
        try:
            columns = {col["name"] for col in inspector.get_columns(table)}
        except NoSuchTableError:
            continue
        missing = [name for name in wanted if name not in columns]
        if not missing:
            continue
        with engine.begin() as conn:
            for name in missing:
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {name} {wanted[name]}"))
