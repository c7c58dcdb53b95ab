import logging
from datetime import datetime, timezone
from typing import Generator, Optional, Tuple

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from wa_inbox.config import settings
from wa_inbox.metrics import record_persist_outcome

logger = logging.getLogger(__name__)

# check_same_thread=False lets SQLite sessions cross into background tasks
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _utc_now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from wa_inbox.models import Account, Message

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and both tables exist, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        inspector = inspect(engine)
        for table in ("accounts", "messages"):
            if not inspector.has_table(table):
                logger.error(f"Database schema not applied: '{table}' table not found")
                return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Message Repository Functions
# =============================================================================

def find_message_by_external_id(db: Session, external_id: str):
    """
    Retrieve a message by the gateway's message id.

    Returns:
        Message object if found, None otherwise
    """
    from wa_inbox.models import Message

    return db.query(Message).filter(Message.external_id == external_id).first()


def insert_message_if_absent(db: Session, message) -> Tuple[bool, bool]:
    """
    Insert a canonical message unless its external_id is already stored.

    The UNIQUE constraint on external_id decides: an insert that loses a
    race against a concurrent delivery is rolled back and reported as a
    duplicate, and the first stored row is never touched.

    Args:
        db: Database session
        message: CanonicalMessage with owner_id already set

    Returns:
        Tuple of (success: bool, is_duplicate: bool)
        - (True, False): Message created
        - (True, True): external_id already present, nothing written
        - (False, False): Error occurred
    """
    from wa_inbox.models import Message

    row = Message(
        external_id=message.external_id,
        content=message.content,
        sender_display_name=message.sender_display_name,
        sender_address=message.sender_address,
        instance_name=message.instance_name,
        message_type=message.message_type.value,
        direction=message.direction.value,
        created_at=message.created_at if message.created_at is not None else _utc_now_ms(),
        received_at=_utc_now_iso(),
        owner_id=message.owner_id,
    )

    try:
        db.add(row)
        db.commit()
        logger.info(f"Message created: {message.external_id}")
        return (True, False)

    except IntegrityError:
        db.rollback()
        logger.info(f"Duplicate message detected on insert: {message.external_id}")
        return (True, True)

    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create message {message.external_id}: {e}")
        return (False, False)


def persist_message(message) -> None:
    """
    Background-task entry point for storing a webhook message.

    Runs after the gateway already got its response, so failures are only
    observable through logs and the message_persist_total metric. The
    error log carries the full record so it can be replayed.
    """
    try:
        with SessionLocal() as db:
            success, is_duplicate = insert_message_if_absent(db, message)
    except SQLAlchemyError as e:
        success, is_duplicate = False, False
        logger.error(f"Store unavailable while persisting {message.external_id}: {e}")

    if not success:
        record_persist_outcome("error")
        logger.error(
            "Message not persisted",
            extra={"external_id": message.external_id, "record": message.model_dump(mode="json")},
        )
        return

    record_persist_outcome("duplicate" if is_duplicate else "created")
    logger.info(
        "Message persisted",
        extra={
            "external_id": message.external_id,
            "owner_id": message.owner_id,
            "instance": message.instance_name,
            "sender": message.sender_address,
            "type": message.message_type.value,
            "direction": message.direction.value,
            "dup": is_duplicate,
        },
    )


# =============================================================================
# Account Repository Functions
# =============================================================================

def create_account(db: Session, username: str, name: Optional[str] = None):
    """Create an account with an empty instance state."""
    from wa_inbox.models import Account

    account = Account(username=username, name=name, created_at=_utc_now_iso())
    db.add(account)
    db.commit()
    db.refresh(account)
    logger.info(f"Account created: {account.id}")
    return account


def get_account(db: Session, account_id: str):
    from wa_inbox.models import Account

    return db.get(Account, account_id)


def find_account_by_instance_name(db: Session, instance_name: str):
    """Exact match on instance_name; None if no account owns it."""
    from wa_inbox.models import Account

    return db.query(Account).filter(Account.instance_name == instance_name).first()


def update_instance_state(db: Session, account, **fields):
    """
    Write instance fields on an account and commit.

    Accepted keys: instance_name, instance_status, instance_qr, pairing_code.
    Raises IntegrityError when instance_name collides with another account.
    """
    allowed = {"instance_name", "instance_status", "instance_qr", "pairing_code"}
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown instance fields: {sorted(unknown)}")

    for field, value in fields.items():
        setattr(account, field, value)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    db.refresh(account)
    return account


def clear_instance_state(db: Session, account):
    return update_instance_state(
        db,
        account,
        instance_name=None,
        instance_status=None,
        instance_qr=None,
        pairing_code=None,
    )
