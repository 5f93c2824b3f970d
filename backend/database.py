"""
Database models and operations for DockPilot
Uses SQLite for persistent operation history
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any
from sqlalchemy import create_engine, Column, String, Integer, Boolean, DateTime, JSON, ForeignKey, Text, text, Index
from sqlalchemy.orm import declarative_base, sessionmaker, Session, relationship
from sqlalchemy.pool import StaticPool
import os
import logging

logger = logging.getLogger(__name__)

# Singleton instance and thread lock for DatabaseManager
# Only ONE DatabaseManager instance should exist per process to avoid
# multiple SQLAlchemy engines fighting over the same SQLite file
import threading
_database_manager_instance: Optional['DatabaseManager'] = None
_database_manager_lock = threading.Lock()


def utcnow():
    """Helper to get timezone-aware UTC datetime for database defaults"""
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        # SQLite drops tzinfo; everything is stored as UTC
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


Base = declarative_base()


class UpdateOperation(Base):
    """
    One mutating action (update, restart, rollback, label change, ...).

    Batched updates are a single operation with one BatchContainerDetail
    per member; single-container operations carry one detail row too, so
    per-container stage and status are always read from the details.
    """
    __tablename__ = "update_operations"

    operation_id = Column(String, primary_key=True)
    operation_type = Column(String, nullable=False)  # update, restart, rollback, label_change, stop, remove, fix_mismatch
    status = Column(String, nullable=False, default='pending')  # pending, in_progress, complete, failed
    container_name = Column(String, nullable=True)  # NULL for multi-member batches
    stack_name = Column(String, nullable=True)
    batch_group_id = Column(String, nullable=True)

    old_version = Column(Text, nullable=True)
    new_version = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    error_kind = Column(String, nullable=True)  # validation, blocked, transient, execution
    force = Column(Boolean, default=False)

    dependents_affected = Column(JSON, default=list)
    dependents_restarted = Column(JSON, default=list)
    dependents_blocked = Column(JSON, default=list)

    rollback_occurred = Column(Boolean, default=False)
    rollback_of = Column(String, nullable=True)  # operation_id this operation rolls back

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    batch_details = relationship(
        "BatchContainerDetail",
        back_populates="operation",
        cascade="all, delete-orphan",
        order_by="BatchContainerDetail.id",
    )

    __table_args__ = (
        Index('idx_update_operations_group', 'batch_group_id'),
        Index('idx_update_operations_container', 'container_name'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation_id': self.operation_id,
            'operation_type': self.operation_type,
            'status': self.status,
            'container_name': self.container_name,
            'stack_name': self.stack_name,
            'batch_group_id': self.batch_group_id,
            'old_version': self.old_version,
            'new_version': self.new_version,
            'error_message': self.error_message,
            'error_kind': self.error_kind,
            'force': bool(self.force),
            'dependents_affected': list(self.dependents_affected or []),
            'dependents_restarted': list(self.dependents_restarted or []),
            'dependents_blocked': list(self.dependents_blocked or []),
            'rollback_occurred': bool(self.rollback_occurred),
            'rollback_of': self.rollback_of,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
            'batch_details': [d.to_dict() for d in self.batch_details],
        }


class BatchContainerDetail(Base):
    """Per-container state inside an operation"""
    __tablename__ = "batch_container_details"

    id = Column(Integer, primary_key=True, autoincrement=True)
    operation_id = Column(String, ForeignKey("update_operations.operation_id", ondelete="CASCADE"), nullable=False)
    container_name = Column(String, nullable=False)
    status = Column(String, nullable=False, default='queued')  # queued, in_progress, success, failed, blocked
    stage = Column(String, nullable=True)  # last reported progress stage
    percent = Column(Integer, default=0)
    message = Column(Text, nullable=True)

    old_version = Column(String, nullable=True)  # image tag before the operation
    new_version = Column(String, nullable=True)  # image tag after the operation
    change_type = Column(String, nullable=True)
    old_resolved_version = Column(String, nullable=True)  # parsed version behind old_version
    new_resolved_version = Column(String, nullable=True)
    old_digest = Column(String, nullable=True)  # repo digest before the operation

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    operation = relationship("UpdateOperation", back_populates="batch_details")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'container_name': self.container_name,
            'status': self.status,
            'stage': self.stage,
            'percent': self.percent or 0,
            'message': self.message,
            'old_version': self.old_version,
            'new_version': self.new_version,
            'change_type': self.change_type,
            'old_resolved_version': self.old_resolved_version,
            'new_resolved_version': self.new_resolved_version,
            'old_digest': self.old_digest,
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
        }


class DatabaseManager:
    """
    Database management (Singleton)

    Only ONE instance exists per process; repeated instantiation returns
    the same instance. Thread-safe initialization via threading.Lock.
    """

    def __new__(cls, db_path: str = "data/dockpilot.db"):
        global _database_manager_instance, _database_manager_lock

        # Fast path: instance already exists
        if _database_manager_instance is not None:
            if _database_manager_instance.db_path != db_path:
                logger.warning(
                    f"DatabaseManager singleton already exists with path "
                    f"'{_database_manager_instance.db_path}', ignoring requested path '{db_path}'"
                )
            return _database_manager_instance

        with _database_manager_lock:
            # Double-check pattern: another thread might have created it while we waited
            if _database_manager_instance is not None:
                return _database_manager_instance

            instance = super(DatabaseManager, cls).__new__(cls)
            _database_manager_instance = instance
            return instance

    def __init__(self, db_path: str = "data/dockpilot.db"):
        # Skip if already initialized (singleton pattern)
        if hasattr(self, '_initialized'):
            return

        self.db_path = db_path
        self._initialized = True

        data_dir = os.path.dirname(db_path)
        if data_dir:
            os.makedirs(data_dir, exist_ok=True)

        self.engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={
                "check_same_thread": False,
                "timeout": 20
            },
            poolclass=StaticPool,
            echo=False
        )

        self._configure_sqlite_pragmas()

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

        # Create tables if they don't exist
        Base.metadata.create_all(bind=self.engine)

        self._secure_database_file()

    def _configure_sqlite_pragmas(self):
        """WAL mode for concurrent reads during writes, FK enforcement for detail cascades"""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.execute(text("PRAGMA synchronous=NORMAL"))
                conn.execute(text("PRAGMA foreign_keys=ON"))
                conn.commit()
            logger.info("SQLite PRAGMA configuration applied successfully (WAL mode)")
        except Exception as e:
            logger.error(f"Failed to configure SQLite PRAGMAs: {e}", exc_info=True)
            # Non-fatal: SQLite will work with defaults

    def _secure_database_file(self):
        """Set secure file permissions on the SQLite database file"""
        try:
            if os.path.exists(self.db_path):
                os.chmod(self.db_path, 0o600)
        except OSError as e:
            logger.warning(f"Could not set permissions on database file {self.db_path}: {e}")

    def get_session(self) -> Session:
        """Get a database session"""
        return self.SessionLocal()


def get_database_manager() -> DatabaseManager:
    """Get or create the DatabaseManager at the configured path"""
    from config.settings import AppConfig
    return DatabaseManager(AppConfig.database_path())
