"""
Database models and operations for bgshift
Uses SQLite for durable storage of stacks, rollouts and scheduled timers

Every rollout phase change goes through the database so that a restarted
process picks up exactly where the previous one stopped. Rollout and Stack
rows carry a version column (SQLAlchemy version_id_col); a writer holding a
stale copy fails with StaleDataError instead of overwriting newer state.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from sqlalchemy import (
    create_engine, event, Column, String, Integer, Boolean, DateTime, Float, Text,
    ForeignKey, UniqueConstraint, Index, text,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker, Session

logger = logging.getLogger(__name__)


def utcnow():
    """Helper to get timezone-aware UTC datetime for database defaults"""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on the way back; everything is stored as UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


Base = declarative_base()


class Stack(Base):
    """A blue-green service described by one template"""
    __tablename__ = "stacks"

    name = Column(String, primary_key=True)
    template_body = Column(Text, nullable=False)
    parameters_json = Column(Text, nullable=False, default='{}')
    status = Column(String, nullable=False, default='creating')  # creating | ready | failed
    active_color = Column(String, nullable=False, default='blue')
    active_rollout_id = Column(String, nullable=True)  # Mutual exclusion slot: one rollout in flight
    alarm_rollback = Column(Boolean, nullable=False, default=True)
    hook_url = Column(String, nullable=True)
    outputs_json = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    # Children are inserted after the stack row in the same flush
    environments = relationship("Environment", back_populates="stack", cascade="all, delete-orphan",
                                order_by="Environment.color")
    listener_states = relationship("ListenerState", back_populates="stack", cascade="all, delete-orphan")
    resources = relationship("StackResource", back_populates="stack", cascade="all, delete-orphan")
    alarm_states = relationship("AlarmState", back_populates="stack", cascade="all, delete-orphan")
    rollouts = relationship("Rollout", back_populates="stack", cascade="all, delete-orphan")

    @property
    def parameters(self) -> Dict[str, str]:
        return json.loads(self.parameters_json or '{}')

    @property
    def outputs(self) -> Dict[str, Any]:
        return json.loads(self.outputs_json) if self.outputs_json else {}


class StackResource(Base):
    """A provisioned shared resource (load balancer, listener, alarm, ...)"""
    __tablename__ = "stack_resources"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stack_name = Column(String, ForeignKey("stacks.name", ondelete="CASCADE"), nullable=False)
    logical_id = Column(String, nullable=False)
    resource_type = Column(String, nullable=False)
    physical_id = Column(String, nullable=False)
    attributes_json = Column(Text, nullable=False, default='{}')
    created_at = Column(DateTime, default=utcnow)

    stack = relationship("Stack", back_populates="resources")

    __table_args__ = (
        UniqueConstraint('stack_name', 'logical_id', name='uq_stack_resource_logical_id'),
    )

    @property
    def attributes(self) -> Dict[str, Any]:
        return json.loads(self.attributes_json or '{}')


class Environment(Base):
    """
    One of the two color slots of a stack.

    Each slot is bound to exactly one target group. The slot holds resources
    (task definition + task set) only while it is active, being provisioned,
    staged for cutover, or retained after a failed rollout.
    """
    __tablename__ = "environments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stack_name = Column(String, ForeignKey("stacks.name", ondelete="CASCADE"), nullable=False)
    color = Column(String, nullable=False)  # blue | green
    target_group = Column(String, nullable=False)  # Target group logical id
    status = Column(String, nullable=False, default='empty')  # empty | provisioning | staged | active | retained
    image = Column(String, nullable=True)
    task_definition_json = Column(Text, nullable=True)
    task_definition_id = Column(String, nullable=True)
    task_set_id = Column(String, nullable=True)
    rollout_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    stack = relationship("Stack", back_populates="environments")

    __table_args__ = (
        UniqueConstraint('stack_name', 'color', name='uq_environment_color'),
    )

    @property
    def has_resources(self) -> bool:
        return bool(self.task_set_id or self.task_definition_id)


class ListenerState(Base):
    """Current forward weights of a listener, keyed by target group logical id"""
    __tablename__ = "listener_states"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stack_name = Column(String, ForeignKey("stacks.name", ondelete="CASCADE"), nullable=False)
    role = Column(String, nullable=False)  # production | test
    listener = Column(String, nullable=False)  # Listener logical id
    weights_json = Column(Text, nullable=False, default='{}')
    revision = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    stack = relationship("Stack", back_populates="listener_states")

    __table_args__ = (
        UniqueConstraint('stack_name', 'role', name='uq_listener_role'),
    )

    @property
    def weights(self) -> Dict[str, int]:
        return json.loads(self.weights_json or '{}')


class Rollout(Base):
    """A blue-green deployment operation (active or historical)"""
    __tablename__ = "rollouts"

    id = Column(String, primary_key=True)
    stack_name = Column(String, ForeignKey("stacks.name", ondelete="CASCADE"), nullable=False)
    status = Column(String, nullable=False, default='idle')
    outcome = Column(String, nullable=True)  # succeeded | rolled_back (NULL while in flight)
    source_color = Column(String, nullable=False)
    target_color = Column(String, nullable=False)
    canary_percent = Column(Integer, nullable=False)
    bake_seconds = Column(Integer, nullable=False)
    termination_wait_seconds = Column(Integer, nullable=False)
    alarm_rollback = Column(Boolean, nullable=False, default=True)
    retain_on_failure = Column(Boolean, nullable=False, default=True)
    hook_url = Column(String, nullable=True)
    image = Column(String, nullable=True)
    task_definition_json = Column(Text, nullable=False)
    committed = Column(Boolean, nullable=False, default=False)
    failure_kind = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    phase_deadline = Column(DateTime, nullable=True)
    bake_deadline = Column(DateTime, nullable=True)
    termination_deadline = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    stack = relationship("Stack", back_populates="rollouts")

    __table_args__ = (
        Index('idx_rollout_stack_created', 'stack_name', 'created_at'),
    )

    @property
    def task_definition(self) -> Dict[str, Any]:
        return json.loads(self.task_definition_json)


class ScheduledTask(Base):
    """Durable timer: a handler kind plus the time it becomes due"""
    __tablename__ = "scheduled_tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String, nullable=False)
    stack_name = Column(String, nullable=False)
    rollout_id = Column(String, nullable=True)
    due_at = Column(DateTime, nullable=False)
    status = Column(String, nullable=False, default='pending')  # pending | running | done | cancelled | failed
    payload_json = Column(Text, nullable=False, default='{}')
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_scheduled_task_due', 'status', 'due_at'),
        Index('idx_scheduled_task_rollout', 'rollout_id', 'status'),
    )

    @property
    def payload(self) -> Dict[str, Any]:
        return json.loads(self.payload_json or '{}')


class AlarmState(Base):
    """Threshold alarm bound to one target group's metric stream"""
    __tablename__ = "alarm_states"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stack_name = Column(String, ForeignKey("stacks.name", ondelete="CASCADE"), nullable=False)
    logical_id = Column(String, nullable=False)
    alarm_name = Column(String, nullable=False)
    color = Column(String, nullable=False)
    target_group = Column(String, nullable=False)
    metric_name = Column(String, nullable=False)
    statistic = Column(String, nullable=False)
    comparison = Column(String, nullable=False)
    threshold = Column(Float, nullable=False)
    period_seconds = Column(Integer, nullable=False)
    evaluation_periods = Column(Integer, nullable=False)
    state = Column(String, nullable=False, default='INSUFFICIENT_DATA')
    reason = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    stack = relationship("Stack", back_populates="alarm_states")

    __table_args__ = (
        UniqueConstraint('stack_name', 'logical_id', name='uq_alarm_logical_id'),
    )


class RolloutEvent(Base):
    """Append-only audit trail of stack and rollout events"""
    __tablename__ = "rollout_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stack_name = Column(String, nullable=False)
    rollout_id = Column(String, nullable=True)
    event_type = Column(String, nullable=False)
    message = Column(Text, nullable=True)
    data_json = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index('idx_rollout_event_rollout', 'rollout_id', 'id'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'stack': self.stack_name,
            'rollout_id': self.rollout_id,
            'event_type': self.event_type,
            'message': self.message,
            'data': json.loads(self.data_json) if self.data_json else {},
            'created_at': as_utc(self.created_at).isoformat() if self.created_at else None,
        }


class DatabaseManager:
    """
    Database management and operations

    One instance per process is created by main.py; tests build their own
    against a temporary database file.
    """

    def __init__(self, database_url: str):
        self.database_url = database_url
        is_sqlite = database_url.startswith('sqlite')

        if is_sqlite:
            db_path = database_url.replace('sqlite:///', '', 1)
            data_dir = os.path.dirname(db_path)
            if data_dir:
                os.makedirs(data_dir, exist_ok=True)

        connect_args = {}
        if is_sqlite:
            connect_args = {
                "check_same_thread": False,
                "timeout": 20  # 20 second lock timeout
            }

        self.engine = create_engine(database_url, connect_args=connect_args, echo=False)

        if is_sqlite:
            self._configure_sqlite_pragmas()

        # expire_on_commit=False: rows are read back after commit to build API responses
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

        Base.metadata.create_all(bind=self.engine)

    def _configure_sqlite_pragmas(self):
        """
        Configure SQLite PRAGMA statements for durability and concurrency.

        - WAL mode: concurrent reads while the scheduler writes
        - SYNCHRONOUS=NORMAL: safe with WAL
        - foreign_keys: cascade stack deletion to its children
        """
        @event.listens_for(self.engine, "connect")
        def _set_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        try:
            with self.engine.connect() as conn:
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.execute(text("PRAGMA synchronous=NORMAL"))
                conn.commit()
        except Exception as e:
            logger.warning(f"Could not configure SQLite pragmas: {e}")

    def get_session(self) -> Session:
        """Get a database session"""
        return self.SessionLocal()

    def dispose(self):
        self.engine.dispose()

    # Stack Operations
    def get_stack(self, name: str) -> Optional[Stack]:
        with self.get_session() as session:
            return session.get(Stack, name)

    def get_environments(self, stack_name: str) -> List[Environment]:
        with self.get_session() as session:
            return session.query(Environment).filter_by(
                stack_name=stack_name
            ).order_by(Environment.color).all()

    def get_listener_states(self, stack_name: str) -> List[ListenerState]:
        with self.get_session() as session:
            return session.query(ListenerState).filter_by(stack_name=stack_name).all()

    def get_stack_resources(self, stack_name: str) -> List[StackResource]:
        with self.get_session() as session:
            return session.query(StackResource).filter_by(
                stack_name=stack_name
            ).order_by(StackResource.id).all()

    def get_alarm_states(self, stack_name: str) -> List[AlarmState]:
        with self.get_session() as session:
            return session.query(AlarmState).filter_by(
                stack_name=stack_name
            ).order_by(AlarmState.logical_id).all()

    # Rollout Operations
    def get_rollout(self, rollout_id: str) -> Optional[Rollout]:
        with self.get_session() as session:
            return session.get(Rollout, rollout_id)

    def get_rollouts(self, stack_name: str, limit: int = 50) -> List[Rollout]:
        with self.get_session() as session:
            return session.query(Rollout).filter_by(
                stack_name=stack_name
            ).order_by(Rollout.created_at.desc()).limit(limit).all()

    def get_pending_tasks(self, rollout_id: Optional[str] = None) -> List[ScheduledTask]:
        with self.get_session() as session:
            query = session.query(ScheduledTask).filter(ScheduledTask.status == 'pending')
            if rollout_id is not None:
                query = query.filter(ScheduledTask.rollout_id == rollout_id)
            return query.order_by(ScheduledTask.due_at, ScheduledTask.id).all()

    # Event Operations
    def add_event(self, event_data: dict) -> RolloutEvent:
        """Append an event to the audit trail"""
        with self.get_session() as session:
            data = event_data.get('data')
            row = RolloutEvent(
                stack_name=event_data['stack_name'],
                rollout_id=event_data.get('rollout_id'),
                event_type=event_data['event_type'],
                message=event_data.get('message'),
                data_json=json.dumps(data) if data else None,
            )
            session.add(row)
            session.commit()
            return row

    def get_events(self, rollout_id: Optional[str] = None, stack_name: Optional[str] = None,
                   limit: int = 500) -> List[RolloutEvent]:
        with self.get_session() as session:
            query = session.query(RolloutEvent)
            if rollout_id is not None:
                query = query.filter(RolloutEvent.rollout_id == rollout_id)
            if stack_name is not None:
                query = query.filter(RolloutEvent.stack_name == stack_name)
            return query.order_by(RolloutEvent.id).limit(limit).all()
