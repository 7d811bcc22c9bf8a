import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, Enum, JSON, ForeignKey
from sqlalchemy.orm import declarative_base, relationship

from .config import DEFAULT_NETWORK_ID

Base = declarative_base()


def new_id() -> str:
	return uuid.uuid4().hex


def utcnow() -> datetime:
	# Naive UTC everywhere; SQLite does not keep offsets
	return datetime.now(timezone.utc).replace(tzinfo=None)


class TaskStatus(str, enum.Enum):
	OPEN = "OPEN"
	APPLIED = "APPLIED"
	IN_PROGRESS = "IN_PROGRESS"
	PENDING_APPROVAL = "PENDING_APPROVAL"
	COMPLETED = "COMPLETED"
	CANCELLED = "CANCELLED"
	OVERDUE = "OVERDUE"
	REFUNDED = "REFUNDED"


class TransactionType(str, enum.Enum):
	DEPOSIT = "DEPOSIT"
	RELEASE = "RELEASE"
	REFUND = "REFUND"
	PLATFORM_FEE = "PLATFORM_FEE"


class TransactionStatus(str, enum.Enum):
	PENDING = "PENDING"
	CONFIRMED = "CONFIRMED"
	FAILED = "FAILED"
	CANCELLED = "CANCELLED"


class User(Base):
	__tablename__ = "users"

	id = Column(String, primary_key=True, default=new_id)
	name = Column(String, nullable=False)
	email = Column(String, unique=True, index=True, nullable=False)
	email_verified = Column(Boolean, nullable=False, default=False)
	image = Column(String, nullable=True)
	created_at = Column(DateTime, nullable=False, default=utcnow)
	updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
	role = Column(String, nullable=True)

	sessions = relationship("Session", back_populates="user", passive_deletes=True)
	accounts = relationship("Account", back_populates="user", passive_deletes=True)
	created_tasks = relationship("Task", back_populates="creator", passive_deletes=True)
	task_developers = relationship("TaskDeveloper", back_populates="developer", passive_deletes=True)
	transactions = relationship("BlockchainTransaction", back_populates="user", passive_deletes=True)


class Session(Base):
	__tablename__ = "sessions"

	id = Column(String, primary_key=True, default=new_id)
	expires_at = Column(DateTime, nullable=False)
	token = Column(String, unique=True, index=True, nullable=False)
	created_at = Column(DateTime, nullable=False, default=utcnow)
	updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
	ip_address = Column(String, nullable=True)
	user_agent = Column(String, nullable=True)
	user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

	user = relationship("User", back_populates="sessions")


class Account(Base):
	__tablename__ = "accounts"

	id = Column(String, primary_key=True, default=new_id)
	account_id = Column(String, nullable=False)
	provider_id = Column(String, nullable=False)
	user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
	access_token = Column(Text, nullable=True)
	refresh_token = Column(Text, nullable=True)
	id_token = Column(Text, nullable=True)
	access_token_expires_at = Column(DateTime, nullable=True)
	refresh_token_expires_at = Column(DateTime, nullable=True)
	scope = Column(String, nullable=True)
	password = Column(String, nullable=True)
	created_at = Column(DateTime, nullable=False, default=utcnow)
	updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

	user = relationship("User", back_populates="accounts")


class Verification(Base):
	__tablename__ = "verifications"

	id = Column(String, primary_key=True, default=new_id)
	identifier = Column(String, nullable=False, index=True)
	value = Column(String, nullable=False)
	expires_at = Column(DateTime, nullable=False)
	created_at = Column(DateTime, nullable=True, default=utcnow)
	updated_at = Column(DateTime, nullable=True, default=utcnow, onupdate=utcnow)


class Task(Base):
	__tablename__ = "tasks"

	id = Column(String, primary_key=True, default=new_id)
	title = Column(String, nullable=False)
	description = Column(Text, nullable=False)
	requirements = Column(Text, nullable=True)
	links = Column(JSON, nullable=True)
	attachments = Column(JSON, nullable=True)
	value_in_wei = Column(String, nullable=False)
	deadline = Column(DateTime, nullable=False)
	allow_overdue = Column(Boolean, nullable=False, default=False)
	status = Column(Enum(TaskStatus, name="task_status"), nullable=False, default=TaskStatus.OPEN)
	contract_task_id = Column(String, nullable=True)
	creator_id = Column(String, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
	created_at = Column(DateTime, nullable=False, default=utcnow)
	updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
	deleted_at = Column(DateTime, nullable=True)

	creator = relationship("User", back_populates="created_tasks")
	task_developer = relationship("TaskDeveloper", back_populates="task", uselist=False, passive_deletes=True)
	repository = relationship("TaskRepository", back_populates="task", uselist=False, passive_deletes=True)
	transactions = relationship("BlockchainTransaction", back_populates="task", passive_deletes=True)


class TaskDeveloper(Base):
	__tablename__ = "task_developers"

	id = Column(String, primary_key=True, default=new_id)
	task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), unique=True, nullable=False)
	developer_id = Column(String, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
	wallet_address = Column(String, nullable=False)
	network_id = Column(String, nullable=False, default=DEFAULT_NETWORK_ID)
	applied_at = Column(DateTime, nullable=False, default=utcnow)
	accepted_at = Column(DateTime, nullable=True)

	task = relationship("Task", back_populates="task_developer")
	developer = relationship("User", back_populates="task_developers")


class TaskRepository(Base):
	__tablename__ = "task_repositories"

	id = Column(String, primary_key=True, default=new_id)
	task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), unique=True, nullable=False)
	repository_name = Column(String, nullable=False)
	repository_url = Column(String, nullable=False)
	github_repo_id = Column(Integer, nullable=True)
	is_active = Column(Boolean, nullable=False, default=True)
	created_at = Column(DateTime, nullable=False, default=utcnow)
	deleted_at = Column(DateTime, nullable=True)

	task = relationship("Task", back_populates="repository")


class BlockchainTransaction(Base):
	__tablename__ = "blockchain_transactions"

	id = Column(String, primary_key=True, default=new_id)
	task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
	user_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
	type = Column(Enum(TransactionType, name="transaction_type"), nullable=False)
	status = Column(Enum(TransactionStatus, name="transaction_status"), nullable=False, default=TransactionStatus.PENDING)
	tx_hash = Column(String, nullable=True, index=True)
	block_number = Column(Integer, nullable=True)
	gas_used = Column(String, nullable=True)
	value_in_wei = Column(String, nullable=False)
	network_id = Column(String, nullable=False)
	error_message = Column(Text, nullable=True)
	created_at = Column(DateTime, nullable=False, default=utcnow)
	confirmed_at = Column(DateTime, nullable=True)

	task = relationship("Task", back_populates="transactions")
	user = relationship("User", back_populates="transactions")
