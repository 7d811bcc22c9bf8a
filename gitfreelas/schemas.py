from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Any, Literal

from pydantic import BaseModel, Field, field_validator

from .models import TaskStatus, TransactionType, TransactionStatus

MIN_VALUE_ETHER = Decimal("0.001")
MAX_VALUE_ETHER = Decimal("100")

TaskSort = Literal["newest", "oldest", "highest_value", "lowest_value", "deadline_soon"]


def _naive_utc(value: datetime) -> datetime:
	if value.tzinfo is not None:
		value = value.astimezone(timezone.utc).replace(tzinfo=None)
	return value


class CreateTaskRequest(BaseModel):
	title: str = Field(min_length=3, max_length=100)
	description: str = Field(min_length=10, max_length=2000)
	requirements: Optional[str] = Field(default=None, max_length=1000)
	value_in_ether: str
	deadline: datetime
	allow_overdue: bool = False
	links: Optional[List[Any]] = None
	attachments: Optional[List[Any]] = None
	contract_tx_hash: Optional[str] = None
	wallet_address: Optional[str] = None

	@field_validator("requirements", "contract_tx_hash", "wallet_address", mode="before")
	@classmethod
	def blank_to_none(cls, value):
		return value or None

	@field_validator("value_in_ether")
	@classmethod
	def check_value(cls, value):
		try:
			amount = Decimal(value)
		except InvalidOperation:
			raise ValueError("value must be a number") from None
		if not amount.is_finite():
			raise ValueError("value must be a number")
		if amount < MIN_VALUE_ETHER:
			raise ValueError("minimum value is 0.001 ETH")
		if amount > MAX_VALUE_ETHER:
			raise ValueError("maximum value is 100 ETH")
		return value

	@field_validator("deadline")
	@classmethod
	def check_deadline(cls, value):
		value = _naive_utc(value)
		now = datetime.now(timezone.utc).replace(tzinfo=None)
		if value <= now + timedelta(days=1):
			raise ValueError("deadline must be at least 1 day from now")
		return value


class ApplyTaskRequest(BaseModel):
	wallet_address: str


class UpdateTaskStatusRequest(BaseModel):
	status: TaskStatus


class ApproveTaskRequest(BaseModel):
	release_tx_hash: Optional[str] = None


class ReviewSubmissionRequest(BaseModel):
	pr_number: int = Field(gt=0)
	feedback: str = Field(min_length=1, max_length=2000)

	@field_validator("feedback")
	@classmethod
	def strip_feedback(cls, value):
		value = value.strip()
		if not value:
			raise ValueError("feedback is required")
		return value


# GitHub webhook payload, only the fields we read

class GitHubUser(BaseModel):
	login: str


class GitHubRepository(BaseModel):
	name: str
	full_name: Optional[str] = None


class GitHubPullRequest(BaseModel):
	number: int
	html_url: str
	user: GitHubUser


class PullRequestEvent(BaseModel):
	action: str
	repository: GitHubRepository
	pull_request: Optional[GitHubPullRequest] = None


class TaskFilters(BaseModel):
	status: Optional[List[TaskStatus]] = None
	min_value: Optional[str] = None
	max_value: Optional[str] = None
	deadline_from: Optional[datetime] = None
	deadline_to: Optional[datetime] = None
	creator_id: Optional[str] = None
	search: Optional[str] = None

	@field_validator("min_value", "max_value", mode="before")
	@classmethod
	def check_wei(cls, value):
		if value in (None, ""):
			return None
		if not (str(value).isascii() and str(value).isdigit()):
			raise ValueError("must be a whole number of wei")
		return str(value)

	@field_validator("deadline_from", "deadline_to")
	@classmethod
	def normalize_deadline(cls, value):
		return _naive_utc(value) if value is not None else value


class UserSummary(BaseModel):
	id: str
	name: str
	email: str
	image: Optional[str] = None


class TaskDeveloperOut(BaseModel):
	id: str
	developer_id: str
	wallet_address: str
	network_id: str
	applied_at: datetime
	accepted_at: Optional[datetime] = None
	developer: Optional[UserSummary] = None


class TaskRepositoryOut(BaseModel):
	id: str
	repository_name: str
	repository_url: str
	github_repo_id: Optional[int] = None
	is_active: bool
	created_at: datetime


class BlockchainTransactionOut(BaseModel):
	id: str
	task_id: str
	user_id: Optional[str] = None
	type: TransactionType
	status: TransactionStatus
	tx_hash: Optional[str] = None
	block_number: Optional[int] = None
	gas_used: Optional[str] = None
	value_in_wei: str
	network_id: str
	error_message: Optional[str] = None
	created_at: datetime
	confirmed_at: Optional[datetime] = None


class TaskOut(BaseModel):
	id: str
	title: str
	description: str
	requirements: Optional[str] = None
	links: Optional[List[Any]] = None
	attachments: Optional[List[Any]] = None
	value_in_wei: str
	deadline: datetime
	allow_overdue: bool
	status: TaskStatus
	contract_task_id: Optional[str] = None
	creator_id: str
	created_at: datetime
	updated_at: datetime
	creator: Optional[UserSummary] = None
	task_developer: Optional[TaskDeveloperOut] = None
	repository: Optional[TaskRepositoryOut] = None
	transactions: List[BlockchainTransactionOut] = []


class TaskListResponse(BaseModel):
	tasks: List[TaskOut]
	total: int
	page: int
	limit: int


class MyTasksResponse(BaseModel):
	created_tasks: List[TaskOut]
	applied_tasks: List[TaskOut]


class ActionResponse(BaseModel):
	success: bool
	message: Optional[str] = None
	task: Optional[TaskOut] = None
