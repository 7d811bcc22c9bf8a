import logging
from datetime import timedelta

import requests
from celery import Celery
from github import Github, GithubException
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from gitfreelas.client import Client
from gitfreelas.config import DATABASE_URL, REDIS_URL, GITHUB_TOKEN, GITHUB_ORG, OVERDUE_GRACE_DAYS, RPC_URL
from gitfreelas.models import TaskStatus, TransactionStatus, utcnow
from gitfreelas.repositories import repository_name
from gitfreelas.tasks import confirm_transaction

logger = logging.getLogger(__name__)

celery_app = Celery("worker", broker=REDIS_URL)

# DB setup
client = Client(url=DATABASE_URL)

OVERDUE_CANDIDATES = [TaskStatus.OPEN, TaskStatus.APPLIED, TaskStatus.IN_PROGRESS]


def build_readme(task: dict) -> str:
	return (
		f"# {task['title']}\n\n"
		f"**Client:** {task['creator']['name']}\n"
		f"**Platform:** GitFreelas\n\n"
		f"## Task description\n\n{task['description']}\n\n"
		f"## Requirements\n\n{task.get('requirements') or 'None specified.'}\n\n"
		"## Getting started\n\n"
		"1. Clone this repository\n"
		"2. Build the solution following the description above\n"
		"3. Keep commits small and descriptive\n"
		"4. Open a Pull Request when you are done\n\n"
		"---\n"
		"*This repository was created automatically by GitFreelas*\n"
	)


@celery_app.task(name="workers.tasks.create_task_repository")
def create_task_repository(task_id: str):
	"""
	Create the private GitHub repository for an accepted task and record it.
	"""
	existing = active_repository(task_id)
	if existing:
		return existing["repository_url"]

	task = client.task.find_first(
		where={"id": task_id, "status": TaskStatus.IN_PROGRESS, "deleted_at": None},
		include={"creator": True, "task_developer": True},
	)
	if not task:
		logger.warning("task %s is not in progress, skipping repository creation", task_id)
		return None
	if not GITHUB_TOKEN:
		logger.warning("GITHUB_TOKEN is not set, skipping repository creation for task %s", task_id)
		return None

	g = Github(GITHUB_TOKEN)
	repo = create_github_repo(g, task)
	try:
		readme = repo.get_contents("README.md")
		repo.update_file("README.md", "docs: add task description and instructions", build_readme(task), readme.sha)
	except GithubException as e:
		logger.warning("could not write README for %s: %s", repo.full_name, e)

	developer = task.get("task_developer")
	if developer:
		add_developer_to_repo(g, repo, developer["developer_id"])

	client.task_repository.create(data={
		"task_id": task_id,
		"repository_name": repo.name,
		"repository_url": repo.html_url,
		"github_repo_id": repo.id,
		"is_active": True,
	})
	logger.info("repository %s created for task %s", repo.full_name, task_id)
	return repo.html_url


@retry(
	stop=stop_after_attempt(3),
	wait=wait_exponential(multiplier=1, min=1, max=8),
	retry=retry_if_exception_type(GithubException),
	reraise=True,
)
def create_github_repo(g: Github, task: dict):
	org = g.get_organization(GITHUB_ORG)
	return org.create_repo(
		name=repository_name(task["id"]),
		description=f"[GitFreelas] {task['title']}",
		private=True,
		auto_init=True,
		has_issues=True,
		has_projects=False,
		has_wiki=False,
	)


def active_repository(task_id: str):
	return client.task_repository.find_first(where={"task_id": task_id, "is_active": True, "deleted_at": None})


def org_repo(g: Github, name: str):
	return g.get_repo(f"{GITHUB_ORG}/{name}")


def github_username(g: Github, user_id: str):
	account = client.account.find_first(where={"user_id": user_id, "provider_id": "github"})
	if not account or not account["account_id"].isdigit():
		logger.warning("no GitHub account linked for user %s", user_id)
		return None
	return g.get_user_by_id(int(account["account_id"])).login


def add_developer_to_repo(g: Github, repo, developer_id: str) -> bool:
	try:
		username = github_username(g, developer_id)
		if not username:
			return False
		repo.add_to_collaborators(username, permission="push")
		return True
	except GithubException as e:
		logger.warning("could not add developer %s to %s: %s", developer_id, repo.full_name, e)
		return False


@celery_app.task(name="workers.tasks.remove_repository_collaborator")
def remove_repository_collaborator(task_id: str, username: str) -> bool:
	record = active_repository(task_id)
	if not record or not GITHUB_TOKEN:
		logger.warning("no active repository or GitHub token for task %s, skipping collaborator removal", task_id)
		return False
	org_repo(Github(GITHUB_TOKEN), record["repository_name"]).remove_from_collaborators(username)
	logger.info("%s removed from %s", username, record["repository_name"])
	return True


@celery_app.task(name="workers.tasks.delete_task_repository")
def delete_task_repository(task_id: str) -> bool:
	record = active_repository(task_id)
	if not record:
		return False
	if not GITHUB_TOKEN:
		logger.warning("GITHUB_TOKEN is not set, skipping repository deletion for task %s", task_id)
		return False
	try:
		org_repo(Github(GITHUB_TOKEN), record["repository_name"]).delete()
	except GithubException as e:
		# Already gone on GitHub
		if e.status != 404:
			raise
	client.task_repository.update(
		where={"id": record["id"]},
		data={"is_active": False, "deleted_at": utcnow()},
	)
	logger.info("repository %s deleted for task %s", record["repository_name"], task_id)
	return True


@celery_app.task(name="workers.tasks.comment_on_pull_request")
def comment_on_pull_request(task_id: str, pr_number: int, body: str) -> bool:
	record = active_repository(task_id)
	if not record or not GITHUB_TOKEN:
		return False
	try:
		pull = org_repo(Github(GITHUB_TOKEN), record["repository_name"]).get_pull(int(pr_number))
		pull.create_issue_comment(body)
	except GithubException as e:
		logger.warning("could not comment on PR #%s of %s: %s", pr_number, record["repository_name"], e)
		return False
	return True


@celery_app.task(name="workers.tasks.mark_overdue_tasks")
def mark_overdue_tasks() -> int:
	now = utcnow()
	result = client.task.update_many(
		where={
			"status": {"in": OVERDUE_CANDIDATES},
			"deleted_at": None,
			"OR": [
				{"allow_overdue": False, "deadline": {"lt": now}},
				{"allow_overdue": True, "deadline": {"lt": now - timedelta(days=OVERDUE_GRACE_DAYS)}},
			],
		},
		data={"status": TaskStatus.OVERDUE},
	)
	if result["count"]:
		logger.info("%d tasks marked overdue", result["count"])
	return result["count"]


@celery_app.task(name="workers.tasks.purge_expired_records")
def purge_expired_records() -> dict:
	now = utcnow()
	sessions = client.session.delete_many(where={"expires_at": {"lt": now}})
	verifications = client.verification.delete_many(where={"expires_at": {"lt": now}})
	return {"sessions": sessions["count"], "verifications": verifications["count"]}


# Retry with exponential backoff: 1s, 2s, 4s
@retry(
	stop=stop_after_attempt(4),
	wait=wait_exponential(multiplier=1, min=1, max=4),
	retry=retry_if_exception_type(requests.RequestException),
	reraise=True,
)
def fetch_receipt(tx_hash: str):
	resp = requests.post(
		RPC_URL,
		json={"jsonrpc": "2.0", "id": 1, "method": "eth_getTransactionReceipt", "params": [tx_hash]},
		timeout=10,
	)
	resp.raise_for_status()
	body = resp.json()
	if body.get("error"):
		raise requests.RequestException(f"RPC error: {body['error']}")
	return body.get("result")


@celery_app.task(name="workers.tasks.confirm_pending_transactions")
def confirm_pending_transactions() -> int:
	if not RPC_URL:
		return 0
	pending = client.blockchain_transaction.find_many(
		where={"status": TransactionStatus.PENDING, "tx_hash": {"not": None}},
		order_by={"created_at": "asc"},
	)
	settled = 0
	for transaction in pending:
		try:
			receipt = fetch_receipt(transaction["tx_hash"])
		except requests.RequestException as e:
			logger.warning("receipt lookup failed for %s: %s", transaction["tx_hash"], e)
			continue
		if not receipt:
			continue
		confirm_transaction(
			client,
			transaction["id"],
			success=receipt.get("status") == "0x1",
			block_number=int(receipt["blockNumber"], 16),
			gas_used=str(int(receipt["gasUsed"], 16)),
		)
		settled += 1
	return settled
