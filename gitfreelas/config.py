import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), '..', '.env'))

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./gitfreelas.db")
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_QUERIES = os.getenv("LOG_QUERIES", "false").lower() in ("1", "true", "yes")

# Interactive transactions
TRANSACTION_TIMEOUT_MS = int(os.getenv("TRANSACTION_TIMEOUT_MS", "5000"))
TRANSACTION_MAX_WAIT_MS = int(os.getenv("TRANSACTION_MAX_WAIT_MS", "2000"))
TRANSACTION_MAX_RETRIES = int(os.getenv("TRANSACTION_MAX_RETRIES", "3"))

# Platform
DEFAULT_NETWORK_ID = os.getenv("DEFAULT_NETWORK_ID", "11155111")
PLATFORM_FEE_PERCENTAGE = int(os.getenv("PLATFORM_FEE_PERCENTAGE", "3"))
OVERDUE_GRACE_DAYS = int(os.getenv("OVERDUE_GRACE_DAYS", "3"))

# Integrations
GITHUB_TOKEN = os.getenv("GITHUB_TOKEN")
GITHUB_ORG = os.getenv("GITHUB_ORG", "gitfreelas-org")
RPC_URL = os.getenv("RPC_URL")
GITHUB_WEBHOOK_SECRET = os.getenv("GITHUB_WEBHOOK_SECRET")
