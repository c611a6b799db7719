"""Configuration constants for Branch Chat."""

import os

from dotenv import load_dotenv

# Environment overrides may live in a local .env file
load_dotenv()

# Default model recorded on new conversations when the caller does not pick one
DEFAULT_MODEL = os.environ.get("BRANCHCHAT_DEFAULT_MODEL", "claude-sonnet-4-5-20250929")

# Identity used when no X-User-Id header is sent (auth lives outside this service)
DEFAULT_USER_ID = os.environ.get("BRANCHCHAT_DEFAULT_USER", "local-user")

# Storage
DATABASE_PATH = os.environ.get("BRANCHCHAT_DATABASE_PATH", "data/conversations.db")
STORE_BUSY_TIMEOUT = float(os.environ.get("BRANCHCHAT_BUSY_TIMEOUT", "10"))  # seconds

# Branching
MAIN_BRANCH_NAME = "main"  # message-level branch name given to copied history
MAX_BRANCH_NAME_LENGTH = 100
MAX_TITLE_LENGTH = 255

# Sidebar hierarchy
DEFAULT_HIERARCHY_LIMIT = 50
