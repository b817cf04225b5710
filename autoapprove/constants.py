"""
Shared constants for the auto-approve engine.
"""

# Defaults
DEFAULT_MAX_FILES = 5
DEFAULT_MAX_LINES = 125
DEFAULT_MIN_OPEN_SECONDS = 3600
DEFAULT_MODEL_TIMEOUT = 30.0
DEFAULT_MIN_MODELS = 2
CONSENSUS_MIN_CONFIDENCE = 0.85
MAX_RETRY_ATTEMPTS = 3

# Author associations that indicate write access
ASSOCIATION_OWNER = "OWNER"
ASSOCIATION_MEMBER = "MEMBER"
ASSOCIATION_COLLABORATOR = "COLLABORATOR"
ELEVATED_ASSOCIATIONS = frozenset({
    ASSOCIATION_OWNER,
    ASSOCIATION_MEMBER,
    ASSOCIATION_COLLABORATOR,
})
FIRST_TIME_ASSOCIATIONS = frozenset({"FIRST_TIME_CONTRIBUTOR", "FIRST_TIMER"})

# PR states
STATE_OPEN = "open"
STATE_CLOSED = "closed"
STATE_MERGED = "merged"

# Review states
REVIEW_APPROVED = "APPROVED"
REVIEW_CHANGES_REQUESTED = "CHANGES_REQUESTED"
REVIEW_COMMENTED = "COMMENTED"
BLOCKING_REVIEW_STATES = frozenset({
    REVIEW_APPROVED,
    REVIEW_CHANGES_REQUESTED,
    REVIEW_COMMENTED,
})

# Commit status states
CHECK_SUCCESS = "success"
CHECK_PENDING = "pending"
CHECK_FAILURE = "failure"
CHECK_ERROR = "error"

# Check-run states
RUN_COMPLETED = "completed"
RUN_ACTIVE_STATES = frozenset({"in_progress", "queued", "waiting", "requested", "pending"})
RUN_PASSING_CONCLUSIONS = frozenset({"success", "neutral", "skipped"})

# Merge methods
MERGE_SQUASH = "squash"
MERGE_MERGE = "merge"
MERGE_REBASE = "rebase"
MERGE_METHODS = (MERGE_SQUASH, MERGE_MERGE, MERGE_REBASE)

# Repository permission levels, lowest first
ROLE_RANK = {"none": 0, "read": 1, "triage": 2, "write": 3, "maintain": 4, "admin": 5}

DEFAULT_DEPENDENCY_BOTS = ("dependabot[bot]", "dependabot")
BOT_USER_TYPE = "Bot"
