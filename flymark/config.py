"""
Configuration constants for the flymark system.
"""

from pathlib import Path


# Execution configuration
EXECUTION_TIMEOUT_SECONDS: float = 120
OUTPUT_LIMIT_BYTES: int = 64 * 1024
TRUNCATION_MARKER: str = "\n[... output truncated ...]"
PROCESS_POLL_SECONDS: float = 0.05
DEFAULT_CONCURRENCY: int = 4

# Environment exposed to criterion commands
STUDENT_ENV_VAR: str = "FLYMARK_STUDENT"
SUBMISSION_ENV_VAR: str = "FLYMARK_SUBMISSION"

# Scheme defaults
DEFAULT_SCHEME_TOTAL: float = 100
WEIGHT_TOLERANCE: float = 1e-9
COMMAND_PLACEHOLDERS: tuple[str, ...] = ("submission", "student", "args")
# Matches "{identifier}" tokens; "{print $1}" and friends are left alone
PLACEHOLDER_PATTERN: str = r"\{([A-Za-z_][A-Za-z0-9_]*)\}"
CRITERION_NAME_PATTERN: str = r"^[A-Za-z0-9_.\-]+$"

# imark submission configuration
# The production endpoint for a course offering, e.g. ~cs1521/22T1
IMARK_ENDPOINT_TEMPLATE: str = "https://cgi.cse.unsw.edu.au/~{course}/{session}/imark/server.cgi/"
DEFAULT_MARK_NAME: str = "performance"
SUBMIT_ATTEMPTS: int = 3
BACKOFF_SECONDS: float = 0.5
REQUEST_TIMEOUT_SECONDS: float = 30.0
# 4xx statuses that mean "try again later" rather than a rejection
RETRYABLE_CLIENT_STATUSES: tuple[int, ...] = (408, 429)
MARK_TIMESTAMP_FORMAT: str = "%Y-%m-%d %H:%M:%S.%f"

# Credentials (fall back to ~/.netrc for the endpoint host)
USERNAME_ENV_VAR: str = "FLYMARK_USERNAME"
PASSWORD_ENV_VAR: str = "FLYMARK_PASSWORD"
COOKIE_ENV_VAR: str = "FLYMARK_COOKIE"

# Default paths (can be overridden via config)
DEFAULT_CONFIG_PATH: Path = Path("flymark.yml")
DEFAULT_REPORTS_DIR: Path = Path("marks")
MARKS_SUMMARY_FILENAME: str = "marks_summary.json"
MARKS_CSV_FILENAME: str = "marks_summary.csv"
