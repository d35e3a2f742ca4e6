"""
Configuration loader for the flymark system.

Handles parsing and validation of YAML configuration files, and resolving
imark credentials from the environment or ~/.netrc.
"""

import netrc
import os
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

import yaml
from pydantic import BaseModel, Field, SecretStr

from .config import (
    BACKOFF_SECONDS,
    COOKIE_ENV_VAR,
    DEFAULT_CONCURRENCY,
    DEFAULT_MARK_NAME,
    EXECUTION_TIMEOUT_SECONDS,
    OUTPUT_LIMIT_BYTES,
    PASSWORD_ENV_VAR,
    REQUEST_TIMEOUT_SECONDS,
    SUBMIT_ATTEMPTS,
    USERNAME_ENV_VAR,
)
from .imark_client import default_endpoint
from .models import EndpointConfig, RunSettings, StudentTarget


class TargetEntry(BaseModel):
    """A student listed explicitly in the configuration file."""

    student: str = Field(..., description="Student identifier")
    submission: Path = Field(..., description="Path to the student's submission")
    skip: list[str] = Field(default_factory=list, description="Criteria to skip")


class Credentials(BaseModel):
    username: Optional[str] = None
    password: Optional[SecretStr] = None
    cookie: Optional[SecretStr] = None


class MarkerConfig(BaseModel):
    """
    Configuration model for a marking run.
    """
    scheme_path: Path = Field(..., description="Path to the marking scheme")
    course: str = Field(..., description="Course code, e.g. cs1521")
    session: str = Field(..., description="Session code, e.g. 22T1")
    assignment: str = Field("", description="Assignment or exam name sent with each mark")
    endpoint: Optional[str] = Field(None, description="Override for the imark CGI endpoint")
    mark_name: str = Field(DEFAULT_MARK_NAME, description="Name of the submitted mark")
    marker: Optional[str] = Field(None, description="Marker recorded with each mark (default: username)")

    submissions_dir: Optional[Path] = Field(None, description="Directory with one sub-directory per student")
    targets: list[TargetEntry] = Field(default_factory=list, description="Explicit student list")

    concurrency: int = Field(DEFAULT_CONCURRENCY, ge=1, description="Students marked in parallel")
    default_timeout: float = Field(EXECUTION_TIMEOUT_SECONDS, gt=0, description="Default criterion timeout")
    output_limit: int = Field(OUTPUT_LIMIT_BYTES, gt=0, description="Bytes of output kept per stream")
    attempts: int = Field(SUBMIT_ATTEMPTS, ge=1, description="Submission attempt budget")
    backoff_seconds: float = Field(BACKOFF_SECONDS, ge=0, description="Initial retry backoff")
    request_timeout: float = Field(REQUEST_TIMEOUT_SECONDS, gt=0, description="HTTP request timeout")

    reports_dir: Optional[Path] = Field(None, description="Path to save the run report")
    dry_run: bool = Field(False, description="Mark without submitting")
    validate_only: bool = Field(False, description="Only validate the scheme")
    verbose: bool = Field(False, description="Enable verbose output")

    @property
    def endpoint_url(self) -> str:
        return self.endpoint or default_endpoint(self.course, self.session)

    def run_settings(self) -> RunSettings:
        return RunSettings(
            default_timeout=self.default_timeout,
            output_limit=self.output_limit,
            concurrency_limit=self.concurrency,
        )

    def endpoint_config(self, credentials: Credentials | None = None) -> EndpointConfig:
        """
        Build the endpoint configuration for the submission client.

        Args:
            credentials: Credentials to attach to requests.

        Returns:
            EndpointConfig for this course offering.
        """
        credentials = credentials or Credentials()
        return EndpointConfig(
            url=self.endpoint_url,
            course=self.course,
            session=self.session,
            assignment=self.assignment,
            mark_name=self.mark_name,
            marker=self.marker or credentials.username or "flymark",
            username=credentials.username,
            password=credentials.password,
            cookie=credentials.cookie,
            attempts=self.attempts,
            backoff_seconds=self.backoff_seconds,
            request_timeout=self.request_timeout,
        )

    def student_targets(self) -> list[StudentTarget]:
        """
        Students to mark: the explicit target list, or else one per
        sub-directory of submissions_dir.
        """
        if self.targets:
            return [
                StudentTarget(student_id=t.student, submission=t.submission, skip=frozenset(t.skip))
                for t in self.targets
            ]
        if self.submissions_dir is None:
            return []
        return find_submissions(self.submissions_dir)


def find_submissions(submissions_dir: Path) -> list[StudentTarget]:
    """
    Find all student submission directories.

    Args:
        submissions_dir: Path to directory containing one folder per student.

    Returns:
        List of StudentTarget objects, sorted by student.
    """
    targets: list[StudentTarget] = []

    for item in sorted(submissions_dir.iterdir()):
        if not item.is_dir():
            continue

        # Skip hidden directories and caches
        if item.name.startswith(".") or item.name == "__pycache__":
            continue

        targets.append(StudentTarget(student_id=item.name, submission=item.resolve()))

    return targets


def load_config(config_path: Path) -> MarkerConfig:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        MarkerConfig object with loaded values.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        yaml.YAMLError: If config file is invalid YAML.
        ValidationError: If config data is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        config_data = yaml.safe_load(f) or {}

    if not isinstance(config_data, dict):
        raise ValueError(f"Configuration must be a mapping: {config_path}")

    # Resolve relative paths relative to the config file location
    config_dir = config_path.parent

    for path_field in ["scheme_path", "submissions_dir", "reports_dir"]:
        if config_data.get(path_field):
            config_data[path_field] = _resolve(config_dir, config_data[path_field])

    for target in config_data.get("targets") or []:
        if isinstance(target, dict) and target.get("submission"):
            target["submission"] = _resolve(config_dir, target["submission"])

    return MarkerConfig(**config_data)


def _resolve(base: Path, value) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = base / path
    return path


def resolve_credentials(endpoint_url: str) -> Credentials:
    """
    Find imark credentials for an endpoint.

    Priority: 1. FLYMARK_USERNAME / FLYMARK_PASSWORD / FLYMARK_COOKIE
    environment variables, 2. the ~/.netrc entry for the endpoint host.

    Args:
        endpoint_url: imark endpoint the credentials are for.

    Returns:
        Credentials (possibly empty).
    """
    username = os.environ.get(USERNAME_ENV_VAR)
    password = os.environ.get(PASSWORD_ENV_VAR)
    cookie = os.environ.get(COOKIE_ENV_VAR)

    if not username:
        host = urlsplit(endpoint_url).hostname
        try:
            auth = netrc.netrc().authenticators(host) if host else None
        except (FileNotFoundError, netrc.NetrcParseError):
            auth = None
        if auth:
            username, _, netrc_password = auth
            password = password or netrc_password

    return Credentials(
        username=username or None,
        password=SecretStr(password) if password else None,
        cookie=SecretStr(cookie) if cookie else None,
    )
