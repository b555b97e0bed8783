"""Application configuration"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # Database
    database_url: str = "sqlite:///./productsync.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Jira connection
    jira_base_url: str = ""
    jira_email: str = ""
    jira_api_token: str = ""
    jira_project_key: str = ""
    jira_issue_type: str = "Task"
    # "3" sends descriptions as Atlassian Document Format, "2" as plain text.
    jira_api_version: str = "3"
    jira_timeout_seconds: float = 10.0
    # Attempts for idempotent requests (GET/PUT) on transient failures.
    jira_max_attempts: int = 3

    # Transition used when a product is deleted.
    # An explicit id wins over a status name; with neither set, the first
    # transition that looks like "drop"/"cancel"/"close" is used.
    jira_drop_transition_id: str | None = None
    jira_drop_status_name: str | None = None

    # Periodic retry of products whose last sync attempt failed (0 disables).
    retry_failed_interval_minutes: int = 0
    retry_failed_batch_size: int = 50
    # Minutes after which an unfinished attempt (PENDING outcome, pending
    # delete) is treated as abandoned.
    stale_attempt_minutes: int = 10

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
