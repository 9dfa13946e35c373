import os
from typing import List, Optional

from .errors import ConfigError

FILTER_MODES = ("all", "labelled", "protected", "auto_merge")
READY_STATES = ("all", "draft", "ready_for_review")
CONFLICT_ACTIONS = ("fail", "ignore", "label")


def _split_list(raw: str) -> List[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


def _choice(name: str, default: str, allowed: tuple) -> str:
    value = os.getenv(name, "").strip().lower() or default
    if value not in allowed:
        raise ConfigError(f"{name} must be one of {', '.join(allowed)}; got {value!r}")
    return value


def _non_negative_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer; got {raw!r}")
    if value < 0:
        raise ConfigError(f"{name} must be >= 0; got {value}")
    return value


def _load_private_key(raw: str) -> str:
    # GH_APP_PRIVATE_KEY may be a filesystem path to the PEM file or the PEM itself.
    if not raw:
        return ""
    if os.path.isfile(raw):
        with open(raw, "r", encoding="utf-8") as f:
            return f.read().strip()
    return raw.replace("\\n", "\n")


class Settings:
    """Per-invocation configuration snapshot, read from the environment once.

    The updater only talks to the accessor methods so any object exposing the
    same methods can stand in for it.
    """

    # GitHub
    github_api_url: str
    service_version: str
    webhook_secret: str
    app_id: str
    app_private_key: str
    installation_id: Optional[str]

    # Transport retry/backoff
    http_max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_factor: float = 2.0
    max_backoff_seconds: int

    def __init__(self) -> None:
        self.github_api_url = os.getenv("GITHUB_API_URL", "https://api.github.com").rstrip("/")
        self.service_version = os.getenv("SERVICE_VERSION", "dev")
        self.webhook_secret = os.getenv("WEBHOOK_SECRET", "").strip()
        self.app_id = os.getenv("GH_APP_ID", "").strip()
        self.app_private_key = _load_private_key(os.getenv("GH_APP_PRIVATE_KEY", "").strip())
        self.installation_id = os.getenv("GH_APP_INSTALLATION_ID", "").strip() or None
        self.max_backoff_seconds = int(os.getenv("MAX_BACKOFF_SECONDS", "30"))

        self._token = os.getenv("GITHUB_TOKEN", "").strip()
        self._filter = _choice("PR_FILTER", "all", FILTER_MODES)
        self._labels = _split_list(os.getenv("PR_LABELS", ""))
        self._excluded_labels = _split_list(os.getenv("EXCLUDED_LABELS", ""))
        self._ready_state = _choice("PR_READY_STATE", "all", READY_STATES)
        self._dry_run = os.getenv("DRY_RUN", "").strip().lower() == "true"
        self._merge_msg = os.getenv("MERGE_MSG", "")
        self._conflict_msg = os.getenv("CONFLICT_MSG", "")
        self._retry_count = _non_negative_int("RETRY_COUNT", 5)
        self._retry_sleep = _non_negative_int("RETRY_SLEEP", 300)
        self._conflict_action = _choice("MERGE_CONFLICT_ACTION", "fail", CONFLICT_ACTIONS)
        self._conflict_label = os.getenv("MERGE_CONFLICT_LABEL", "").strip() or "merge-conflict"
        self._ref = os.getenv("GITHUB_REF") or None
        self._repository = os.getenv("GITHUB_REPOSITORY")

    def github_token(self) -> str:
        return self._token

    def pull_request_filter(self) -> str:
        return self._filter

    def pull_request_labels(self) -> List[str]:
        return list(self._labels)

    def excluded_labels(self) -> List[str]:
        return list(self._excluded_labels)

    def pull_request_ready_state(self) -> str:
        return self._ready_state

    def dry_run(self) -> bool:
        return self._dry_run

    def merge_msg(self) -> str:
        return self._merge_msg

    def conflict_msg(self) -> str:
        return self._conflict_msg

    def retry_count(self) -> int:
        return self._retry_count

    def retry_sleep(self) -> int:
        """Delay between merge attempts, in milliseconds."""
        return self._retry_sleep

    def merge_conflict_action(self) -> str:
        return self._conflict_action

    def merge_conflict_label(self) -> str:
        return self._conflict_label

    def github_ref(self) -> Optional[str]:
        return self._ref

    def github_repository(self) -> Optional[str]:
        return self._repository
