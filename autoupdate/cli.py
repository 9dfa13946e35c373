import os
import sys
import json
import logging
from typing import Any, Dict, Optional

from .auth import GitHubAuthenticator
from .config import Settings
from .errors import AutoUpdateError
from .github import GitHubClient
from .models import EVENT_NAMES, parse_event, split_repository
from .output import ActionOutput
from .updater import AutoUpdater

logger = logging.getLogger(__name__)


def load_event_payload(path: Optional[str]) -> Dict[str, Any]:
    """Read the webhook payload GitHub Actions writes to GITHUB_EVENT_PATH."""
    if not path or not os.path.isfile(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def run(settings: Settings, event_name: str, payload: Dict[str, Any], output: ActionOutput) -> int:
    event = parse_event(event_name, payload)
    if event is None:
        output.set_failed(f"Unknown event type '{event_name}', only {', '.join(EVENT_NAMES)} are supported")
        return 0

    owner = ((payload.get("repository") or {}).get("owner") or {}).get("login")
    if not owner:
        parts = split_repository(settings.github_repository())
        owner = parts[0] if parts else None
    auth = GitHubAuthenticator.from_settings(settings, owner=owner)
    auth.validate()

    updater = AutoUpdater(settings, GitHubClient(auth, settings), event, output)
    return updater.route()


def main() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    output = ActionOutput()
    event_name = os.getenv("GITHUB_EVENT_NAME", "")
    try:
        settings = Settings()
        payload = load_event_payload(os.getenv("GITHUB_EVENT_PATH"))
        logger.debug("Handling event '%s'", event_name)
        updated = run(settings, event_name, payload, output)
    except AutoUpdateError as e:
        output.set_failed(str(e))
        sys.exit(1)
    logger.info("Updated %s pull request(s)", updated)
    if output.failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
