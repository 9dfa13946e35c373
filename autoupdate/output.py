import os
import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class ActionOutput:
    """Collects step outputs and the failed flag for a single run.

    When GITHUB_OUTPUT names a file, outputs are appended to it using the
    GitHub Actions name=value format.
    """

    def __init__(self, output_path: Optional[str] = None):
        self.output_path = output_path if output_path is not None else os.getenv("GITHUB_OUTPUT")
        self.outputs: Dict[str, str] = {}
        self.failed = False
        self.failure_message: Optional[str] = None

    def set_output(self, name: str, value) -> None:
        if isinstance(value, bool):
            value = "true" if value else "false"
        value = str(value)
        self.outputs[name] = value
        logger.debug("output: %s=%s", name, value)
        if self.output_path:
            with open(self.output_path, "a", encoding="utf-8") as f:
                f.write(f"{name}={value}\n")

    def set_failed(self, message: str) -> None:
        logger.error("%s", message)
        self.failed = True
        if self.failure_message is None:
            self.failure_message = message
