"""Rich logging with epic/issue context."""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional


class CoordinationLogFormatter(logging.Formatter):
    """Formatter that prefixes records with component, epic and issue context."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }

    def __init__(self, component: str, use_colors: bool = True):
        super().__init__()
        self.component = component
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")

        context = ""
        if hasattr(record, "epic_id"):
            context += f"[{record.epic_id}] "
        if hasattr(record, "issue_id"):
            context += f"[{record.issue_id}] "
        if hasattr(record, "agent_id"):
            context += f"<{record.agent_id}> "

        if self.use_colors:
            level_color = self.LEVEL_COLORS.get(record.levelname, "")
            reset = "\033[0m"
        else:
            level_color = ""
            reset = ""

        line = (
            f"{timestamp} {level_color}{record.levelname:8s}{reset} "
            f"[{self.component}] {context}{record.getMessage()}"
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that adds epic/issue/agent context to all log messages."""

    def __init__(self, logger: logging.Logger, component: str):
        super().__init__(logger, {})
        self.component = component
        self.current_epic_id: Optional[str] = None
        self.current_issue_id: Optional[str] = None
        self.current_agent_id: Optional[str] = None

    def set_context(
        self,
        epic_id: Optional[str] = None,
        issue_id: Optional[str] = None,
        agent_id: Optional[str] = None,
    ):
        if epic_id:
            self.current_epic_id = epic_id
        if issue_id:
            self.current_issue_id = issue_id
        if agent_id:
            self.current_agent_id = agent_id

    def clear_context(self):
        self.current_epic_id = None
        self.current_issue_id = None
        self.current_agent_id = None

    def process(self, msg, kwargs):
        extra = kwargs.get("extra", {})

        if self.current_epic_id:
            extra["epic_id"] = self.current_epic_id
        if self.current_issue_id:
            extra["issue_id"] = self.current_issue_id
        if self.current_agent_id:
            extra["agent_id"] = self.current_agent_id

        kwargs["extra"] = extra
        return msg, kwargs

    def assignment_made(self, issue_id: str, agent_id: str, score: float):
        self.set_context(issue_id=issue_id, agent_id=agent_id)
        self.info(f"📋 Assigned (score {score:.1f})")

    def escalated(self, issue_id: str, level: int, action: str):
        self.set_context(issue_id=issue_id)
        emoji = "🚨" if level >= 4 else "⚠️"
        self.warning(f"{emoji} Escalation level {level}: {action}")

    def review_decided(self, issue_id: str, decision: str):
        self.set_context(issue_id=issue_id)
        emoji = {"approved": "✅", "changes_requested": "🔁"}.get(decision, "🚨")
        self.info(f"{emoji} Review: {decision}")


def setup_rich_logging(
    component: str,
    workspace: Optional[Path] = None,
    log_level: str = "INFO",
    use_file: bool = True,
    use_json: bool = False,
) -> ContextLogger:
    """
    Setup logging for a long-running coordination component.

    Args:
        component: Component name (e.g. ``monitor``)
        workspace: Workspace path; logs go under ``<workspace>/logs``
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        use_file: Write to log file
        use_json: Use JSON structured logging

    Returns:
        ContextLogger instance
    """
    unique_logger_name = f"teammate.{component}-{os.getpid()}"
    logger = logging.getLogger(unique_logger_name)
    logger.setLevel(getattr(logging, log_level.upper()))

    # Close existing handlers before clearing (prevents file descriptor leak)
    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)

    if use_json:
        formatter = logging.Formatter(
            '{"timestamp":"%(asctime)s","component":"%(component)s","level":"%(levelname)s",'
            '"message":"%(message)s","module":"%(module)s","function":"%(funcName)s"}',
            defaults={"component": component},
        )
    else:
        formatter = CoordinationLogFormatter(component, use_colors=sys.stdout.isatty())

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if use_file and workspace is not None:
        log_dir = Path(workspace) / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / f"{component}.log")
        file_handler.setFormatter(CoordinationLogFormatter(component, use_colors=False))
        logger.addHandler(file_handler)

    return ContextLogger(logger, component)
