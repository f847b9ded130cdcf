"""Translate coordination errors to user-friendly messages."""

import re
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class UserFriendlyError:
    """User-friendly error representation."""
    original_error: Exception
    title: str
    explanation: str
    actions: List[str]
    documentation: Optional[str] = None
    show_technical: bool = False


class ErrorTranslator:
    """Translate technical errors to user-friendly messages."""

    ERROR_PATTERNS = {
        r"InvalidTransition": {
            "title": "Epic state change not allowed",
            "explanation": "The epic cannot move to the requested state from where it is now. No changes were made.",
            "actions": [
                "Check the current state: teammate epic show <epic-id>",
                "Allowed moves: uninitialized→active, active→paused|blocked|review, "
                "paused→active|archived, blocked→active|paused, review→active|completed, completed→archived",
            ],
        },

        r"VersionConflict": {
            "title": "Epic was modified concurrently",
            "explanation": "Someone else updated the epic after you read it.",
            "actions": [
                "Re-read the epic: teammate epic show <epic-id>",
                "Re-apply your update",
            ],
        },

        r"AlreadyClaimed|LockTimeout": {
            "title": "Issue is being claimed by another agent",
            "explanation": "Another agent claimed this issue first or holds its claim lock. This is safe to retry.",
            "actions": [
                "Retry assignment: teammate epic assign <epic-id> --auto-assign",
                "Pick a different issue",
            ],
        },

        r"NoCapacity": {
            "title": "No agent has free capacity",
            "explanation": "Every eligible agent is at its concurrent-task cap, over 90% workload, or scores below the minimum match threshold.",
            "actions": [
                "Add agents to config/agents.yaml",
                "Raise max_concurrent_tasks for existing agents",
                "Lower scoring.min_score in config/teammate.yaml",
            ],
        },

        r"ReviewerUnavailable": {
            "title": "No reviewer available",
            "explanation": "No agent other than the author qualified to review this work. A human reviewer is needed.",
            "actions": [
                "Assign a human reviewer on the issue",
                "Register agents with overlapping capabilities",
            ],
        },

        r"ExternalSyncFailure|rate.*limit|Bad credentials": {
            "title": "Issue tracker unreachable",
            "explanation": "Changes were kept locally but could not be mirrored to GitHub.",
            "actions": [
                "Check GITHUB_TOKEN and github settings in config/teammate.yaml",
                "Re-run: teammate epic sync <epic-id>",
            ],
            "documentation": "README.md#configuration",
        },

        r"NotFoundError": {
            "title": "Not found",
            "explanation": "The referenced epic, issue or agent does not exist in the context store.",
            "actions": [
                "List epics: teammate epic list",
                "Restore context: teammate teammate context-restore --epic <epic-id>",
            ],
        },

        r"EpicNotActive|DependenciesNotMet|NotAssignee": {
            "title": "Operation not permitted right now",
            "explanation": "The epic or issue is not in a state that allows this operation.",
            "actions": [
                "Check the epic state and issue dependencies: teammate epic show <epic-id>",
            ],
        },

        r"config.*not.*found|no such file.*config": {
            "title": "Configuration missing",
            "explanation": "Required configuration files were not found.",
            "actions": [
                "Create config/teammate.yaml and config/agents.yaml",
            ],
            "documentation": "README.md#configuration",
        },

        r"YAMLError|ScannerError|ParserError": {
            "title": "Invalid configuration",
            "explanation": "A configuration file could not be parsed or has invalid values.",
            "actions": [
                "Check config/teammate.yaml and config/agents.yaml for syntax errors",
                "Compare field names and types against the documented options",
            ],
            "documentation": "README.md#configuration",
        },
    }

    def translate(self, error: Exception) -> UserFriendlyError:
        """Convert exception to user-friendly format."""
        error_str = str(error)
        error_type = type(error).__name__
        full_error = f"{error_type}: {error_str}"

        for pattern, translation in self.ERROR_PATTERNS.items():
            if re.search(pattern, full_error, re.IGNORECASE):
                return UserFriendlyError(
                    original_error=error,
                    title=translation["title"],
                    explanation=translation["explanation"],
                    actions=translation["actions"],
                    documentation=translation.get("documentation"),
                    show_technical=True,
                )

        return UserFriendlyError(
            original_error=error,
            title="Unexpected error",
            explanation=str(error),
            actions=[
                "Re-run with --verbose for details",
                "Check logs for details",
            ],
            show_technical=True,
        )

    def format_for_cli(self, friendly_error: UserFriendlyError) -> str:
        """Format error for CLI display."""
        output = f"[bold red]{friendly_error.title}[/]\n\n"
        output += f"{friendly_error.explanation}\n\n"

        output += "[bold]How to fix:[/]\n"
        for i, action in enumerate(friendly_error.actions, 1):
            output += f"  {i}. {action}\n"

        if friendly_error.documentation:
            output += f"\n[dim]Learn more: {friendly_error.documentation}[/]"

        if friendly_error.show_technical:
            output += f"\n\n[dim]Technical details:[/]\n[dim]{friendly_error.original_error}[/]"

        return output
