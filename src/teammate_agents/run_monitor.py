"""Entry point for running the coordination monitor as a long-lived process.

Runs the stall detector, the periodic rebalance pass, the tracker poller
and the event queue drain side by side.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from .core.config import is_teammate_mode_enabled, load_config
from .core.manager import TeammateManager
from .utils.rich_logging import ContextLogger, setup_rich_logging

EVENT_DRAIN_INTERVAL = 1.0

logger = logging.getLogger(__name__)


def setup_logging(workspace: Path) -> ContextLogger:
    """Setup logging for the monitor."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - monitor - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    return setup_rich_logging(
        component="monitor",
        workspace=workspace,
        log_level="INFO",
        use_file=True,
        use_json=False,
    )


def activity_listener(log: ContextLogger):
    """Coordinator listener that writes assignment and review activity to ``log``."""
    def listener(name: str, payload: dict) -> None:
        log.clear_context()
        log.set_context(epic_id=payload.get("epic_id"))
        if name == "issue.claimed":
            log.assignment_made(payload["issue_id"], payload["agent_id"], payload.get("score", 0.0))
        elif name.startswith("review."):
            log.review_decided(payload["issue_id"], name.split(".", 1)[1])
        elif name == "issue.needs_human":
            log.escalated(payload["issue_id"], 4, "needs human")
        elif name == "epic.blocked":
            log.warning(f"Epic blocked: {payload.get('reason', '')}")
    return listener


async def _rebalance_loop(manager: TeammateManager, stop: asyncio.Event) -> None:
    interval = manager.config.balancer.rebalance_interval
    while not stop.is_set():
        try:
            moved = await asyncio.to_thread(manager.coordinator.rebalance)
            if moved:
                logger.info(f"Rebalanced {len(moved)} issue(s)")
        except Exception as e:
            logger.exception(f"Error in rebalance loop: {e}")
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass


async def _event_loop(manager: TeammateManager, stop: asyncio.Event) -> None:
    while not stop.is_set():
        try:
            await asyncio.to_thread(manager.coordinator.process_events, manager.events)
        except Exception as e:
            logger.exception(f"Error processing tracker events: {e}")
        try:
            await asyncio.wait_for(stop.wait(), timeout=EVENT_DRAIN_INTERVAL)
        except asyncio.TimeoutError:
            pass


async def run_monitor(manager: TeammateManager, log: Optional[ContextLogger] = None) -> None:
    """Restore every stored epic and run the background passes until cancelled."""
    if log is not None:
        manager.coordinator.add_listener(activity_listener(log))
    loaded = manager.load_all()
    logger.info(f"Monitoring {len(loaded)} epic(s) with {len(manager.registry)} agent(s)")

    stop = asyncio.Event()
    tasks = [
        manager.stall_detector.run(),
        _rebalance_loop(manager, stop),
        _event_loop(manager, stop),
    ]

    poller = None
    if manager.tracker is not None:
        from .integrations.github.poller import IssuePoller
        poller = IssuePoller(
            manager.tracker,
            manager.events,
            interval=manager.config.github.poll_interval,
        )
        tasks.append(poller.run())

    if manager.config.github.webhook_port:
        from .web.server import serve
        tasks.append(serve(manager, manager.config.github.webhook_port))

    try:
        await asyncio.gather(*tasks)
    finally:
        stop.set()
        await manager.stall_detector.stop()
        if poller is not None:
            await poller.stop()


async def main_async():
    """Main async entry point."""
    workspace = Path.cwd()
    log = setup_logging(workspace)

    try:
        config = load_config(workspace / "config" / "teammate.yaml")
        if not is_teammate_mode_enabled(config=config):
            logger.warning("Teammate mode is disabled; set TEAMMATE_MODE=true or enabled: true in config")
            return
        config = config.model_copy(update={"workspace": workspace})

        tracker = None
        if config.github.configured:
            from .integrations.github.client import GitHubIssueTracker
            tracker = GitHubIssueTracker(config.github)

        manager = TeammateManager(config=config, tracker=tracker)
        logger.info("Starting monitor")
        await run_monitor(manager, log)

    except KeyboardInterrupt:
        logger.info("Monitor interrupted, shutting down")
    except Exception as e:
        logger.exception(f"Monitor crashed: {e}")
        sys.exit(1)


def main():
    """Main entry point for the monitor subprocess."""
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
