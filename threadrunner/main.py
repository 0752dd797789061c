"""Main entry point - orchestrates all components."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import uvicorn
import yaml

from .agent_client import AgentClient, AgentClientConfig
from .coordinator import ExecutionCoordinator
from .message_queue import MessageQueue
from .notifier import Notifier
from .permission_gateway import ApprovalMailbox
from .server import create_app
from .session_registry import SessionRegistry
from .telegram_bot import TelegramBot
from .tmux_controller import TmuxController
from .todo_tracker import TodoTracker

logger = logging.getLogger(__name__)

SESSION_SWEEP_INTERVAL_SECONDS = 300


def load_config(config_path: str = "config.yaml") -> dict:
    """Load configuration from YAML file."""
    path = Path(config_path)

    if not path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


class ThreadRunnerApp:
    """Main application orchestrator."""

    def __init__(self, config: dict):
        self.config = config

        server_config = config.get("server", {})
        self.host = server_config.get("host", "127.0.0.1")
        self.port = server_config.get("port", 8430)

        paths = config.get("paths", {})
        self.state_file = paths.get("state_file", "/tmp/threadrunner/sessions.json")
        self.ipc_dir = paths.get("ipc_dir", "/tmp/threadrunner/permissions")
        self.attachments_dir = paths.get("attachments_dir", "/tmp/threadrunner/attachments")

        self.tmux = TmuxController(config)
        self.registry = SessionRegistry(
            self.tmux,
            state_file=self.state_file,
            session_prefix=config.get("tmux", {}).get("session_prefix", "claude_chat"),
        )
        self.queue = MessageQueue()
        self.mailbox = ApprovalMailbox(self.ipc_dir)
        self.agent = AgentClient(AgentClientConfig.from_config(config))
        self.todo_tracker = TodoTracker()

        # Telegram bot (optional)
        telegram_config = config.get("telegram", {})
        agent_config = config.get("agent", {})
        self.telegram_bot: Optional[TelegramBot] = None
        if telegram_config.get("token"):
            self.telegram_bot = TelegramBot(
                token=telegram_config["token"],
                allowed_chat_ids=telegram_config.get("allowed_chat_ids"),
                allowed_user_ids=telegram_config.get("allowed_user_ids"),
                base_directory=agent_config.get("base_directory"),
                default_working_dir=agent_config.get("default_working_dir"),
                attachments_dir=self.attachments_dir,
            )
        else:
            logger.warning("Telegram token not configured; threads can only be inspected over HTTP")

        self.notifier = Notifier(telegram_bot=self.telegram_bot)
        self.coordinator = ExecutionCoordinator(
            queue=self.queue,
            registry=self.registry,
            agent=self.agent,
            notifier=self.notifier,
            todo_tracker=self.todo_tracker,
            mailbox=self.mailbox,
            cleanup_delay_seconds=config.get("coordinator", {}).get("cleanup_delay_seconds", 300),
        )

        if self.telegram_bot:
            self.telegram_bot.coordinator = self.coordinator
            self.telegram_bot.mailbox = self.mailbox

        self.app = create_app(coordinator=self.coordinator, mailbox=self.mailbox, config=config)
        self._sweep_task: Optional[asyncio.Task] = None

    async def _sweep_inactive_sessions(self):
        while True:
            await asyncio.sleep(SESSION_SWEEP_INTERVAL_SECONDS)
            logger.debug("Running session cleanup")
            self.coordinator.cleanup_inactive_sessions()

    async def start(self):
        """Start all components and serve HTTP until shutdown."""
        logger.info("Starting threadrunner...")

        if self.telegram_bot:
            await self.telegram_bot.start()

        self._sweep_task = asyncio.create_task(self._sweep_inactive_sessions())

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
        )
        server = uvicorn.Server(config)

        logger.info(f"Starting server on http://{self.host}:{self.port}")
        await server.serve()

    async def stop(self):
        """Stop all components."""
        logger.info("Stopping threadrunner...")

        if self._sweep_task:
            self._sweep_task.cancel()
            await asyncio.gather(self._sweep_task, return_exceptions=True)

        if self.telegram_bot:
            await self.telegram_bot.stop()

        await self.coordinator.shutdown()
        logger.info("Shutdown complete")


async def main(config_path: str = "config.yaml"):
    """Main entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    config = load_config(config_path)
    app = ThreadRunnerApp(config)

    try:
        await app.start()
    finally:
        await app.stop()


def run(config_path: str = "config.yaml"):
    asyncio.run(main(config_path))


if __name__ == "__main__":
    run()
