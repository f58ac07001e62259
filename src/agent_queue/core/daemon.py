"""The poll loop: messages, runtime recovery, dispatch, sleep."""

import logging
import os
import signal
import threading
from datetime import datetime, timezone

import psutil

from agent_queue.core import tasks
from agent_queue.core.agents import Executor, git_identity
from agent_queue.core.messages import fetch_messages, parse_directive
from agent_queue.core.recovery import check_runtime_stale_tasks, recover_stale_tasks
from agent_queue.integrations.tracker import TrackerClient, TrackerError
from agent_queue.models import Message
from agent_queue.web.app import WebhookServer

logger = logging.getLogger(__name__)

MEMORY_EXIT_CODE = 42
MEMORY_WARNING_RATIO = 0.8
BYTES_PER_MB = 1024 * 1024


def _since(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Daemon:
    """Owns one agent identity: polls the tracker and feeds the Executor."""

    def __init__(
        self,
        config,
        client: TrackerClient | None = None,
        executor: Executor | None = None,
    ):
        self.config = config
        self.client = client or TrackerClient.from_config(config)
        self.executor = executor or Executor(self.client, config)
        self.exit_code = 0
        self.last_message_at = datetime.now(timezone.utc)
        self._seen_messages: set[int] = set()
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._webhook: WebhookServer | None = None
        self._proc = psutil.Process()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def run(self) -> int:
        """Run until shutdown. Returns the process exit code."""
        self.install_signal_handlers()
        for key, value in git_identity(self.config).items():
            os.environ.setdefault(key, value)

        logger.info("Agent:    %s", self.config.agent_name)
        logger.info("Tracker:  %s (%s)", self.config.tracker_repo, self.config.api_url)
        logger.info("Work dir: %s", self.config.work_dir)
        logger.info("Model:    %s", self.config.model)
        logger.info("Poll:     %ss", self.config.poll_interval)
        logger.info("Strategy: %s", "worktree" if self.config.use_worktree else "branch")

        try:
            assigned = tasks.list_tasks(
                self.client, assignee=self.config.agent_name, status="assigned"
            )
        except TrackerError as e:
            logger.error("Failed to reach the tracker: %s", e)
            return 1
        logger.info("Connected. Found %d assigned task(s)", len(assigned))

        recover_stale_tasks(self.client, self.config)

        if self.config.webhook_port:
            self._webhook = WebhookServer(
                self, host=self.config.webhook_host, port=self.config.webhook_port
            )
            self._webhook.start()
        if self.config.public_url:
            self.register_webhook()

        logger.info("Entering poll loop")
        try:
            while not self.stopping:
                self.poll_cycle()
                if self.stopping:
                    break
                self.sleep()
        finally:
            if self._webhook:
                self._webhook.stop()
            self.client.close()
            logger.info("Goodbye")
        return self.exit_code

    def install_signal_handlers(self):
        if threading.current_thread() is not threading.main_thread():
            return
        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)

    def _handle_signal(self, signum, frame):
        self.shutdown(signal.Signals(signum).name)

    def shutdown(self, reason: str = "shutdown"):
        """Stop the loop and ask a running agent to exit. Repeated calls are no-ops."""
        if self._stop.is_set():
            return
        logger.info("Received %s, shutting down", reason)
        self._stop.set()
        self._wake.set()
        if self._webhook:
            self._webhook.stop()
            self._webhook = None
        self.executor.request_stop()

    def wake(self):
        self._wake.set()

    def sleep(self):
        self._wake.wait(self.config.poll_interval)
        self._wake.clear()

    def register_webhook(self):
        url = self.config.public_url.rstrip("/") + "/webhook"
        try:
            self.client.create_webhook(url)
            logger.info("Registered webhook URL: %s", url)
        except TrackerError as e:
            logger.error("Failed to register webhook URL %s: %s", url, e)

    # ── Cycle ────────────────────────────────────────────────────────────────

    def poll_cycle(self):
        if not self.check_memory():
            return
        self.process_messages()
        if self.stopping:
            return
        if not self.executor.busy:
            check_runtime_stale_tasks(self.client, self.config)
        self.dispatch()

    def check_memory(self) -> bool:
        """Log RSS. Above the ceiling, begin a graceful exit with code 42."""
        rss_mb = self._proc.memory_info().rss / BYTES_PER_MB
        limit = self.config.max_rss_mb
        if rss_mb > limit:
            logger.error("RSS %.0fMB exceeds limit %dMB, exiting", rss_mb, limit)
            self.exit_code = MEMORY_EXIT_CODE
            self.shutdown("memory limit")
            return False
        if rss_mb > limit * MEMORY_WARNING_RATIO:
            logger.warning("High memory: RSS %.0fMB of %dMB", rss_mb, limit)
        else:
            logger.debug("Memory: RSS %.0fMB", rss_mb)
        return True

    def dispatch(self):
        """Execute the first assigned task not yet processed this session."""
        if self.stopping or self.executor.busy:
            return
        try:
            assigned = tasks.list_tasks(
                self.client, assignee=self.config.agent_name, status="assigned"
            )
        except TrackerError as e:
            logger.error("Poll tasks error: %s", e)
            return
        for task in assigned:
            if not self.executor.was_processed(task.id):
                self.executor.execute(task)
                break

    # ── Messages ─────────────────────────────────────────────────────────────

    def process_messages(self):
        try:
            messages, newest = fetch_messages(
                self.client, self.config.agent_name, _since(self.last_message_at)
            )
        except TrackerError as e:
            logger.error("Poll messages error: %s", e)
            return

        for message in messages:
            if message.id in self._seen_messages:
                continue
            self._seen_messages.add(message.id)
            self.handle_message(message)
        if newest and newest > self.last_message_at:
            self.last_message_at = newest

    def handle_message(self, message: Message):
        logger.info("Message from %s on #%s: %s", message.author, message.task_id, message.body)
        directive = parse_directive(message.body)

        if directive.action == "start":
            task_id = directive.task_id
            if self.executor.was_processed(task_id):
                logger.warning("Task #%s was already processed this session", task_id)
                return
            if self.executor.busy:
                logger.warning("Busy, leaving #%s for a later poll", task_id)
                return
            try:
                task = tasks.get_task(self.client, task_id)
            except TrackerError as e:
                logger.error("Failed to handle start request for #%s: %s", task_id, e)
                return
            self.executor.execute(task)
            return

        if directive.action == "status":
            current = self.executor.current_task
            reply = (
                f"Working on task #{current.id}: \"{current.title}\""
                if current
                else "Idle, waiting for tasks."
            )
            if message.author:
                reply = f"@{message.author} {reply}"
            try:
                tasks.add_comment(self.client, message.task_id, reply)
            except TrackerError as e:
                logger.error("Failed to send status reply: %s", e)
            return

        logger.info("Unrecognized message, ignoring")
