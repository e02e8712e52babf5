"""
Escalation External Service Integrations
=========================================

External services for the escalation engine:
- YAML policy file watcher (hot reload)
- Notification sinks: Slack webhook, in-process channel broadcaster
- APScheduler for the periodic risk scan and ladder sweep
"""

import asyncio
import threading
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from shipwatch.config import NotificationChannel, settings
from shipwatch.core import ConfigurationException, NotificationException
from shipwatch.escalation.application.services import (
    IEngineConfigProvider,
    INotificationSink,
)
from shipwatch.escalation.domain import EngineConfig
from shipwatch.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


# ========== Policy file ==========

class ConfigFileHandler(FileSystemEventHandler):
    """Watchdog event handler for escalation policy file changes."""

    def __init__(self, config_manager: "EngineConfigManager", config_path: Path):
        self.config_manager = config_manager
        self.config_path = config_path
        super().__init__()

    def on_modified(self, event):
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.config_path.resolve():
            logger.info("Escalation config file changed", extra={"path": str(event.src_path)})
            self.config_manager.reload()


class EngineConfigManager(IEngineConfigProvider):
    """
    Thread-safe escalation policy holder with hot-reload support.

    Uses watchdog to monitor the YAML file and swap in the new policy
    without restarting the service. A reload that fails validation keeps
    the previous policy.
    """

    def __init__(self):
        self._config: Optional[EngineConfig] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> EngineConfig:
        """
        Initial configuration load.

        Raises:
            ConfigurationException: The file exists but is not a valid policy
        """
        self._path = Path(path)
        try:
            config = self._load_from_file(self._path)
        except (yaml.YAMLError, ValidationError, TypeError) as e:
            raise ConfigurationException(
                f"Invalid escalation config: {self._path}",
                details={"error": str(e)}
            ) from e
        with self._lock:
            self._config = config
        logger.info(
            "Escalation configuration loaded",
            extra={
                "path": str(self._path),
                "sla_risk_threshold": config.sla_risk_threshold,
                "issue_severity_threshold": config.issue_severity_threshold,
            }
        )
        return config

    def _load_from_file(self, path: Path) -> EngineConfig:
        if not path.exists():
            logger.warning("Escalation config file not found, using defaults", extra={"path": str(path)})
            return EngineConfig()

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        return EngineConfig(**data)

    def reload(self) -> bool:
        """Reload configuration from file."""
        if self._path is None:
            return False

        try:
            new_config = self._load_from_file(self._path)
            with self._lock:
                self._config = new_config
            logger.info("Escalation configuration reloaded successfully")
            return True
        except Exception as e:
            logger.error("Failed to reload escalation config", extra={"error": str(e)})
            return False

    def start_watching(self) -> None:
        """
        Start watching the policy file for changes.

        Skips watching when the file does not exist or the platform has no
        usable file notifications (some containers).
        """
        if self._path is None:
            raise RuntimeError("Config not loaded. Call load() first.")

        if not self._path.exists():
            logger.info(
                "Config file doesn't exist, skipping file watch",
                extra={"path": str(self._path)}
            )
            return

        try:
            self._observer = Observer()
            handler = ConfigFileHandler(self, self._path)
            self._observer.schedule(handler, str(self._path.parent), recursive=False)
            self._observer.start()
            logger.info("Started watching config file", extra={"path": str(self._path)})
        except OSError as e:
            logger.warning("File watching not available, using static config", extra={"error": str(e)})
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def get_config(self) -> EngineConfig:
        with self._lock:
            if self._config is None:
                raise RuntimeError("Escalation configuration not loaded")
            return self._config


# ========== Notification sinks ==========

class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for preventing cascade failures.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
        if self._state == CircuitState.OPEN and self._last_failure_time:
            if time.monotonic() - self._last_failure_time >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = time.monotonic()

        if self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


_HEADERS = {
    NotificationChannel.ESCALATION_TRIGGERED: (":rotating_light:", "Shipment Escalation Triggered"),
    NotificationChannel.ESCALATION_ADVANCED: (":arrow_double_up:", "Shipment Escalation Advanced"),
    NotificationChannel.ESCALATION_ACKNOWLEDGED: (":white_check_mark:", "Shipment Escalation Acknowledged"),
}


class SlackNotificationSink(INotificationSink):
    """
    Slack webhook sink with circuit breaker and retry logic.

    Handles sending escalation events to Slack with:
    - Circuit breaker to prevent cascade failures
    - Exponential backoff retry
    - Timeout handling
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        channel: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        max_retries: int = 3,
        retry_base_delay: float = 1.0
    ):
        self._webhook_url = webhook_url if webhook_url is not None else settings.slack_webhook_url
        self._channel = channel or settings.slack_channel
        self._timeout = timeout_seconds or settings.slack_timeout_seconds
        self._http_client = http_client
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._circuit_breaker = CircuitBreaker(failure_threshold=5, recovery_timeout=60)

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    def build_message(self, channel: str, message: Dict[str, Any]) -> Dict[str, Any]:
        """Build Slack Block Kit message."""
        emoji, header_text = _HEADERS.get(channel, (":package:", "Shipment Escalation"))
        data = message.get("data", {})
        payload = data.get("payload", {})
        contact = payload.get("contact") or payload.get("original", {}).get("contact", {})

        if channel == NotificationChannel.ESCALATION_ACKNOWLEDGED:
            detail = f"*Acknowledged by:*\n{payload.get('acknowledged_by', '-')} ({payload.get('method', '-')})"
        else:
            detail = f"*Reason:*\n{payload.get('reason', '-')}"

        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": f"{emoji} {header_text}", "emoji": True}
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Shipment:*\n{data.get('shipment_id', '-')}"},
                    {"type": "mrkdwn", "text": f"*Attempt:*\n#{data.get('attempt_number', '-')}"},
                    {"type": "mrkdwn", "text": f"*Contact:*\n{contact.get('user_id', '-')} via {contact.get('channel_type', '-')}"},
                    {"type": "mrkdwn", "text": detail},
                ]
            },
            {
                "type": "context",
                "elements": [
                    {"type": "mrkdwn", "text": f"Event: {channel} | {message.get('timestamp', '')}"}
                ]
            }
        ]

        return {"channel": self._channel, "blocks": blocks}

    async def publish(self, channel: str, message: Dict[str, Any]) -> None:
        """
        Post the event to the Slack webhook.

        Raises:
            NotificationException: Every retry failed
        """
        if not self._webhook_url:
            logger.debug("Slack webhook URL not configured, skipping notification")
            return

        if not self._circuit_breaker.allow_request():
            logger.warning("Circuit breaker open, skipping Slack notification", extra={"channel": channel})
            return

        body = self.build_message(channel, message)
        last_error: Optional[str] = None

        for attempt in range(self._max_retries):
            try:
                client = await self._get_client()
                response = await client.post(self._webhook_url, json=body)

                if response.status_code == 200:
                    self._circuit_breaker.record_success()
                    logger.info("Slack notification sent", extra={"channel": channel})
                    return
                last_error = f"HTTP {response.status_code}"
                logger.warning(
                    "Slack webhook returned non-200",
                    extra={"status_code": response.status_code, "attempt": attempt + 1}
                )
            except httpx.HTTPError as e:
                last_error = str(e)
                logger.error(
                    "Slack notification failed",
                    extra={"error": str(e), "attempt": attempt + 1, "channel": channel}
                )

            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._retry_base_delay * (2 ** attempt))

        self._circuit_breaker.record_failure()
        raise NotificationException(
            "Slack delivery failed", details={"channel": channel, "error": last_error}
        )

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class ChannelBroadcaster(INotificationSink):
    """
    In-process pub/sub on named channels.

    Subscribers get a bounded queue; a full queue drops the message for that
    subscriber only.
    """

    def __init__(self, max_queue_size: int = 100):
        self._max_queue_size = max_queue_size
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}

    def subscribe(self, channel: str, queue: Optional[asyncio.Queue] = None) -> asyncio.Queue:
        """Register a queue on ``channel``; pass the same queue to listen on several."""
        if queue is None:
            queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.setdefault(channel, []).append(queue)
        return queue

    def unsubscribe(self, channel: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(channel, [])
        if queue in queues:
            queues.remove(queue)

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, []))

    async def publish(self, channel: str, message: Dict[str, Any]) -> None:
        for queue in list(self._subscribers.get(channel, [])):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning("Subscriber queue full, dropping message", extra={"channel": channel})


class FanoutNotificationSink(INotificationSink):
    """Publishes to every sink; one failing sink does not starve the others."""

    def __init__(self, sinks: Sequence[INotificationSink]):
        self._sinks = list(sinks)

    async def publish(self, channel: str, message: Dict[str, Any]) -> None:
        errors = []
        for sink in self._sinks:
            try:
                await sink.publish(channel, message)
            except Exception as e:
                errors.append(f"{type(sink).__name__}: {e}")

        if errors:
            raise NotificationException(
                "One or more sinks failed", details={"channel": channel, "errors": errors}
            )


# ========== Scheduler ==========

JobFunc = Callable[[], Awaitable[Any]]


class EscalationScheduler:
    """
    Wrapper for APScheduler running the two periodic jobs.

    Each job runs at most once at a time; missed runs are coalesced.
    """

    def __init__(
        self,
        risk_scan_interval_seconds: int = 900,
        ladder_advance_interval_seconds: int = 60
    ):
        self.risk_scan_interval_seconds = risk_scan_interval_seconds
        self.ladder_advance_interval_seconds = ladder_advance_interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, risk_scan_job: JobFunc, ladder_advance_job: JobFunc) -> None:
        if self._running:
            logger.warning("Escalation scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()

        self._scheduler.add_job(
            risk_scan_job,
            "interval",
            seconds=self.risk_scan_interval_seconds,
            id="sla_risk_scan",
            name="SLA Risk Scan Job",
            misfire_grace_time=60,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self._scheduler.add_job(
            ladder_advance_job,
            "interval",
            seconds=self.ladder_advance_interval_seconds,
            id="ladder_advance",
            name="Ladder Advance Job",
            misfire_grace_time=30,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        self._scheduler.start()
        self._running = True

        logger.info(
            "Escalation scheduler started",
            extra={
                "risk_scan_interval_seconds": self.risk_scan_interval_seconds,
                "ladder_advance_interval_seconds": self.ladder_advance_interval_seconds,
            }
        )

    async def stop(self) -> None:
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("Escalation scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running
