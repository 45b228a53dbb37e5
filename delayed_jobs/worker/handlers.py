"""
Handler contract and registry.

Handlers must tolerate at-least-once delivery: the same job may run more than
once if a worker crashes or its lease is reclaimed. Handlers with external side
effects should check the state of their target entity before acting, raise
PermanentFailure when retrying cannot help (entity missing, wrong state) and
TransientFailure for transport or I/O errors.
"""

import logging
from collections.abc import Iterable
from typing import Protocol, runtime_checkable

from delayed_jobs.exceptions import ConfigurationError
from delayed_jobs.types.job import HandlerConfig

logger = logging.getLogger(__name__)


@runtime_checkable
class JobHandler(Protocol):
    """
    Business logic executed for a job.

    `run` returns normally on success or raises. JobFailure subclasses decide
    between retry and terminal failure; any other exception is retried.
    """

    async def run(self, actor_id: str) -> None: ...


class HandlerRegistry:
    """
    Maps queue names to exactly one handler.

    Built once at process start from explicit (handler, config) pairs.
    Registering a second handler under a used queue name raises
    ConfigurationError, so a bad deployment fails at boot instead of
    dispatching ambiguously.

    Example:
        registry = HandlerRegistry([
            (OrderEmailJobHandler(orders, mailer), None),
            (AuditHandler(), HandlerConfig(queue_name="audit", priority=1)),
        ])
    """

    def __init__(
        self,
        handlers: Iterable[tuple[JobHandler, HandlerConfig | None]] = (),
    ):
        self._handlers: dict[str, JobHandler] = {}
        self._configs: dict[str, HandlerConfig] = {}
        self._frozen = False

        for handler, config in handlers:
            self.register(handler, config)

    def register(self, handler: JobHandler, config: HandlerConfig | None = None) -> HandlerConfig:
        """
        Register a handler.

        Args:
            handler: Object implementing `async run(actor_id)`.
            config: Registration metadata. Falls back to the handler's own
                `config` attribute when omitted.

        Returns:
            The config the handler was registered under.

        Raises:
            ConfigurationError: If no queue name is available, the handler
                does not implement `run`, the queue name is taken, or the
                registry is frozen.
        """
        if self._frozen:
            raise ConfigurationError("Cannot register handlers: registry is frozen")

        if config is None:
            config = getattr(handler, "config", None)
        if not isinstance(config, HandlerConfig):
            raise ConfigurationError(
                f"Handler {type(handler).__name__} has no HandlerConfig; "
                "pass one at registration or declare a `config` attribute"
            )
        if not config.queue_name:
            raise ConfigurationError(
                f"Handler {type(handler).__name__} has an empty queue name"
            )
        if not isinstance(handler, JobHandler):
            raise ConfigurationError(
                f"Handler {type(handler).__name__} does not implement run(actor_id)"
            )

        existing = self._handlers.get(config.queue_name)
        if existing is not None:
            logger.error(
                "Duplicate queue name",
                extra={"queue_name": config.queue_name},
            )
            raise ConfigurationError(
                f"Duplicate queue name '{config.queue_name}' for handlers: "
                f"{type(existing).__name__} and {type(handler).__name__}"
            )

        self._handlers[config.queue_name] = handler
        self._configs[config.queue_name] = config

        logger.info(
            f"Registered handler: {type(handler).__name__}",
            extra={
                "queue_name": config.queue_name,
                "priority": config.priority,
                "description": config.description,
            },
        )
        return config

    def lookup(self, queue_name: str | None) -> JobHandler | None:
        """
        Get the handler for a queue name.

        Returns:
            The handler or None if nothing is registered under the name.
        """
        if not queue_name:
            return None
        return self._handlers.get(queue_name)

    def get_config(self, queue_name: str | None) -> HandlerConfig | None:
        """Get the registration metadata for a queue name."""
        if not queue_name:
            return None
        return self._configs.get(queue_name)

    @property
    def queue_names(self) -> frozenset[str]:
        """All registered queue names."""
        return frozenset(self._handlers)

    def freeze(self) -> None:
        """Reject further registrations."""
        self._frozen = True

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def __contains__(self, queue_name: object) -> bool:
        return queue_name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)
