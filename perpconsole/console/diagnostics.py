"""
Scoped diagnostic event subscriptions.

Read-only tracing of the remote system's activity while a batch runs:

    async with DiagnosticSubscriptions(gateway, remote, events) as diag:
        ...  # events are logged as DIAG_EVENT while the block runs

Subscriptions are released on exit whether the block finished or raised.
"""
import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from perpconsole import constants
from perpconsole.domain.protocols import RemoteSystem
from perpconsole.exceptions import CommandError, ConsoleError
from perpconsole.gateway.remote_gateway import RemoteCallGateway
from perpconsole.monitoring.logger import get_logger

logger = get_logger(__name__)


class DiagnosticSubscriptions:
    """One event-feed subscription per event name, polled in the background."""

    def __init__(
        self,
        gateway: RemoteCallGateway,
        remote: RemoteSystem,
        event_names: Sequence[str] = constants.DEFAULT_DIAGNOSTIC_EVENTS,
        *,
        poll_interval: float = constants.DEFAULT_DIAGNOSTIC_POLL_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.remote = remote
        self.event_names = list(event_names)
        self.poll_interval = poll_interval
        self._sleep = sleep

        self.subscriptions: Dict[str, str] = {}
        self.failed: List[str] = []
        self.events_seen = 0
        self.attach_count = 0
        self.detach_count = 0
        self._poller: Optional[asyncio.Task] = None

    @property
    def attached(self) -> bool:
        return bool(self.subscriptions)

    async def attach(self) -> None:
        """Subscribe to every configured event. A failed subscription is logged and skipped."""
        self.attach_count += 1
        try:
            for name in self.event_names:
                try:
                    sub_id = await self.gateway.call(self.remote.subscribe_events, [name], label=f"subscribe:{name}")
                except CommandError as e:
                    self.failed.append(name)
                    logger.warning("DIAG_ATTACH_FAILED", event_name=name, error=str(e))
                    continue
                self.subscriptions[name] = sub_id
        except BaseException:
            # __aexit__ never runs when __aenter__ raises
            await self.detach()
            raise

        logger.info("DIAG_ATTACHED", events=list(self.subscriptions), failed=self.failed)
        if self.subscriptions and self.poll_interval > 0:
            self._poller = asyncio.create_task(self._poll_loop())

    async def detach(self) -> None:
        """Stop polling and release every subscription exactly once."""
        if self._poller is not None:
            self._poller.cancel()
            try:
                await self._poller
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error("DIAG_POLL_CRASHED", error=str(e), error_type=type(e).__name__)
            self._poller = None

        if not self.subscriptions:
            return

        self.detach_count += 1
        subscriptions, self.subscriptions = self.subscriptions, {}
        for name, sub_id in subscriptions.items():
            try:
                await self.gateway.call(self.remote.unsubscribe_events, sub_id, label=f"unsubscribe:{name}")
            except ConsoleError as e:
                logger.warning("DIAG_DETACH_FAILED", event_name=name, subscription=sub_id, error=str(e))
        logger.info("DIAG_DETACHED", events=list(subscriptions), events_seen=self.events_seen)

    async def _poll_loop(self) -> None:
        while True:
            await self._sleep(self.poll_interval)
            for name, sub_id in list(self.subscriptions.items()):
                try:
                    events = await self.gateway.call(self.remote.poll_events, sub_id, label=f"poll:{name}")
                except ConsoleError as e:
                    logger.debug("DIAG_POLL_FAILED", event_name=name, error=str(e))
                    continue
                for event in events:
                    self.events_seen += 1
                    logger.info(
                        "DIAG_EVENT",
                        event_name=event.name,
                        block=event.block,
                        tx=event.tx_ref,
                        data=event.data,
                    )

    async def __aenter__(self) -> "DiagnosticSubscriptions":
        await self.attach()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.detach()
        return False
