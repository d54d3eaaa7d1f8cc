"""
Wires the console components from configuration.
"""
import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from perpconsole.config.config import ConsoleConfig
from perpconsole.console.batch_runner import BatchRunner
from perpconsole.console.commands import ActorSelector
from perpconsole.console.diagnostics import DiagnosticSubscriptions
from perpconsole.console.dispatcher import Dispatcher
from perpconsole.console.ledger import HistoryLedger
from perpconsole.console.session import Session
from perpconsole.domain.protocols import RemoteSystem
from perpconsole.gateway.remote_gateway import RemoteCallGateway
from perpconsole.gateway.retry import RetryPolicy
from perpconsole.monitoring.logger import get_logger
from perpconsole.reconciliation.reconciler import FinancialReconciler
from perpconsole.remote.jsonrpc_client import JsonRpcRemote

logger = get_logger(__name__)


@dataclass
class ConsoleRuntime:
    """Every long-lived component of one console process."""
    config: ConsoleConfig
    remote: RemoteSystem
    gateway: RemoteCallGateway
    session: Session
    ledger: HistoryLedger
    reconciler: FinancialReconciler
    dispatcher: Dispatcher
    runner: BatchRunner

    async def aclose(self) -> None:
        self.gateway.close()
        close = getattr(self.remote, "close", None)
        if close is not None:
            await close()

    async def __aenter__(self) -> "ConsoleRuntime":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.aclose()
        return False


def create_runtime(
    config: ConsoleConfig,
    *,
    remote: Optional[RemoteSystem] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> ConsoleRuntime:
    """
    Build the runtime from configuration.

    Args:
        config: Loaded console configuration
        remote: Remote system implementation (defaults to the JSON-RPC client)
        sleep: Awaitable sleep shared by gateway backoff and SLEEP
    """
    if remote is None:
        remote = JsonRpcRemote(
            config.remote.rpc_url,
            timeout_seconds=config.remote.request_timeout_seconds,
            method_prefix=config.remote.method_prefix,
        )

    g = config.gateway
    session = Session.from_addresses(
        config.actors.deployer,
        config.actors.users,
        market_id=config.remote.default_market_id,
        concurrency_limit=g.concurrency_limit,
        retry_policy=RetryPolicy.from_millis(g.retry_attempts, g.retry_base_delay_ms, g.retry_max_delay_ms),
        success_pause_ms=config.pauses.success_pause_ms,
        error_pause_ms=config.pauses.error_pause_ms,
    )
    if config.actors.default_actor:
        selector = ActorSelector.parse(config.actors.default_actor)
        if selector is not None and session.has_actor(selector.index):
            session.current_actor = selector.index
        else:
            logger.warning("DEFAULT_ACTOR_IGNORED", actor=config.actors.default_actor)
    elif session.has_actor(0):
        session.current_actor = 0

    gateway = RemoteCallGateway(
        session.concurrency_limit,
        session.retry_policy,
        probe=remote.probe,
        probe_before_retry=g.probe_before_retry,
        probe_timeout=g.probe_timeout_seconds,
        sleep=sleep,
    )

    ledger = HistoryLedger()
    reconciler = FinancialReconciler(
        gateway,
        remote,
        unrealized_tolerance_bps=config.reconciliation.unrealized_tolerance_bps,
    )
    dispatcher = Dispatcher(session, gateway, remote, ledger, reconciler, sleep=sleep)

    def diagnostics() -> DiagnosticSubscriptions:
        return DiagnosticSubscriptions(
            gateway,
            remote,
            config.diagnostics.events,
            poll_interval=config.diagnostics.poll_interval_seconds,
        )

    runner = BatchRunner(
        dispatcher,
        ledger,
        diagnostics_factory=diagnostics if config.diagnostics.enabled else None,
        health_timeout=g.health_timeout_seconds,
        health_interval=g.health_interval_seconds,
    )
    logger.info(
        "RUNTIME_READY",
        rpc_url=config.remote.rpc_url,
        actors=sum(1 for a in session.addresses if a),
        market_id=session.market_id,
    )
    return ConsoleRuntime(
        config=config,
        remote=remote,
        gateway=gateway,
        session=session,
        ledger=ledger,
        reconciler=reconciler,
        dispatcher=dispatcher,
        runner=runner,
    )
