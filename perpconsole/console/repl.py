"""
Interactive console loop.

Reads one line at a time off the event loop thread, executes each statement
through the dispatcher, records it in the ledger and prints the outcome.
"""
import asyncio
from typing import Awaitable, Callable, Optional

from rich.console import Console
from rich.markup import escape

from perpconsole.console.commands import TRADE_OPCODES
from perpconsole.console.dispatcher import Dispatcher
from perpconsole.console.ledger import HistoryLedger
from perpconsole.console.tokenizer import split_statements
from perpconsole.domain.models import CommandResult
from perpconsole.monitoring.logger import get_logger

logger = get_logger(__name__)

EXIT_WORDS = ("exit", "quit")


class Repl:
    """Line-oriented operator console."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        ledger: HistoryLedger,
        *,
        console: Optional[Console] = None,
        input_fn: Callable[[str], str] = input,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        pause_after_trades: bool = True,
    ):
        self.dispatcher = dispatcher
        self.ledger = ledger
        self.console = console or Console()
        self._input = input_fn
        self._sleep = sleep
        self.pause_after_trades = pause_after_trades

    @property
    def session(self):
        return self.dispatcher.session

    def prompt(self) -> str:
        actor = self.session.current
        market = self.session.market_id or "-"
        return f"{actor.label if actor else '-'}@{market}> "

    async def read_line(self) -> Optional[str]:
        """Next input line, or None at end of input."""
        try:
            return await asyncio.to_thread(self._input, self.prompt())
        except (EOFError, KeyboardInterrupt):
            return None

    async def run(self) -> int:
        """
        Run until exit/quit or end of input.

        Returns:
            Number of statements executed
        """
        executed = 0
        self.console.print("perp-console ready. Type HELP for opcodes, exit to quit.")
        while True:
            line = await self.read_line()
            if line is None:
                break
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            if stripped.lower() in EXIT_WORDS:
                break
            for statement in split_statements(stripped):
                result = await self.dispatcher.execute_text(statement)
                self.ledger.append(result)
                self.render(result)
                executed += 1
                if self.pause_after_trades and result.opcode in TRADE_OPCODES:
                    await self._pause(result)

        logger.info("REPL_EXIT", executed=executed)
        return executed

    def render(self, result: CommandResult) -> None:
        if result.ok:
            self.console.print(f"[green]OK[/green]  {escape(result.summary)}")
        else:
            self.console.print(f"[red]ERR[/red] {escape(result.opcode)}: {escape(result.summary)}")

    async def _pause(self, result: CommandResult) -> None:
        millis = self.session.success_pause_ms if result.ok else self.session.error_pause_ms
        if millis > 0:
            await self._sleep(millis / 1000)
