"""
Batch runner: replays a script file through the dispatcher.

Best-effort semantics: a failing command is recorded in the ledger and the
run continues with the next one. Only FatalError stops a batch.
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from perpconsole import constants
from perpconsole.console.diagnostics import DiagnosticSubscriptions
from perpconsole.console.dispatcher import Dispatcher
from perpconsole.console.ledger import HistoryLedger
from perpconsole.console.tokenizer import split_script
from perpconsole.domain.models import CommandResult
from perpconsole.exceptions import ValidationError
from perpconsole.monitoring.logger import get_logger

logger = get_logger(__name__)


@dataclass
class BatchSummary:
    """Outcome of one script run."""
    path: str
    results: List[CommandResult] = field(default_factory=list)

    @property
    def ok_count(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def error_count(self) -> int:
        return len(self.results) - self.ok_count

    @property
    def ok(self) -> bool:
        return self.error_count == 0

    def line(self) -> str:
        return f"{self.path}: {len(self.results)} command(s), {self.ok_count} ok, {self.error_count} failed"


class BatchRunner:
    """
    Executes script files. Also serves nested RUN commands for the dispatcher.

    Args:
        dispatcher: Command executor (its session and gateway are used)
        ledger: History ledger receiving every CommandResult
        diagnostics_factory: Builds the scoped subscriptions for a top-level run;
            None disables diagnostics
        health_timeout: Seconds to wait for the remote before the first command
        health_interval: Seconds between health probes
        max_depth: Maximum nesting of RUN scripts
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        ledger: HistoryLedger,
        *,
        diagnostics_factory: Optional[Callable[[], DiagnosticSubscriptions]] = None,
        health_timeout: float = constants.DEFAULT_HEALTH_TIMEOUT_SECONDS,
        health_interval: float = constants.DEFAULT_HEALTH_INTERVAL_SECONDS,
        max_depth: int = constants.MAX_SCRIPT_DEPTH,
    ):
        self.dispatcher = dispatcher
        self.ledger = ledger
        self.diagnostics_factory = diagnostics_factory
        self.health_timeout = health_timeout
        self.health_interval = health_interval
        self.max_depth = max_depth
        self._script_dirs: List[Path] = []
        dispatcher.script_runner = self._run_nested

    @property
    def session(self):
        return self.dispatcher.session

    async def run(self, path: str | Path) -> BatchSummary:
        """
        Run a script file from the top level.

        Raises:
            ValidationError: If the script cannot be read
            RemoteUnavailableError: If the remote never became healthy
            FatalError: Propagated from the dispatcher
        """
        statements = self._load(path)
        logger.info("BATCH_START", path=str(path), statements=len(statements))

        await self.dispatcher.gateway.wait_until_healthy(
            timeout=self.health_timeout, interval=self.health_interval
        )

        if self.diagnostics_factory is None:
            summary = await self._execute_all(str(path), statements)
        else:
            async with self.diagnostics_factory():
                summary = await self._execute_all(str(path), statements)

        logger.info(
            "BATCH_COMPLETE",
            path=str(path),
            ok=summary.ok_count,
            failed=summary.error_count,
        )
        return summary

    async def _run_nested(self, path: str) -> str:
        """RUN from inside a script or the REPL: no health wait, no extra diagnostics."""
        if self.session.script_depth >= self.max_depth:
            raise ValidationError(f"RUN nesting limit of {self.max_depth} reached")
        path = str(self._resolve(path))
        statements = self._load(path)
        logger.info("BATCH_NESTED", path=path, depth=self.session.script_depth + 1)
        summary = await self._execute_all(path, statements)
        if not summary.ok:
            raise ValidationError(summary.line())
        return summary.line()

    async def _execute_all(self, path: str, statements: List[str]) -> BatchSummary:
        summary = BatchSummary(path=path)
        self.session.script_depth += 1
        self._script_dirs.append(Path(path).parent)
        try:
            for statement in statements:
                result = await self.dispatcher.execute_text(statement)
                self.ledger.append(result)
                summary.results.append(result)
                if not result.ok:
                    logger.warning("BATCH_COMMAND_FAILED", path=path, text=statement, error=result.summary)
        finally:
            self._script_dirs.pop()
            self.session.script_depth -= 1
        return summary

    def _resolve(self, path: str) -> Path:
        """Relative RUN paths are taken from the directory of the enclosing script."""
        p = Path(path)
        if p.is_absolute() or not self._script_dirs:
            return p
        return self._script_dirs[-1] / p

    @staticmethod
    def _load(path: str | Path) -> List[str]:
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            raise ValidationError(f"cannot read script {path}: {e}")
        return split_script(text)
