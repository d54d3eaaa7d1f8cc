"""
Dotenv loading for the console entrypoints.

Operators keep RPC endpoints and actor addresses in `.env` files beside their
scripts. Files are read from PERP_CONSOLE_DOTENV_DIR when set, else the
working directory, in this order:

    .env                 base values, never overrides the real environment
    .env.<ENVIRONMENT>   per-environment values (e.g. .env.testnet)
    .env.local           operator overrides, wins over everything above

Nothing is loaded when ENVIRONMENT=prod. Does not import perpconsole.config.config,
so it can run before settings are built.
"""
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

DOTENV_DIR_VAR = "PERP_CONSOLE_DOTENV_DIR"
PROD_ENVIRONMENTS = ("prod", "production")


def current_environment() -> str:
    return (os.getenv("ENVIRONMENT") or "dev").strip().lower()


def dotenv_candidates(directory: Path, environment: str) -> List[tuple]:
    """(path, override) pairs in load order."""
    candidates = [(directory / ".env", False)]
    if environment and environment not in ("dev", "local"):
        candidates.append((directory / f".env.{environment}", True))
    candidates.append((directory / ".env.local", True))
    return candidates


def load_dotenv_files(*, directory: Optional[Path] = None) -> List[Path]:
    """
    Load the dotenv files that exist for the current ENVIRONMENT.

    Returns:
        Files actually loaded, in order. Empty in prod.
    """
    environment = current_environment()
    if environment in PROD_ENVIRONMENTS:
        return []

    if directory is None:
        configured = os.getenv(DOTENV_DIR_VAR)
        directory = Path(configured) if configured else Path.cwd()

    loaded = []
    for path, override in dotenv_candidates(directory, environment):
        if path.is_file():
            load_dotenv(dotenv_path=path, override=override)
            loaded.append(path)
    return loaded
