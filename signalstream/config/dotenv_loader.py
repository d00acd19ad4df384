"""
Dotenv loader for local runs of the streaming service.

``METAAPI_TOKEN``, ``TELEGRAM_BOT_TOKEN`` and ``DATABASE_URL`` are env-only
secrets; on a developer machine they come from ``.env`` with per-machine
overrides in ``.env.local``. Deployed (``ENVIRONMENT=prod``) and test
(``ENVIRONMENT=test``) processes never read dotenv files.

Must not import `signalstream.config.config`.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv

SKIP_ENVIRONMENTS = ("prod", "test")
DOTENV_FILES = (".env", ".env.local")


def _environment() -> str:
    return str(os.getenv("ENVIRONMENT", "prod") or "prod").strip().lower()


def load_dotenv_files(*, repo_root: Path | None = None) -> List[Path]:
    """
    Load ``.env`` then ``.env.local`` (which overrides) from ``repo_root``
    or the working directory. Returns the files actually loaded.
    """
    if _environment() in SKIP_ENVIRONMENTS:
        return []

    root = repo_root or Path.cwd()
    loaded: List[Path] = []
    for name in DOTENV_FILES:
        path = root / name
        if path.exists():
            load_dotenv(dotenv_path=path, override=name != ".env")
            loaded.append(path)
    return loaded
