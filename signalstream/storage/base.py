"""
Shared plumbing for the SQLAlchemy-backed stores.
"""
import asyncio
import functools
from typing import Any, Callable, Optional, TypeVar

from signalstream.storage.db import Database, get_db

T = TypeVar("T")


class DatabaseStore:
    """Base for stores. Database connection is lazy-loaded when not injected."""

    def __init__(self, db: Optional[Database] = None):
        self._db = db

    @property
    def db(self) -> Database:
        if self._db is None:
            self._db = get_db()
        return self._db

    async def _run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Offload a blocking session call to a worker thread."""
        return await asyncio.to_thread(functools.partial(func, *args, **kwargs))
