from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

S = TypeVar("S")
R = TypeVar("R")


class OptimisticStore(Generic[S]):
    """A local value that can be snapshotted and replaced wholesale."""

    def snapshot(self) -> S:
        raise NotImplementedError

    def replace(self, value: S) -> None:
        raise NotImplementedError


class OptimisticUpdate(Generic[S, R]):
    """Snapshot, apply locally, commit remotely, roll back on failure, reconcile.

    ``apply`` must return a new value rather than mutating the snapshot, since
    the snapshot is what gets restored on failure. ``reconcile`` runs after
    every commit, successful or not; its own failures are logged so that the
    commit outcome is what reaches the caller.
    """

    def __init__(
        self,
        store: OptimisticStore[S],
        apply: Callable[[S], S],
        commit: Callable[[], Awaitable[R]],
        reconcile: Optional[Callable[[], Awaitable[Any]]] = None,
        name: str = "optimistic update",
    ):
        self.store = store
        self.apply = apply
        self.commit = commit
        self.reconcile = reconcile
        self.name = name
        self.rolled_back = False

    async def run(self) -> R:
        snapshot = self.store.snapshot()
        self.store.replace(self.apply(snapshot))
        try:
            return await self.commit()
        except (Exception, asyncio.CancelledError):
            logger.warning(f"{self.name} failed; restoring previous state")
            self.store.replace(snapshot)
            self.rolled_back = True
            raise
        finally:
            if self.reconcile is not None:
                try:
                    await self.reconcile()
                except Exception:
                    logger.exception(f"Reconciling after {self.name} failed")
