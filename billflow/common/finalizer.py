"""Single-transaction close-out of a processed task."""

from typing import Callable

from billflow.common.logging import logger
from billflow.common.task_store import NewTask, delete_task, put_task


class Finalizer:
    """Re-validates, applies the entity transition, deletes the task and
    enqueues follow-ons, all in one transaction.

    `apply` receives the open session, performs its guard re-check and entity
    writes, and returns the follow-on tasks. If it raises, nothing is
    committed: the entity keeps its state and the task stays in place.
    """

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def close_out(
        self,
        model,
        key: dict,
        apply: Callable[..., list[NewTask] | None],
        now_ms: int,
    ) -> list[NewTask]:
        with self.session_factory() as db:
            follow_ons = apply(db) or []
            deleted = delete_task(db, model, key)
            written = [task for task in follow_ons if put_task(db, task, now_ms)]
            db.commit()
        if deleted == 0:
            logger.info("task already removed at finalize table=%s key=%s", model.__tablename__, key)
        return written
