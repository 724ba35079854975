"""
Off-schedule instances.

When a user logs an occurrence that a recurring task's pattern didn't predict,
the occurrence gets its own one-time task (is_off_schedule, source_task_id ->
the recurring task) instead of changing the recurring definition. The outcome
is written to both tasks for that date: the source keeps the history together,
the instance renders as its own card in date views.
"""
import logging
from typing import Optional

from completions import find_off_schedule_task, require_task, validate_outcome
from database import (
    create_task_db,
    delete_completion_db,
    delete_task_db,
    transaction,
    upsert_completion_db,
)
from dates import date_key, to_canonical_date, to_iso
from errors import ValidationError
from models import NoRecurrence, OffScheduleResult, TaskCreate

logger = logging.getLogger(__name__)


def set_off_schedule(user_id: str, source_task_id: str, date, outcome: Optional[str] = None,
                     note: Optional[str] = None) -> OffScheduleResult:
    """
    Record an off-schedule outcome for (source task, date), or clear it when
    outcome is None.

    Re-invoking with the same arguments updates the existing instance and
    completions in place. All writes happen in one transaction.
    """
    validate_outcome(outcome)
    day = to_canonical_date(date)

    if outcome is None:
        clear_off_schedule(user_id, source_task_id, day)
        return OffScheduleResult()

    with transaction() as db:
        source = require_task(user_id, source_task_id, conn=db)
        if not source.is_recurring:
            raise ValidationError("task_id", "off-schedule instances need a recurring source task")

        instance = find_off_schedule_task(user_id, source.id, day, conn=db)
        if instance is None:
            instance = create_task_db(user_id, TaskCreate(
                title=source.title,
                section_id=source.section_id,
                time=source.time,
                duration=source.duration,
                completion_type=source.completion_type,
                recurrence=NoRecurrence(type="none", start_date=to_iso(day)),
                source_task_id=source.id,
                is_off_schedule=True,
                is_rollover=False,
                status="todo",
                tag_ids=source.tag_ids,
            ), conn=db)
            logger.info("Created off-schedule task %s for %s on %s", instance.id, source.id, date_key(day))

        completion = upsert_completion_db(source.id, day, outcome, note or None, conn=db)
        instance_completion = upsert_completion_db(instance.id, day, outcome, note or None, conn=db)

    return OffScheduleResult(
        task=instance,
        completion=completion,
        off_schedule_completion=instance_completion,
    )


def clear_off_schedule(user_id: str, source_task_id: str, date) -> bool:
    """
    Delete the source task's completion for date and the off-schedule instance.
    Both deletions are attempted; clearing something already clear is a no-op.
    Returns True if anything was removed.
    """
    day = to_canonical_date(date)
    with transaction() as db:
        require_task(user_id, source_task_id, conn=db)
        removed_completion = delete_completion_db(source_task_id, day, conn=db)

        instance = find_off_schedule_task(user_id, source_task_id, day, conn=db)
        removed_instance = False
        if instance is not None:
            removed_instance = delete_task_db(user_id, instance.id, conn=db)
            logger.info("Deleted off-schedule task %s for %s on %s", instance.id, source_task_id, date_key(day))

    return removed_completion or removed_instance
