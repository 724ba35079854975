"""
Series splitting for edits to recurring tasks.

Like a calendar app's "this occurrence only" / "this and future occurrences":

- this only: the edit date becomes an exception on the series and a one-time
  task carrying the edit is created for that date.
- this and future: the series ends the day before the edit date and a new
  series carrying the edit starts on it. Earlier history is left alone.

The apply_* functions are pure and return both halves of the split;
split_series() persists them together in one transaction.
"""
import logging
from typing import Optional

from completions import require_task
from database import create_task_db, find_tasks_db, transaction, update_task_db
from dates import date_key, day_before, parse_optional, to_canonical_date, to_iso
from errors import ValidationError
from models import NoRecurrence, SeriesChanges, SeriesSplit, SplitResult, Task, TaskCreate, parse_recurrence
from recurrence import add_exception, with_end_date

logger = logging.getLogger(__name__)

SCOPES = ("thisOnly", "thisAndFuture")

# Fields copied from changes to the new task when provided
CARRIED_FIELDS = ("title", "section_id", "time", "duration", "content", "tag_ids")


def requires_scope_decision(original: Task, changes: SeriesChanges) -> bool:
    """
    True only when the change touches scheduling fields of a recurring task:
    date, time, recurrence type, weekdays, monthly/yearly sub-pattern, interval.
    Title, section, tags and the like apply to the whole series without asking.
    """
    if not original.is_recurring:
        return False

    rec = original.recurrence
    provided = changes.model_fields_set

    if changes.date:
        original_date = date_key(rec.start_date) if rec.start_date else None
        if date_key(changes.date) != original_date:
            return True

    if "time" in provided and changes.time != original.time:
        return True

    if changes.recurrence_type and changes.recurrence_type != rec.type:
        return True

    if changes.days is not None and sorted(changes.days) != sorted(getattr(rec, "days", None) or []):
        return True

    week_pattern = getattr(rec, "week_pattern", None)
    if changes.pattern_mode:
        original_mode = "weekPattern" if week_pattern else "dayOfMonth"
        if changes.pattern_mode != original_mode:
            return True

    if changes.day_of_month is not None:
        if sorted(changes.day_of_month) != sorted(getattr(rec, "day_of_month", None) or []):
            return True

    if changes.ordinal is not None and changes.ordinal != (week_pattern.ordinal if week_pattern else 1):
        return True

    if changes.day_of_week is not None and changes.day_of_week != (week_pattern.day_of_week if week_pattern else 0):
        return True

    if changes.month is not None and changes.month != getattr(rec, "month", None):
        return True

    if changes.interval is not None and changes.interval != (getattr(rec, "interval", None) or 1):
        return True

    return False


def _carried(original: Task, changes: SeriesChanges) -> dict:
    provided = changes.model_fields_set
    values = {}
    for field in CARRIED_FIELDS:
        value = getattr(changes, field)
        if field in provided and (value is not None or field in ("time", "section_id", "content")):
            values[field] = value
        else:
            values[field] = getattr(original, field)
    if not values["title"]:
        values["title"] = original.title
    return values


def _require_recurring(original: Task):
    if not original.is_recurring:
        raise ValidationError("task", "only recurring tasks can be split")


def apply_this_occurrence_only(original: Task, changes: SeriesChanges, edit_date) -> SeriesSplit:
    """Suppress edit_date on the series and move that occurrence to its own task."""
    _require_recurring(original)
    day = to_canonical_date(edit_date, "edit_date")

    new_task = TaskCreate(
        **_carried(original, changes),
        completion_type=original.completion_type,
        recurrence=NoRecurrence(type="none", start_date=to_iso(day)),
        source_task_id=original.id,
    )
    return SeriesSplit(
        original_update={"recurrence": add_exception(original.recurrence, day)},
        new_task=new_task,
    )


def apply_this_and_future(original: Task, changes: SeriesChanges, edit_date) -> SeriesSplit:
    """End the series the day before edit_date and start the edited series on it."""
    _require_recurring(original)
    day = to_canonical_date(edit_date, "edit_date")
    rec = original.recurrence

    # The old series never runs past the day before the edit; an earlier end stays.
    last_day = day_before(day)
    current_end = parse_optional(rec.end_date, "endDate")
    if current_end is not None and current_end < last_day:
        last_day = current_end

    new_task = TaskCreate(
        **_carried(original, changes),
        completion_type=original.completion_type,
        recurrence=_future_recurrence(rec, changes, day),
        source_task_id=original.id,
    )
    return SeriesSplit(
        original_update={"recurrence": with_end_date(rec, last_day)},
        new_task=new_task,
    )


def _future_recurrence(rec, changes: SeriesChanges, day):
    """New descriptor from the changes, falling back to the old series' fields."""
    kind = changes.recurrence_type or rec.type
    data = {"type": kind, "startDate": to_iso(day)}

    if kind == "weekly":
        data["days"] = changes.days if changes.days is not None else (getattr(rec, "days", None) or [])
    elif kind in ("monthly", "yearly"):
        if kind == "yearly":
            data["month"] = changes.month or getattr(rec, "month", None) or day.month

        week_pattern = getattr(rec, "week_pattern", None)
        mode = changes.pattern_mode or ("weekPattern" if week_pattern else "dayOfMonth")
        if mode == "dayOfMonth":
            data["dayOfMonth"] = changes.day_of_month or getattr(rec, "day_of_month", None) or [day.day]
        else:
            data["weekPattern"] = {
                "ordinal": changes.ordinal or (week_pattern.ordinal if week_pattern else 1),
                "dayOfWeek": changes.day_of_week if changes.day_of_week is not None
                else (week_pattern.day_of_week if week_pattern else 0),
            }
        interval = changes.interval or getattr(rec, "interval", None)
        if interval:
            data["interval"] = interval
    elif kind in ("daily", "interval"):
        interval = changes.interval or getattr(rec, "interval", None)
        if interval or kind == "interval":
            data["interval"] = interval or 1
    elif kind == "none":
        raise ValidationError("recurrence_type", "use a plain update to make a task non-recurring")

    if rec.end_date:
        data["endDate"] = rec.end_date

    # Exceptions and added dates from the edit date on belong to the new series
    key = date_key(day)
    future_exceptions = [d for d in rec.exceptions if d[:10] >= key]
    if future_exceptions:
        data["exceptions"] = future_exceptions
    future_additions = [d for d in rec.additional_dates if d[:10] >= key]
    if future_additions:
        data["additionalDates"] = future_additions

    return parse_recurrence(data)


def _find_split_task(user_id: str, original_id: str, day, scope: str, conn=None) -> Optional[Task]:
    """A task already derived from original_id by an earlier split at day, if any."""
    key = date_key(day)
    for task in find_tasks_db(user_id, conn=conn, source_task_id=original_id, is_off_schedule=False):
        if not task.start_date or not task.start_date.startswith(key):
            continue
        if (scope == "thisOnly") != task.is_recurring:
            return task
    return None


def split_series(user_id: str, task_id: str, changes: SeriesChanges, edit_date, scope: str) -> SplitResult:
    """
    Apply an edit to a recurring task for one occurrence or for this and all
    future occurrences. The patch to the original and the new task are
    written in one transaction. Repeating the same split updates the task it
    created the first time instead of adding another.
    """
    if scope not in SCOPES:
        raise ValidationError("scope", f"must be one of: {', '.join(SCOPES)}")
    day = to_canonical_date(edit_date, "edit_date")

    with transaction() as db:
        original = require_task(user_id, task_id, conn=db)
        if scope == "thisOnly":
            split = apply_this_occurrence_only(original, changes, day)
        else:
            split = apply_this_and_future(original, changes, day)

        patched = update_task_db(user_id, original.id, conn=db, **split.original_update)

        existing = _find_split_task(user_id, original.id, day, scope, conn=db)
        if existing is None:
            new_task = create_task_db(user_id, split.new_task, conn=db)
        else:
            fields = {field: getattr(split.new_task, field) for field in CARRIED_FIELDS}
            new_task = update_task_db(user_id, existing.id, conn=db,
                                      recurrence=split.new_task.recurrence, **fields)

    logger.info("Split task %s at %s (%s) into %s", task_id, date_key(day), scope, new_task.id)
    return SplitResult(original=patched, new_task=new_task)
