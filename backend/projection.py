"""
Occurrence projection: which tasks show up on which dates.

Several task fields can claim a date at once (a floating in-progress status,
an off-schedule instance, a one-time start date, an added date, the
recurrence pattern). For each (task, date) exactly one rule decides, checked
in this order, first match wins:

1. non-recurring, in progress, no date   -> every date in range
2. off-schedule instance                 -> its own date, only with a record
3. one-time task with a start date       -> where its record lives, else its date
4. date listed in additionalDates        -> only with a record
5. otherwise                             -> occurs_on()
"""
from datetime import datetime
from typing import Iterable, Optional

from completions import CompletionLedger
from dates import date_key, iter_days, to_canonical_date
from recurrence import lists_date, occurs_on
from models import Task


def is_visible_on(task: Task, day: datetime, ledger: CompletionLedger) -> bool:
    rec = task.recurrence
    non_recurring = rec is None or rec.type == "none"

    if non_recurring and task.status == "in_progress" and not task.start_date:
        return True

    if task.is_off_schedule:
        if task.start_date and to_canonical_date(task.start_date) == day:
            return ledger.has_record_on_date(task.id, day)
        return False

    if rec is not None and rec.type == "none" and rec.start_date:
        if ledger.has_record_on_date(task.id, day):
            return True
        if task.status == "complete" or ledger.has_any_completion(task.id):
            return False
        return occurs_on(rec, day)

    if rec is not None and lists_date(rec.additional_dates, date_key(day)):
        # TODO: an added date with no record stays invisible, so it can't be shown as unfulfilled
        return ledger.has_record_on_date(task.id, day)

    return occurs_on(rec, day)


def project_range(tasks: Iterable[Task], start_date, end_date,
                  ledger: Optional[CompletionLedger] = None) -> dict[datetime, list[Task]]:
    """
    Map every canonical date from start_date to end_date (inclusive) to the
    tasks occurring on it, in input order. Dates with nothing on them map to
    an empty list.
    """
    ledger = ledger if ledger is not None else CompletionLedger()
    tasks = list(tasks)
    days = {day: [] for day in iter_days(start_date, end_date)}

    for task in tasks:
        for day, bucket in days.items():
            if is_visible_on(task, day, ledger):
                bucket.append(task)

    return days
