from typing import Annotated, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_serializer,
    field_validator,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from errors import ValidationError

OUTCOMES = ("completed", "not_completed", "rolled_over")
TASK_STATUSES = ("todo", "in_progress", "complete")


# Recurrence descriptor: persisted as JSON with camelCase keys, e.g.
# {"type": "weekly", "days": [1, 3, 5], "startDate": "2024-01-01"}
# Weekday numbers run 0=Sunday .. 6=Saturday; months run 1..12.

class WeekPattern(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    ordinal: int = 1  # 1..5, or -1 for the last one in the month
    day_of_week: int = 0


class RecurrenceBase(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    start_date: Optional[str] = None
    end_date: Optional[str] = None
    exceptions: list[str] = Field(default_factory=list)
    additional_dates: list[str] = Field(default_factory=list)


class NoRecurrence(RecurrenceBase):
    type: Literal["none"]


class DailyRecurrence(RecurrenceBase):
    type: Literal["daily"]
    interval: Optional[int] = Field(default=None, ge=1)


class IntervalRecurrence(RecurrenceBase):
    type: Literal["interval"]
    interval: int = Field(ge=1)


class WeeklyRecurrence(RecurrenceBase):
    type: Literal["weekly"]
    days: list[int] = Field(default_factory=list)


class MonthlyRecurrence(RecurrenceBase):
    type: Literal["monthly"]
    day_of_month: Optional[list[int]] = None
    week_pattern: Optional[WeekPattern] = None
    interval: Optional[int] = Field(default=None, ge=1)

    @field_validator("day_of_month", mode="before")
    @classmethod
    def _listify(cls, value):
        if isinstance(value, int):
            return [value]
        return value


class YearlyRecurrence(MonthlyRecurrence):
    type: Literal["yearly"]
    month: int = Field(ge=1, le=12)


Recurrence = Annotated[
    Union[
        NoRecurrence,
        DailyRecurrence,
        IntervalRecurrence,
        WeeklyRecurrence,
        MonthlyRecurrence,
        YearlyRecurrence,
    ],
    Field(discriminator="type"),
]

_recurrence_adapter = TypeAdapter(Recurrence)


def parse_recurrence(data) -> Optional[Recurrence]:
    """Build a recurrence from its JSON shape. None stays None."""
    if data is None:
        return None
    if isinstance(data, RecurrenceBase):
        return data
    try:
        return _recurrence_adapter.validate_python(data)
    except PydanticValidationError as e:
        raise ValidationError("recurrence", str(e))


def dump_recurrence(recurrence) -> Optional[dict]:
    """JSON shape of a recurrence, containing only the fields that were set."""
    if recurrence is None:
        return None
    return recurrence.model_dump(by_alias=True, exclude_unset=True, exclude_none=True)


class Task(BaseModel):
    id: str
    title: str
    section_id: Optional[str] = None
    parent_id: Optional[str] = None
    time: Optional[str] = None  # HH:MM
    duration: int = 30  # minutes
    recurrence: Optional[Recurrence] = None
    status: Literal["todo", "in_progress", "complete"] = "todo"
    started_at: Optional[str] = None
    completion_type: str = "checkbox"
    content: Optional[str] = None
    source_task_id: Optional[str] = None
    is_off_schedule: bool = False
    is_rollover: bool = False
    created_at: str
    tag_ids: list[str] = Field(default_factory=list)
    subtask_ids: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _off_schedule_shape(self):
        if self.is_off_schedule:
            if self.recurrence is None or self.recurrence.type != "none":
                raise ValueError("off-schedule tasks must have recurrence type 'none'")
            if not self.source_task_id:
                raise ValueError("off-schedule tasks must reference a source task")
        return self

    @field_serializer("recurrence")
    def _serialize_recurrence(self, recurrence):
        return dump_recurrence(recurrence)

    @property
    def is_recurring(self) -> bool:
        return self.recurrence is not None and self.recurrence.type != "none"

    @property
    def start_date(self) -> Optional[str]:
        return self.recurrence.start_date if self.recurrence is not None else None


class TaskCreate(BaseModel):
    id: Optional[str] = None  # caller-supplied id, e.g. from an offline client
    title: str
    section_id: Optional[str] = None
    parent_id: Optional[str] = None
    time: Optional[str] = None
    duration: int = 30
    recurrence: Optional[Recurrence] = None
    status: Literal["todo", "in_progress", "complete"] = "todo"
    completion_type: str = "checkbox"
    content: Optional[str] = None
    source_task_id: Optional[str] = None
    is_off_schedule: bool = False
    is_rollover: bool = False
    tag_ids: list[str] = Field(default_factory=list)


class TaskUpdate(BaseModel):
    title: Optional[str] = None
    section_id: Optional[str] = None
    time: Optional[str] = None
    duration: Optional[int] = None
    recurrence: Optional[Recurrence] = None
    status: Optional[Literal["todo", "in_progress", "complete"]] = None
    started_at: Optional[str] = None
    completion_type: Optional[str] = None
    content: Optional[str] = None
    is_rollover: Optional[bool] = None
    tag_ids: Optional[list[str]] = None


class Completion(BaseModel):
    id: str
    task_id: str
    date: str  # ISO-8601 UTC midnight: YYYY-MM-DDT00:00:00.000Z
    outcome: Optional[str] = None  # None is a legacy row, read as "completed"
    note: Optional[str] = None
    created_at: str

    @property
    def effective_outcome(self) -> str:
        return self.outcome or "completed"


class CompletionCreate(BaseModel):
    task_id: str
    date: str
    outcome: Optional[str] = None
    note: Optional[str] = None


class CompletionUpdate(BaseModel):
    outcome: Optional[str] = None
    note: Optional[str] = None


class CompletionRef(BaseModel):
    task_id: str
    date: str


class BatchCreateRequest(BaseModel):
    completions: list[CompletionCreate]


class BatchDeleteRequest(BaseModel):
    completions: list[CompletionRef]


class OffScheduleRequest(BaseModel):
    task_id: str
    date: str
    outcome: Optional[str] = None
    note: Optional[str] = None


class OffScheduleResult(BaseModel):
    task: Optional[Task] = None
    completion: Optional[Completion] = None
    off_schedule_completion: Optional[Completion] = None


class SeriesChanges(BaseModel):
    """
    Proposed edit to a recurring task.
    Only fields that were explicitly provided count as changes.
    """
    title: Optional[str] = None
    section_id: Optional[str] = None
    time: Optional[str] = None
    duration: Optional[int] = None
    content: Optional[str] = None
    tag_ids: Optional[list[str]] = None
    # scheduling fields
    date: Optional[str] = None
    recurrence_type: Optional[str] = None
    days: Optional[list[int]] = None
    pattern_mode: Optional[Literal["dayOfMonth", "weekPattern"]] = None
    day_of_month: Optional[list[int]] = None
    ordinal: Optional[int] = None
    day_of_week: Optional[int] = None
    month: Optional[int] = None
    interval: Optional[int] = None


class SplitRequest(BaseModel):
    changes: SeriesChanges
    edit_date: str
    scope: Literal["thisOnly", "thisAndFuture"]


class SeriesSplit(BaseModel):
    """Both halves of a split. They must be persisted together."""
    original_update: dict
    new_task: TaskCreate


class SplitResult(BaseModel):
    original: Task
    new_task: Task


class ToggleRequest(BaseModel):
    date: Optional[str] = None


class ToggleResult(BaseModel):
    task: Task
    date: str
    completed: bool


class RolloverRequest(BaseModel):
    date: str


class RolloverResult(BaseModel):
    completion: Completion
    next_date: Optional[str] = None
