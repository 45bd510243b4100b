from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator

from dcabot.clock import utc_now


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"

    def __str__(self) -> str:
        return self.value


class DailySchedule(BaseModel):
    kind: ClassVar[str] = "daily"


class WeeklySchedule(BaseModel):
    kind: ClassVar[str] = "weekly"
    day: int = Field(default=0, ge=0)


class MonthlySchedule(BaseModel):
    kind: ClassVar[str] = "monthly"
    day: int = Field(default=1, ge=0)


Schedule = DailySchedule | WeeklySchedule | MonthlySchedule

_SCHEDULE_TYPES: dict[str, type[BaseModel]] = {
    "daily": DailySchedule,
    "weekly": WeeklySchedule,
    "monthly": MonthlySchedule,
}


def parse_schedule(raw: Any) -> Schedule:
    """
    Accept the externally tagged JSON form used in jobs.json:

    - "daily"
    - {"weekly": {"day": 0}}
    - {"monthly": {"day": 1}}
    """
    if isinstance(raw, (DailySchedule, WeeklySchedule, MonthlySchedule)):
        return raw
    if isinstance(raw, str):
        key = raw.strip().lower()
        if key == "daily":
            return DailySchedule()
        raise ValueError(f"schedule '{raw}' needs a day, use {{\"{key}\": {{\"day\": N}}}}")
    if isinstance(raw, dict) and len(raw) == 1:
        key, body = next(iter(raw.items()))
        model = _SCHEDULE_TYPES.get(str(key).strip().lower())
        if model is None:
            raise ValueError(f"unknown schedule kind '{key}'")
        return model.model_validate(body or {})
    raise ValueError(f"invalid schedule: {raw!r}")


def dump_schedule(schedule: Schedule) -> str | dict[str, Any]:
    if isinstance(schedule, DailySchedule):
        return "daily"
    return {schedule.kind: {"day": schedule.day}}


class OrderArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account: str
    symbol: str
    # Either quantity or amount carries the intent; amount wins when both are set.
    quantity: int | None = Field(default=None, ge=0)
    amount: float | None = Field(default=None, ge=0.0)
    side: Side = Side.BUY

    @field_validator("side", mode="before")
    @classmethod
    def normalize_side(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    def quantity_or_amount_label(self) -> str:
        if self.quantity is not None:
            return str(self.quantity)
        if self.amount is not None:
            return _format_number(self.amount)
        return "none"


class Transfer(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    source: str = Field(alias="from")
    target: str = Field(alias="to")
    amount: str


class OrderCommand(BaseModel):
    model_config = ConfigDict(extra="forbid")

    order: OrderArgs

    def label(self) -> str:
        return f"order_{self.order.side}_{self.order.quantity_or_amount_label()}_{self.order.symbol}"


class TransferCommand(BaseModel):
    model_config = ConfigDict(extra="forbid")

    transfer: Transfer

    def label(self) -> str:
        return f"transfer_{self.transfer.source}_{self.transfer.target}"


Command = OrderCommand | TransferCommand


class Job(BaseModel):
    id: str
    schedule: Schedule
    last_run: int
    command: Command

    @field_validator("schedule", mode="before")
    @classmethod
    def _parse_schedule(cls, value: Any) -> Schedule:
        return parse_schedule(value)

    @field_serializer("schedule")
    def _dump_schedule(self, schedule: Schedule) -> str | dict[str, Any]:
        return dump_schedule(schedule)

    @classmethod
    def create(cls, schedule: Schedule, command: Command, *, now: datetime | None = None) -> "Job":
        # The id is fixed here and never recomputed, later edits keep it.
        created_at = now or utc_now()
        return cls(
            id=f"{schedule.kind}{command.label()}",
            schedule=schedule,
            last_run=int(created_at.timestamp()),
            command=command,
        )

    def mark_run(self, when: datetime) -> None:
        self.last_run = max(self.last_run, int(when.timestamp()))

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class OrderPassed(BaseModel):
    id: str
    price: float
    args: OrderArgs

    @model_validator(mode="after")
    def validate_price(self) -> "OrderPassed":
        if self.price < 0:
            raise ValueError("fill price must be >= 0")
        return self

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def _format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))
