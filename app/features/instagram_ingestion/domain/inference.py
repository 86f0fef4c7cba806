"""
Typed shape of the language model's event candidate.

Every key is required but every value may be null: the model is asked to
answer null for anything the post does not say. Values are parsed strictly:
a flag must be a JSON boolean and a date part a JSON integer, so "yes", 1 or
"29" are shape errors rather than coerced answers. Field completion fills the
gaps afterwards (see pipeline.sanitizer).
"""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class InferenceResult(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore", strict=True
    )

    is_event: bool | None
    title: str | None
    start_hour_military_time: int | None
    end_hour_military_time: int | None
    is_past_event: bool | None
    has_start_hour_in_post: bool | None
    start_minute: int | None
    end_minute: int | None
    start_day: int | None
    end_day: int | None
    start_month: int | None
    end_month: int | None
    start_year: int | None
    end_year: int | None


REQUIRED_KEYS: tuple[str, ...] = tuple(
    field.alias for field in InferenceResult.model_fields.values()
)
