from __future__ import annotations

from datetime import date
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator
from dateutil import parser as dateparser


def _coerce_date(value):
    if value is None or isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return dateparser.parse(value).date()
        except (ValueError, OverflowError, TypeError) as exc:
            # pydantic only reports ValueError as a validation error
            raise ValueError(f"invalid date {value!r}") from exc
    return None


class ListSectionsQuery(BaseModel):
    category: Optional[str] = None
    active_only: bool = False


class SectionInfoQuery(BaseModel):
    section_name: str


class AvailabilityQuery(BaseModel):
    section_name: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    category: Optional[str] = None

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def parse_dates(cls, value):
        return _coerce_date(value)


class InquiryToolRequest(BaseModel):
    section_name: str
    caller_name: str
    caller_phone: str
    inquiry_type: str
    message: str


class InquiryRequest(BaseModel):
    section_id: str
    caller_name: str
    caller_phone: str
    inquiry_type: str
    message: str


class SectionSummary(BaseModel):
    name: str
    floor: str
    area: str
    rent_daily: str
    category: str
    status: Optional[str] = None
    features: List[str] = Field(default_factory=list)
