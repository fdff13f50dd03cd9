from __future__ import annotations

from typing import Any, Dict, Optional

import logging

from voice_agent.logging.flight_recorder import FlightRecorder
from voice_agent.models.facility import (
    AvailabilityQuery,
    InquiryRequest,
    InquiryToolRequest,
    ListSectionsQuery,
    SectionInfoQuery,
    SectionSummary,
)
from voice_agent.services.facility import FacilityRepository, Section

logger = logging.getLogger(__name__)

_STATUS_LABELS = {"active": "available", "inactive": "suspended"}


def format_rent_price(rent_price: int) -> str:
    return f"{rent_price:,} yen per day"


def format_status(status: str) -> str:
    return _STATUS_LABELS.get(status, status)


def summarize_section(section: Section) -> SectionSummary:
    return SectionSummary(
        name=section.name,
        floor=f"{section.floor}F",
        area=f"{section.area:g} square meters",
        rent_daily=format_rent_price(section.rent_price),
        category=section.category,
        status=format_status(section.status),
        features=list(section.features),
    )


def list_sections(
    query: ListSectionsQuery,
    repository: FacilityRepository,
    recorder: Optional[FlightRecorder] = None,
) -> Dict[str, Any]:
    sections = repository.list_sections(category=query.category, active_only=query.active_only)
    if recorder:
        recorder.log("TOOL", "list_sections", count=len(sections), category=query.category)
    return {
        "sections": [summarize_section(section).model_dump() for section in sections],
        "total": len(sections),
    }


def get_section_info(
    query: SectionInfoQuery,
    repository: FacilityRepository,
    recorder: Optional[FlightRecorder] = None,
) -> Dict[str, Any]:
    section = repository.get_section_by_name(query.section_name)
    if recorder:
        recorder.log("TOOL", "get_section_info", section=query.section_name, found=section is not None)
    if section is None:
        return {"error": f"No section named {query.section_name}"}
    return {
        **summarize_section(section).model_dump(),
        "description": section.description,
    }


def check_section_availability(
    query: AvailabilityQuery,
    repository: FacilityRepository,
    recorder: Optional[FlightRecorder] = None,
) -> Dict[str, Any]:
    if query.section_name and query.start_date and query.end_date:
        section = repository.get_section_by_name(query.section_name)
        if section is None:
            return {"error": f"No section named {query.section_name}"}
        if query.end_date < query.start_date:
            return {"error": "end_date must be on or after start_date"}

        period = {"start": query.start_date.isoformat(), "end": query.end_date.isoformat()}
        if not section.is_active:
            result = {
                "section": section.name,
                "available": False,
                "reason": "This section is currently suspended.",
                "period": period,
            }
        else:
            available = repository.is_section_available(section.id, query.start_date, query.end_date)
            result = {
                "section": section.name,
                "available": available,
                "period": period,
                "rent_daily": format_rent_price(section.rent_price),
            }
            if not available:
                result["reason"] = "The section is already reserved for part of that period."
        if recorder:
            recorder.log("TOOL", "availability_checked", section=section.name, available=result["available"])
        return result

    sections = repository.list_sections(category=query.category, active_only=True)
    if recorder:
        recorder.log("TOOL", "availability_listed", count=len(sections), category=query.category)
    return {
        "available_sections": [
            {
                "name": section.name,
                "floor": f"{section.floor}F",
                "area": f"{section.area:g} square meters",
                "rent_daily": format_rent_price(section.rent_price),
                "category": section.category,
            }
            for section in sections
        ],
        "note": "Give a section name with start and end dates to check a specific period.",
    }


def create_inquiry(
    request: InquiryToolRequest,
    repository: FacilityRepository,
    recorder: Optional[FlightRecorder] = None,
) -> Dict[str, Any]:
    section = repository.get_section_by_name(request.section_name)
    if section is None:
        return {"error": f"No section named {request.section_name}"}
    inquiry = repository.create_inquiry(
        InquiryRequest(
            section_id=section.id,
            caller_name=request.caller_name,
            caller_phone=request.caller_phone,
            inquiry_type=request.inquiry_type,
            message=request.message,
        )
    )
    if recorder:
        recorder.log(
            "TOOL",
            "inquiry_created",
            section=section.name,
            name=request.caller_name,
            phone=request.caller_phone,
        )
    return {
        "success": True,
        "inquiry_id": inquiry.id,
        "section": section.name,
        "message": "The inquiry has been recorded. Staff will follow up by phone.",
    }
