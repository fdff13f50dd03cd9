from __future__ import annotations

import calendar
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Dict, List, Optional

import logging
from dateutil.relativedelta import relativedelta

from voice_agent.models.facility import InquiryRequest
from voice_agent.utils.fixture_loader import load_facility, load_inquiries, load_reservations, load_sections

logger = logging.getLogger(__name__)


@dataclass
class Facility:
    id: str
    name: str
    address: str
    phone: str
    hours: str


@dataclass
class Section:
    id: str
    name: str
    floor: int
    area: float
    rent_price: int
    category: str
    status: str
    features: List[str] = field(default_factory=list)
    description: str = ""

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass
class Reservation:
    id: str
    section_id: str
    start_date: date
    end_date: date
    tenant_name: str
    purpose: str = ""
    note: Optional[str] = None

    def overlaps(self, start: date, end: date) -> bool:
        return self.start_date <= end and self.end_date >= start


@dataclass
class Inquiry:
    id: str
    section_id: str
    caller_name: str
    caller_phone: str
    inquiry_type: str
    message: str
    status: str = "new"
    created_at: datetime = field(default_factory=datetime.now)


class FacilityRepository:
    """In-memory facility store. Safe to share across calls."""

    def __init__(self, facility: Facility, sections: List[Section]) -> None:
        self._facility = facility
        self._sections: Dict[str, Section] = {section.id: section for section in sections}
        self._reservations: List[Reservation] = []
        self._inquiries: List[Inquiry] = []
        self._lock = threading.Lock()

    def get_facility(self) -> Facility:
        return self._facility

    def list_sections(self, category: Optional[str] = None, active_only: bool = False) -> List[Section]:
        sections = sorted(self._sections.values(), key=lambda s: (s.floor, s.name))
        if category:
            sections = [s for s in sections if s.category == category]
        if active_only:
            sections = [s for s in sections if s.is_active]
        return sections

    def get_section(self, section_id: str) -> Optional[Section]:
        return self._sections.get(section_id)

    def get_section_by_name(self, name: str) -> Optional[Section]:
        if not name:
            return None
        for section in self.list_sections():
            if section.name == name:
                return section
        needle = name.strip().lower()
        for section in self.list_sections():
            if needle in section.name.lower():
                return section
        return None

    def add_reservation(
        self,
        section_id: str,
        start_date: date,
        end_date: date,
        tenant_name: str,
        purpose: str = "",
        note: Optional[str] = None,
    ) -> Reservation:
        if section_id not in self._sections:
            raise KeyError(section_id)
        if end_date < start_date:
            raise ValueError("end_date precedes start_date")
        reservation = Reservation(
            id=uuid.uuid4().hex,
            section_id=section_id,
            start_date=start_date,
            end_date=end_date,
            tenant_name=tenant_name,
            purpose=purpose,
            note=note,
        )
        with self._lock:
            self._reservations.append(reservation)
        return reservation

    def list_reservations(self, section_id: Optional[str] = None) -> List[Reservation]:
        with self._lock:
            reservations = list(self._reservations)
        if section_id:
            reservations = [r for r in reservations if r.section_id == section_id]
        return sorted(reservations, key=lambda r: r.start_date)

    def is_section_available(self, section_id: str, start: date, end: date) -> bool:
        # both ends inclusive
        return not any(r.overlaps(start, end) for r in self.list_reservations(section_id))

    def create_inquiry(self, request: InquiryRequest) -> Inquiry:
        if request.section_id not in self._sections:
            raise KeyError(request.section_id)
        inquiry = Inquiry(
            id=uuid.uuid4().hex,
            section_id=request.section_id,
            caller_name=request.caller_name,
            caller_phone=request.caller_phone,
            inquiry_type=request.inquiry_type,
            message=request.message,
        )
        with self._lock:
            self._inquiries.append(inquiry)
        logger.info("facility.inquiry_created inquiry_id=%s section_id=%s", inquiry.id, inquiry.section_id)
        return inquiry

    def list_inquiries(self, section_id: Optional[str] = None, status: Optional[str] = None) -> List[Inquiry]:
        with self._lock:
            inquiries = list(self._inquiries)
        if section_id:
            inquiries = [i for i in inquiries if i.section_id == section_id]
        if status:
            inquiries = [i for i in inquiries if i.status == status]
        return inquiries

    def update_inquiry_status(self, inquiry_id: str, status: str) -> Inquiry:
        with self._lock:
            for index, inquiry in enumerate(self._inquiries):
                if inquiry.id == inquiry_id:
                    self._inquiries[index] = replace(inquiry, status=status)
                    return self._inquiries[index]
        raise KeyError(inquiry_id)


def _relative_day(today: date, month_offset: int, day: int) -> date:
    month_start = today.replace(day=1) + relativedelta(months=month_offset)
    last_day = calendar.monthrange(month_start.year, month_start.month)[1]
    return month_start.replace(day=min(day, last_day))


def load_default_repository(today: Optional[date] = None) -> FacilityRepository:
    """Build a repository from the bundled fixtures.

    Reservation fixtures are expressed relative to the month containing
    ``today`` so the seeded calendar always has something booked.
    """
    today = today or date.today()
    raw_facility = load_facility()
    facility = Facility(
        id=raw_facility["id"],
        name=raw_facility["name"],
        address=raw_facility["address"],
        phone=raw_facility["phone"],
        hours=raw_facility["hours"],
    )
    sections = [
        Section(
            id=raw["id"],
            name=raw["name"],
            floor=raw["floor"],
            area=raw["area"],
            rent_price=raw["rent_price"],
            category=raw["category"],
            status=raw.get("status", "active"),
            features=raw.get("features", []),
            description=raw.get("description", ""),
        )
        for raw in load_sections()
    ]
    repository = FacilityRepository(facility, sections)

    for raw in load_reservations():
        offset = raw.get("month_offset", 0)
        repository.add_reservation(
            section_id=raw["section_id"],
            start_date=_relative_day(today, offset, raw["start_day"]),
            end_date=_relative_day(today, offset, raw["end_day"]),
            tenant_name=raw["tenant_name"],
            purpose=raw.get("purpose", ""),
            note=raw.get("note"),
        )

    for raw in load_inquiries():
        inquiry = repository.create_inquiry(
            InquiryRequest(
                section_id=raw["section_id"],
                caller_name=raw["caller_name"],
                caller_phone=raw["caller_phone"],
                inquiry_type=raw["inquiry_type"],
                message=raw["message"],
            )
        )
        if raw.get("status", "new") != inquiry.status:
            repository.update_inquiry_status(inquiry.id, raw["status"])

    logger.info(
        "facility.loaded name=%s sections=%d reservations=%d",
        facility.name,
        len(sections),
        len(repository.list_reservations()),
    )
    return repository
