from datetime import date

import pytest
from pydantic import ValidationError

from voice_agent.models.facility import InquiryRequest
from voice_agent.services.facility import Facility, FacilityRepository, Section, load_default_repository
from voice_agent.services.tool_dispatcher import ToolDispatcher, UnknownToolError
from voice_agent.services.tools import format_rent_price, format_status


def _repository():
    facility = Facility(id="f", name="Test Mall", address="1 Main St", phone="000", hours="10:00-21:00")
    section = Section(
        id="s1", name="1F-A", floor=1, area=45, rent_price=15000, category="retail", status="active"
    )
    return FacilityRepository(facility, [section])


def test_reservation_overlap_is_inclusive():
    repository = _repository()
    repository.add_reservation("s1", date(2026, 2, 5), date(2026, 2, 11), tenant_name="ABC Apparel")

    assert not repository.is_section_available("s1", date(2026, 2, 10), date(2026, 2, 15))
    assert not repository.is_section_available("s1", date(2026, 2, 11), date(2026, 2, 11))
    assert not repository.is_section_available("s1", date(2026, 2, 1), date(2026, 2, 5))
    assert repository.is_section_available("s1", date(2026, 2, 12), date(2026, 2, 15))
    assert repository.is_section_available("s1", date(2026, 2, 1), date(2026, 2, 4))


def test_add_reservation_validates_range():
    repository = _repository()
    with pytest.raises(ValueError):
        repository.add_reservation("s1", date(2026, 2, 5), date(2026, 2, 1), tenant_name="x")
    with pytest.raises(KeyError):
        repository.add_reservation("nope", date(2026, 2, 1), date(2026, 2, 5), tenant_name="x")


def test_default_repository_is_seeded_relative_to_today(repository):
    assert repository.get_facility().name == "Tsukunin Mall Shibuya"
    assert len(repository.list_sections()) == 11
    assert len(repository.list_sections(active_only=True)) == 10
    assert [s.name for s in repository.list_sections(category="food")] == ["1F-B", "1F-D"]

    section_1fa = repository.get_section_by_name("1F-A")
    spans = [(r.start_date, r.end_date) for r in repository.list_reservations(section_1fa.id)]
    assert spans == [(date(2026, 2, 5), date(2026, 2, 11)), (date(2026, 2, 20), date(2026, 2, 25))]

    section_1fc = repository.get_section_by_name("1F-C")
    assert [r.start_date for r in repository.list_reservations(section_1fc.id)] == [date(2026, 3, 1)]

    assert len(repository.list_inquiries()) == 3
    assert len(repository.list_inquiries(status="contacted")) == 1


def test_seed_month_offset_rolls_over_year():
    repository = load_default_repository(today=date(2026, 12, 31))
    section_1fc = repository.get_section_by_name("1F-C")
    assert [r.start_date for r in repository.list_reservations(section_1fc.id)] == [date(2027, 1, 1)]


def test_get_section_by_name_prefers_exact_then_substring(repository):
    assert repository.get_section_by_name("2F-B").name == "2F-B"
    assert repository.get_section_by_name("2f-b").name == "2F-B"
    assert repository.get_section_by_name("3F").name == "3F-A"
    assert repository.get_section_by_name("9F-Z") is None
    assert repository.get_section_by_name("") is None


def test_create_inquiry_requires_known_section(repository):
    with pytest.raises(KeyError):
        repository.create_inquiry(
            InquiryRequest(
                section_id="missing",
                caller_name="A",
                caller_phone="1",
                inquiry_type="other",
                message="m",
            )
        )


def test_formatting_helpers():
    assert format_rent_price(15000) == "15,000 yen per day"
    assert format_status("active") == "available"
    assert format_status("inactive") == "suspended"


def test_dispatcher_lists_sections(repository):
    dispatcher = ToolDispatcher(repository)
    result = dispatcher.dispatch("list_sections", {"category": "office"})
    assert result["total"] == 2
    assert result["sections"][0] == {
        "name": "3F-A",
        "floor": "3F",
        "area": "120 square meters",
        "rent_daily": "20,000 yen per day",
        "category": "office",
        "status": "available",
        "features": ["windows", "meeting room", "raised floor"],
    }


def test_dispatcher_section_info(repository):
    dispatcher = ToolDispatcher(repository)
    info = dispatcher.dispatch("get_section_info", {"section_name": "2F-D"})
    assert info["status"] == "suspended"
    assert info["description"]
    assert "error" in dispatcher.dispatch("get_section_info", {"section_name": "9F"})


def test_availability_tool(repository):
    dispatcher = ToolDispatcher(repository)

    booked = dispatcher.dispatch(
        "check_section_availability",
        {"section_name": "1F-A", "start_date": "2026-02-10", "end_date": "2026-02-15"},
    )
    assert booked["available"] is False
    assert booked["reason"]

    free = dispatcher.dispatch(
        "check_section_availability",
        {"section_name": "1F-A", "start_date": "2026-02-12", "end_date": "2026-02-15"},
    )
    assert free["available"] is True
    assert free["rent_daily"] == "15,000 yen per day"

    suspended = dispatcher.dispatch(
        "check_section_availability",
        {"section_name": "2F-D", "start_date": "2026-02-12", "end_date": "2026-02-15"},
    )
    assert suspended["available"] is False
    assert "suspended" in suspended["reason"]

    listing = dispatcher.dispatch("check_section_availability", {"category": "service"})
    assert [s["name"] for s in listing["available_sections"]] == ["2F-B", "2F-C", "3F-C"]


def test_create_inquiry_tool_records_inquiry(repository):
    dispatcher = ToolDispatcher(repository)
    before = len(repository.list_inquiries())

    result = dispatcher.dispatch(
        "create_inquiry",
        {
            "section_name": "1F-D",
            "caller_name": "Jamie Rivera",
            "caller_phone": "090-0000-0000",
            "inquiry_type": "viewing",
            "message": "Would like to see the terrace.",
        },
    )

    assert result["success"] is True
    inquiries = repository.list_inquiries()
    assert len(inquiries) == before + 1
    assert inquiries[-1].id == result["inquiry_id"]
    assert inquiries[-1].section_id == repository.get_section_by_name("1F-D").id


def test_dispatcher_errors(repository):
    dispatcher = ToolDispatcher(repository)
    with pytest.raises(UnknownToolError):
        dispatcher.dispatch("book_flight", {})
    with pytest.raises(ValidationError):
        dispatcher.dispatch("create_inquiry", {"section_name": "1F-A"})
    with pytest.raises(ValidationError):
        dispatcher.dispatch("check_section_availability", {"start_date": "not a date"})
    # dateutil overflows on huge numbers instead of raising ValueError
    with pytest.raises(ValidationError, match="invalid date"):
        dispatcher.dispatch("check_section_availability", {"start_date": "99999999999999999999"})


def test_tool_schemas_cover_registry(repository):
    dispatcher = ToolDispatcher(repository)
    names = {schema["function"]["name"] for schema in dispatcher.get_tool_schemas()}
    assert names == set(dispatcher.registry)
    assert all(schema["type"] == "function" for schema in dispatcher.get_tool_schemas())
