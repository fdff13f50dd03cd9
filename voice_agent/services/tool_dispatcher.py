from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

import logging

from voice_agent.logging.flight_recorder import FlightRecorder
from voice_agent.models.facility import (
    AvailabilityQuery,
    InquiryToolRequest,
    ListSectionsQuery,
    SectionInfoQuery,
)
from voice_agent.services import tools
from voice_agent.services.facility import FacilityRepository

logger = logging.getLogger(__name__)

_CATEGORIES = ["retail", "food", "service", "office"]


class UnknownToolError(ValueError):
    pass


class ToolDispatcher:
    def __init__(self, repository: FacilityRepository, recorder: Optional[FlightRecorder] = None) -> None:
        self.repository = repository
        self.recorder = recorder
        self.registry: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
            "list_sections": self._wrap(self._list_sections),
            "get_section_info": self._wrap(self._get_section_info),
            "check_section_availability": self._wrap(self._check_section_availability),
            "create_inquiry": self._wrap(self._create_inquiry),
        }
        self._tool_schemas: Dict[str, Dict[str, Any]] = self._build_tool_schemas()

    def _wrap(self, func: Callable[[Dict[str, Any]], Dict[str, Any]]) -> Callable[[Dict[str, Any]], Dict[str, Any]]:
        def wrapped(args: Dict[str, Any]) -> Dict[str, Any]:
            logger.info("tool.call tool=%s", func.__name__.lstrip("_"))
            return func(args)

        return wrapped

    def dispatch(self, tool_name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """Run a tool by name. Argument problems surface as ``pydantic.ValidationError``."""
        if tool_name not in self.registry:
            raise UnknownToolError(f"Unknown tool: {tool_name}")
        return self.registry[tool_name](arguments or {})

    def get_tool_schemas(self) -> List[Dict[str, Any]]:
        return list(self._tool_schemas.values())

    def _list_sections(self, args: Dict[str, Any]) -> Dict[str, Any]:
        query = ListSectionsQuery(**args)
        return tools.list_sections(query, self.repository, self.recorder)

    def _get_section_info(self, args: Dict[str, Any]) -> Dict[str, Any]:
        query = SectionInfoQuery(**args)
        return tools.get_section_info(query, self.repository, self.recorder)

    def _check_section_availability(self, args: Dict[str, Any]) -> Dict[str, Any]:
        query = AvailabilityQuery(**args)
        return tools.check_section_availability(query, self.repository, self.recorder)

    def _create_inquiry(self, args: Dict[str, Any]) -> Dict[str, Any]:
        request = InquiryToolRequest(**args)
        return tools.create_inquiry(request, self.repository, self.recorder)

    def _build_tool_schemas(self) -> Dict[str, Dict[str, Any]]:
        return {
            "list_sections": {
                "type": "function",
                "function": {
                    "name": "list_sections",
                    "description": "List the rentable sections of the facility with floor, area, daily rent and status.",
                    "parameters": {
                        "type": "object",
                        "properties": {
                            "category": {"type": "string", "enum": _CATEGORIES},
                            "active_only": {"type": "boolean", "description": "Only sections open for rental."},
                        },
                    },
                },
            },
            "get_section_info": {
                "type": "function",
                "function": {
                    "name": "get_section_info",
                    "description": "Get details of one section by name, e.g. 1F-A.",
                    "parameters": {
                        "type": "object",
                        "properties": {
                            "section_name": {"type": "string"},
                        },
                        "required": ["section_name"],
                    },
                },
            },
            "check_section_availability": {
                "type": "function",
                "function": {
                    "name": "check_section_availability",
                    "description": (
                        "Check whether a section is free for a date range. "
                        "Without a section name and both dates, lists sections open for rental."
                    ),
                    "parameters": {
                        "type": "object",
                        "properties": {
                            "section_name": {"type": "string"},
                            "start_date": {"type": "string", "format": "date"},
                            "end_date": {"type": "string", "format": "date"},
                            "category": {"type": "string", "enum": _CATEGORIES},
                        },
                    },
                },
            },
            "create_inquiry": {
                "type": "function",
                "function": {
                    "name": "create_inquiry",
                    "description": "Record a rental inquiry so staff can call the caller back.",
                    "parameters": {
                        "type": "object",
                        "properties": {
                            "section_name": {"type": "string"},
                            "caller_name": {"type": "string"},
                            "caller_phone": {"type": "string"},
                            "inquiry_type": {
                                "type": "string",
                                "enum": ["viewing", "terms", "availability", "other"],
                            },
                            "message": {"type": "string"},
                        },
                        "required": ["section_name", "caller_name", "caller_phone", "inquiry_type", "message"],
                    },
                },
            },
        }
