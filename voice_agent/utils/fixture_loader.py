from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List

_FIXTURE_DIR = Path(__file__).resolve().parent.parent / "fixtures"


def load_json(filename: str) -> Any:
    file_path = _FIXTURE_DIR / filename
    with file_path.open(encoding="utf-8") as f:
        return json.load(f)


def load_facility() -> Dict[str, Any]:
    return load_json("facility.json")


def load_sections() -> List[Dict[str, Any]]:
    return load_json("sections.json")


def load_reservations() -> List[Dict[str, Any]]:
    return load_json("reservations.json")


def load_inquiries() -> List[Dict[str, Any]]:
    return load_json("inquiries.json")
