"""
Contractor availability lookup.

Loads `contractors.json` (a list of contractor records) and answers
"who can take a <category> job in <zip>?" with a sentence the agent can say.
Booking requests are kept in memory for the life of the process.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
import time
from typing import List, Optional

import msgspec
import structlog

logger = structlog.get_logger(__name__)

NO_CATEGORY_MESSAGE = "I need to understand what service you need first. What's the issue?"
NOT_FOUND_MESSAGE = "I apologize, but I don't have any contractors available in your area right now."
LOOKUP_FAILED_MESSAGE = "I'm having trouble checking availability. Could you try your zip code again?"


@dataclass(frozen=True)
class Contractor:
    name: str
    company_name: str
    service_type: str
    zip_code: str
    phone: str = ""
    email: str = ""
    active: bool = True
    rating: float = 0.0


@dataclass(frozen=True)
class AvailabilityResult:
    found: bool
    message: str
    contractor: Optional[Contractor] = None


@dataclass(frozen=True)
class BookingRequest:
    contractor: Contractor
    zip_code: str
    service_type: str
    preferred_time: str
    urgent: bool = False
    call_sid: str = ""
    created_at: float = field(default_factory=time.time)


def _project_root() -> Path:
    # src/intake/availability.py -> src/intake -> src -> project root
    return Path(__file__).resolve().parent.parent.parent


def resolve_contractors_path(path: Optional[str] = None) -> Path:
    """Relative paths are interpreted relative to the project root."""
    if not path:
        return _project_root() / "contractors.json"
    candidate = Path(path)
    if candidate.is_absolute():
        return candidate
    return _project_root() / candidate


def load_contractors(path: Path) -> List[Contractor]:
    """Decode a contractors file; raises ValueError on malformed content."""
    try:
        return msgspec.json.decode(path.read_bytes(), type=List[Contractor])
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid contractors file {path}: {e}") from e


class ContractorDirectory:
    """In-memory contractor directory."""

    def __init__(self, contractors: Optional[List[Contractor]] = None):
        self._contractors: List[Contractor] = list(contractors or [])
        self._bookings: List[BookingRequest] = []
        self._lock = asyncio.Lock()

    @property
    def contractors(self) -> List[Contractor]:
        return list(self._contractors)

    @property
    def bookings(self) -> List[BookingRequest]:
        return list(self._bookings)

    def find_contractor(self, zip_code: str, service_type: str) -> Optional[Contractor]:
        """Best-rated active contractor for the category in that zip code."""
        matches = [
            c
            for c in self._contractors
            if c.active and c.zip_code == zip_code and c.service_type == service_type
        ]
        if not matches:
            return None
        return max(matches, key=lambda c: c.rating)

    async def find_available(self, zip_code: str, service_type: Optional[str]) -> AvailabilityResult:
        if not service_type:
            return AvailabilityResult(found=False, message=NO_CATEGORY_MESSAGE)

        contractor = self.find_contractor(zip_code, service_type)
        logger.info(
            "Availability checked",
            zip_code=zip_code,
            service_type=service_type,
            found=contractor is not None,
        )
        if contractor is None:
            return AvailabilityResult(found=False, message=NOT_FOUND_MESSAGE)

        return AvailabilityResult(
            found=True,
            contractor=contractor,
            message=(
                f"Perfect! {contractor.name} from {contractor.company_name} specializes in "
                f"{service_type} issues. Would you like to schedule an appointment?"
            ),
        )

    async def request_booking(self, request: BookingRequest) -> str:
        async with self._lock:
            self._bookings.append(request)
        logger.info(
            "Booking requested",
            contractor=request.contractor.name,
            zip_code=request.zip_code,
            service_type=request.service_type,
            urgent=request.urgent,
            call_sid=request.call_sid,
        )
        urgency = " I've marked it as urgent." if request.urgent else ""
        return (
            f"Thanks! I've sent your request to {request.contractor.name} at "
            f"{request.contractor.company_name}.{urgency} They'll call you to confirm the time."
        )


@lru_cache(maxsize=4)
def get_contractor_directory(path: Optional[str] = None) -> ContractorDirectory:
    """
    Load the directory once per path.

    A missing file yields an empty directory (every lookup reports no availability).
    """
    resolved = resolve_contractors_path(path)
    if not resolved.exists():
        logger.warning("Contractors file not found", path=str(resolved))
        return ContractorDirectory()

    contractors = load_contractors(resolved)
    logger.info("Contractor directory loaded", path=str(resolved), contractors=len(contractors))
    return ContractorDirectory(contractors)
