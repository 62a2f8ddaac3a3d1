"""
Named capabilities the dialogue can invoke, directly or as model function calls.

Capabilities are registered once at startup in a static table. Looking up an
unknown name fails immediately with `UnknownCapabilityError`. Arguments
arrive as model-produced JSON, which is sometimes malformed (e.g. two objects
glued together); `parse_function_arguments` recovers the first balanced object.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, Union

import msgspec
import structlog
from pydantic import BaseModel, Field, ValidationError

from src.intake.availability import (
    BookingRequest,
    Contractor,
    ContractorDirectory,
    LOOKUP_FAILED_MESSAGE,
)

logger = structlog.get_logger(__name__)


class UnknownCapabilityError(LookupError):
    """Raised when a capability name is not in the registry."""


class FunctionArgumentsError(ValueError):
    """Raised when function-call arguments cannot be decoded or validated."""


def extract_first_object(raw: str) -> Optional[str]:
    """
    Return the first balanced `{...}` span in `raw`, honouring JSON strings.
    """
    start = raw.find("{")
    if start < 0:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(raw)):
        ch = raw[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return raw[start:i + 1]
    return None


def parse_function_arguments(raw: str) -> Dict[str, Any]:
    """Decode function-call arguments, falling back to the first balanced object."""
    if not raw or not raw.strip():
        return {}

    try:
        decoded = msgspec.json.decode(raw)
    except msgspec.DecodeError:
        logger.warning("Malformed function arguments, attempting recovery", raw=raw[:200])
        candidate = extract_first_object(raw)
        if candidate is None:
            raise FunctionArgumentsError(f"No JSON object in function arguments: {raw[:80]!r}")
        try:
            decoded = msgspec.json.decode(candidate)
        except msgspec.DecodeError as e:
            raise FunctionArgumentsError(f"Unrecoverable function arguments: {e}") from e

    if not isinstance(decoded, dict):
        raise FunctionArgumentsError("Function arguments must be a JSON object")
    return decoded


@dataclass
class IntakeContext:
    """What a capability may read or update for the current call."""
    call_sid: str = ""
    service_type: Optional[str] = None
    zip_code: Optional[str] = None
    contractor: Optional[Contractor] = None


class CheckAvailabilityArgs(BaseModel):
    zip_code: str = Field(pattern=r"^\d{5}$", description="Five-digit US zip code of the service address")
    service_type: Optional[str] = Field(
        default=None,
        description="One of plumbing, electrical, hvac, general",
    )


class RequestBookingArgs(BaseModel):
    preferred_time: str = Field(min_length=1, description="When the caller would like the contractor to come")
    urgent: bool = Field(default=False, description="Whether the caller describes the issue as urgent")


CapabilityHandler = Callable[[Any, IntakeContext], Awaitable[str]]


@dataclass(frozen=True)
class Capability:
    name: str
    description: str
    args_model: Type[BaseModel]
    handler: CapabilityHandler

    def to_tool(self) -> Dict[str, Any]:
        """OpenAI `tools` entry for this capability."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.args_model.model_json_schema(),
            },
        }


class CapabilityRegistry:
    """Static name -> capability table."""

    def __init__(self) -> None:
        self._capabilities: Dict[str, Capability] = {}

    def register(self, capability: Capability) -> None:
        if capability.name in self._capabilities:
            raise ValueError(f"Capability already registered: {capability.name}")
        self._capabilities[capability.name] = capability

    def get(self, name: str) -> Capability:
        try:
            return self._capabilities[name]
        except KeyError:
            raise UnknownCapabilityError(f"Unknown capability: {name!r}") from None

    def __contains__(self, name: str) -> bool:
        return name in self._capabilities

    @property
    def names(self) -> List[str]:
        return sorted(self._capabilities)

    def tools(self) -> List[Dict[str, Any]]:
        return [self._capabilities[name].to_tool() for name in self.names]

    async def invoke(
        self,
        name: str,
        arguments: Union[str, Dict[str, Any]],
        context: IntakeContext,
    ) -> str:
        """Validate arguments and run the capability; returns the sentence to speak."""
        capability = self.get(name)
        raw = parse_function_arguments(arguments) if isinstance(arguments, str) else arguments
        try:
            args = capability.args_model.model_validate(raw)
        except ValidationError as e:
            raise FunctionArgumentsError(f"Invalid arguments for {name}: {e}") from e

        logger.debug("Invoking capability", capability=name, call_sid=context.call_sid)
        return await capability.handler(args, context)


def build_capability_registry(directory: ContractorDirectory) -> CapabilityRegistry:
    """Register the intake capabilities backed by `directory`."""

    async def check_availability(args: CheckAvailabilityArgs, context: IntakeContext) -> str:
        service_type = args.service_type or context.service_type
        try:
            result = await directory.find_available(args.zip_code, service_type)
        except Exception as e:
            logger.error("Availability lookup failed", zip_code=args.zip_code, error=str(e))
            return LOOKUP_FAILED_MESSAGE

        context.zip_code = args.zip_code
        context.contractor = result.contractor
        return result.message

    async def request_booking(args: RequestBookingArgs, context: IntakeContext) -> str:
        if context.contractor is None or context.zip_code is None:
            return "Let's find you a contractor first. What's your zip code?"
        return await directory.request_booking(
            BookingRequest(
                contractor=context.contractor,
                zip_code=context.zip_code,
                service_type=context.service_type or context.contractor.service_type,
                preferred_time=args.preferred_time,
                urgent=args.urgent,
                call_sid=context.call_sid,
            )
        )

    registry = CapabilityRegistry()
    registry.register(
        Capability(
            name="check_availability",
            description="Find a contractor for the caller's service category in their zip code.",
            args_model=CheckAvailabilityArgs,
            handler=check_availability,
        )
    )
    registry.register(
        Capability(
            name="request_booking",
            description="Pass the caller's preferred appointment time to the matched contractor.",
            args_model=RequestBookingArgs,
            handler=request_booking,
        )
    )
    return registry
