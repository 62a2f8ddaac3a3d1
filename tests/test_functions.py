"""
Tests for the capability registry and function-argument recovery.
"""

import pytest

from src.intake.availability import LOOKUP_FAILED_MESSAGE, Contractor, ContractorDirectory
from src.intake.functions import (
    Capability,
    CapabilityRegistry,
    CheckAvailabilityArgs,
    FunctionArgumentsError,
    IntakeContext,
    UnknownCapabilityError,
    build_capability_registry,
    extract_first_object,
    parse_function_arguments,
)

ELECTRICIAN = Contractor(
    name="Mike Johnson",
    company_name="Johnson Electric",
    service_type="electrical",
    zip_code="94103",
    rating=4.9,
)


class TestArgumentParsing:
    def test_well_formed_arguments(self):
        assert parse_function_arguments('{"zip_code": "94103"}') == {"zip_code": "94103"}

    def test_concatenated_objects_keep_the_first(self):
        raw = '{"zip_code": "94103"}{"zip_code": "95148"}'
        assert parse_function_arguments(raw) == {"zip_code": "94103"}

    def test_braces_inside_strings_are_respected(self):
        raw = '{"preferred_time": "after 5 {pm}"} trailing'
        assert extract_first_object(raw) == '{"preferred_time": "after 5 {pm}"}'

    def test_nested_objects(self):
        raw = '{"a": {"b": 1}}{"c": 2}'
        assert parse_function_arguments(raw) == {"a": {"b": 1}}

    def test_empty_arguments(self):
        assert parse_function_arguments("") == {}
        assert parse_function_arguments("   ") == {}

    @pytest.mark.parametrize("raw", ["not json", '{"zip_code": ', "[1, 2]", '"text"'])
    def test_unrecoverable_arguments_raise(self, raw):
        with pytest.raises(FunctionArgumentsError):
            parse_function_arguments(raw)


class TestRegistry:
    def test_unknown_capability_fails_clearly(self):
        registry = CapabilityRegistry()

        with pytest.raises(UnknownCapabilityError, match="transfer_call"):
            registry.get("transfer_call")

    def test_duplicate_registration_is_rejected(self):
        registry = build_capability_registry(ContractorDirectory())

        async def handler(args, context):
            return ""

        with pytest.raises(ValueError):
            registry.register(
                Capability(
                    name="check_availability",
                    description="dup",
                    args_model=CheckAvailabilityArgs,
                    handler=handler,
                )
            )

    def test_intake_capabilities_are_registered(self):
        registry = build_capability_registry(ContractorDirectory())

        assert registry.names == ["check_availability", "request_booking"]
        assert "check_availability" in registry
        assert "transfer_call" not in registry

    def test_tools_use_openai_function_schema(self):
        registry = build_capability_registry(ContractorDirectory())

        tools = registry.tools()

        assert [t["function"]["name"] for t in tools] == ["check_availability", "request_booking"]
        params = tools[0]["function"]["parameters"]
        assert params["type"] == "object"
        assert "zip_code" in params["properties"]
        assert "zip_code" in params["required"]


class TestCapabilities:
    @pytest.mark.asyncio
    async def test_check_availability_updates_context(self):
        registry = build_capability_registry(ContractorDirectory([ELECTRICIAN]))
        context = IntakeContext(call_sid="CA1", service_type="electrical")

        message = await registry.invoke("check_availability", '{"zip_code": "94103"}', context)

        assert "Mike Johnson from Johnson Electric" in message
        assert context.contractor == ELECTRICIAN
        assert context.zip_code == "94103"

    @pytest.mark.asyncio
    async def test_explicit_service_type_wins(self):
        registry = build_capability_registry(ContractorDirectory([ELECTRICIAN]))
        context = IntakeContext(service_type="plumbing")

        message = await registry.invoke(
            "check_availability",
            {"zip_code": "94103", "service_type": "electrical"},
            context,
        )

        assert "Johnson Electric" in message

    @pytest.mark.asyncio
    async def test_invalid_zip_code_is_rejected(self):
        registry = build_capability_registry(ContractorDirectory([ELECTRICIAN]))

        with pytest.raises(FunctionArgumentsError):
            await registry.invoke("check_availability", {"zip_code": "941"}, IntakeContext())

    @pytest.mark.asyncio
    async def test_lookup_failure_becomes_a_spoken_message(self):
        class BrokenDirectory(ContractorDirectory):
            async def find_available(self, zip_code, service_type):
                raise ConnectionError("database unavailable")

        registry = build_capability_registry(BrokenDirectory())
        context = IntakeContext(service_type="electrical")

        message = await registry.invoke("check_availability", {"zip_code": "94103"}, context)

        assert message == LOOKUP_FAILED_MESSAGE
        assert context.contractor is None

    @pytest.mark.asyncio
    async def test_booking_requires_a_matched_contractor(self):
        directory = ContractorDirectory([ELECTRICIAN])
        registry = build_capability_registry(directory)

        message = await registry.invoke(
            "request_booking", {"preferred_time": "tomorrow"}, IntakeContext()
        )

        assert "zip code" in message
        assert directory.bookings == []

    @pytest.mark.asyncio
    async def test_booking_is_recorded(self):
        directory = ContractorDirectory([ELECTRICIAN])
        registry = build_capability_registry(directory)
        context = IntakeContext(
            call_sid="CA9",
            service_type="electrical",
            zip_code="94103",
            contractor=ELECTRICIAN,
        )

        message = await registry.invoke(
            "request_booking", '{"preferred_time": "Friday afternoon", "urgent": false}', context
        )

        assert "Mike Johnson" in message
        assert "urgent" not in message
        [booking] = directory.bookings
        assert booking.preferred_time == "Friday afternoon"
        assert booking.call_sid == "CA9"
