from __future__ import annotations

from dataclasses import replace

import pytest

from inboxrag.core.errors import AmbiguousChannel, ChannelNotFound
from inboxrag.domain.records import ChannelRecord
from inboxrag.persistence.memory import build_memory_storage
from inboxrag.services.channels import ChannelResolver
from inboxrag.tests.utils.seed import PHONE_A, TENANT_A, TENANT_B, UNKNOWN_PHONE


def _resolver(memory_state) -> ChannelResolver:
    storage, _ = build_memory_storage(memory_state)
    return ChannelResolver(storage.channels)


@pytest.mark.asyncio
async def test_resolves_owning_channel(memory_state) -> None:
    channel = await _resolver(memory_state).resolve(PHONE_A)

    assert channel.id == "chan-a"
    assert channel.tenant_id == TENANT_A


@pytest.mark.asyncio
async def test_formatting_differences_still_match(memory_state) -> None:
    channel = await _resolver(memory_state).resolve("212 600-000-001")

    assert channel.id == "chan-a"


@pytest.mark.asyncio
async def test_unknown_number_is_not_found(memory_state) -> None:
    with pytest.raises(ChannelNotFound):
        await _resolver(memory_state).resolve(UNKNOWN_PHONE)


@pytest.mark.asyncio
async def test_blank_number_is_not_found(memory_state) -> None:
    with pytest.raises(ChannelNotFound):
        await _resolver(memory_state).resolve("")


@pytest.mark.asyncio
async def test_inactive_channel_is_ignored(memory_state) -> None:
    memory_state.channels["chan-a"] = replace(memory_state.channels["chan-a"], is_active=False)

    with pytest.raises(ChannelNotFound):
        await _resolver(memory_state).resolve(PHONE_A)


@pytest.mark.asyncio
async def test_inactive_tenant_hides_its_channels(memory_state) -> None:
    memory_state.tenants[TENANT_A] = replace(memory_state.tenants[TENANT_A], is_active=False)

    with pytest.raises(ChannelNotFound):
        await _resolver(memory_state).resolve(PHONE_A)


@pytest.mark.asyncio
async def test_number_claimed_across_tenants_is_ambiguous(memory_state) -> None:
    memory_state.add_channel(
        ChannelRecord(
            id="chan-b2",
            tenant_id=TENANT_B,
            name="Copied config",
            config={"business_phone_number": "212600000001"},
        )
    )

    with pytest.raises(AmbiguousChannel) as exc_info:
        await _resolver(memory_state).resolve(PHONE_A)

    assert exc_info.value.channel_ids == ["chan-a", "chan-b2"]


@pytest.mark.asyncio
async def test_other_channel_types_are_ignored(memory_state) -> None:
    memory_state.add_channel(
        ChannelRecord(id="chan-sms", tenant_id=TENANT_B, name="SMS", type="sms", config={"phone_number": PHONE_A})
    )

    channel = await _resolver(memory_state).resolve(PHONE_A)

    assert channel.id == "chan-a"
