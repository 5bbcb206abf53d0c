import pytest
from conftest import open_session

from wa_gateway.services.presence_service import MAX_TYPING_MS, typing_duration_ms

JID = "15551234567@s.whatsapp.net"


class TestTypingDuration:
    def test_scales_with_length(self):
        assert typing_duration_ms("") == 300
        assert typing_duration_ms("hello") == 300 + 5 * 18

    def test_capped(self):
        assert typing_duration_ms("x" * 1000) == MAX_TYPING_MS


class TestBursts:
    @pytest.mark.asyncio
    async def test_both_bursts_for_distant_retry(self, build, transport):
        gateway = build()
        presence = gateway.executor.presence

        presence.schedule_bursts("acct1", JID, 10_000)

        assert sorted(presence.pending_bursts("acct1", JID)) == [
            f"typing:acct1:{JID}:early",
            f"typing:acct1:{JID}:late",
        ]
        gateway.scheduler.cancel_all()

    @pytest.mark.asyncio
    async def test_only_late_burst_for_near_retry(self, build, transport):
        gateway = build()
        presence = gateway.executor.presence

        presence.schedule_bursts("acct1", JID, 3_000)

        assert presence.pending_bursts("acct1", JID) == [f"typing:acct1:{JID}:late"]
        assert gateway.scheduler.get(f"typing:acct1:{JID}:late").delay_ms == 1_000
        gateway.scheduler.cancel_all()

    @pytest.mark.asyncio
    async def test_no_bursts_for_immediate_retry(self, build, transport):
        gateway = build()
        presence = gateway.executor.presence

        presence.schedule_bursts("acct1", JID, 800)

        assert presence.pending_bursts("acct1", JID) == []

    @pytest.mark.asyncio
    async def test_clear_bursts(self, build, transport):
        gateway = build()
        presence = gateway.executor.presence
        presence.schedule_bursts("acct1", JID, 10_000)

        presence.clear_bursts("acct1", JID)

        assert presence.pending_bursts("acct1", JID) == []

    @pytest.mark.asyncio
    async def test_burst_fires_presence_on_live_handle(self, build, transport, manual_sleep):
        gateway = build()
        handle = await open_session(gateway, transport)
        gateway.executor.presence.schedule_bursts("acct1", JID, 10_000)

        await manual_sleep.release_all()

        assert ("composing", JID) in handle.presence
        assert handle.presence[-1] == ("paused", JID)

    @pytest.mark.asyncio
    async def test_burst_without_session_is_noop(self, build):
        gateway = build()
        await gateway.executor.presence.typing_burst("ghost", JID)
