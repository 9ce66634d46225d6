"""
Test Cleanup Scheduler
Grace-period room reclamation: warning, timed eviction, best-effort side actions,
cancellation and the lease guard against stale timers
"""

import asyncio

import pytest

from services.cleanup_scheduler import CleanupScheduler, CleanupState

# Comfortably longer than the grace period used by the fixtures
WAIT_FOR_TIMER = 0.5


def open_room(pool, channel_id="-1001", initiator=111, partner=222, token="https://t.me/+room"):
    lease = pool.reserve(channel_id, initiator, partner)
    pool.attach_invite(channel_id, token)
    return lease


class TestScheduling:

    @pytest.mark.asyncio
    async def test_schedule_warns_then_releases(self, running_cleanup, pool, transport, notifier):
        open_room(pool)

        assert await running_cleanup.schedule_cleanup("-1001", [111, 222]) is True
        assert running_cleanup.state_of("-1001") is CleanupState.CLEANUP_SCHEDULED
        assert running_cleanup.has_pending_timer("-1001")

        room_messages = notifier.messages_to("-1001")
        assert room_messages[0].startswith("⚠️ The transaction is complete")
        assert room_messages[1] == CleanupScheduler.CLOSING_MESSAGE
        # Room stays usable by the pair during the grace period
        assert pool.is_allowed("-1001", 111)

        await asyncio.sleep(WAIT_FOR_TIMER)

        assert not pool.get("-1001").is_busy
        assert running_cleanup.state_of("-1001") is CleanupState.RELEASED
        assert sorted(transport.evicted) == [("-1001", 111), ("-1001", 222)]
        assert transport.revoked == [("-1001", "https://t.me/+room")]
        assert notifier.messages_to("-1001")[-1] == CleanupScheduler.FINAL_MESSAGE

    @pytest.mark.asyncio
    async def test_schedule_free_room_is_noop(self, running_cleanup, notifier):
        assert await running_cleanup.schedule_cleanup("-1001") is False
        assert notifier.sent == []
        assert not running_cleanup.has_pending_timer("-1001")

    @pytest.mark.asyncio
    async def test_reschedule_keeps_a_single_timer(self, running_cleanup, pool, transport):
        open_room(pool)

        await running_cleanup.schedule_cleanup("-1001", [111, 222])
        await running_cleanup.schedule_cleanup("-1001", [111, 222])
        jobs = [j for j in running_cleanup.scheduler.get_jobs() if j.id == running_cleanup.job_id("-1001")]
        assert len(jobs) == 1

        await asyncio.sleep(WAIT_FOR_TIMER)
        assert len(transport.evicted) == 2

    @pytest.mark.asyncio
    async def test_participants_default_to_room_pair(self, running_cleanup, pool, transport):
        open_room(pool, initiator=5, partner=6)

        await running_cleanup.schedule_cleanup("-1001")
        await asyncio.sleep(WAIT_FOR_TIMER)

        assert sorted(i for _, i in transport.evicted) == [5, 6]


class TestBestEffortActions:

    @pytest.mark.asyncio
    async def test_failures_still_release(self, running_cleanup, pool, transport, notifier):
        open_room(pool)
        transport.fail_evict = True
        transport.fail_revoke = True
        notifier.failing_targets.add("-1001")

        await running_cleanup.schedule_cleanup("-1001", [111, 222])
        await asyncio.sleep(WAIT_FOR_TIMER)

        assert not pool.get("-1001").is_busy
        assert pool.find_by_identity(111) is None

    @pytest.mark.asyncio
    async def test_missing_token_skips_revoke(self, running_cleanup, pool, transport):
        pool.reserve("-1001", 111, 222)

        await running_cleanup.schedule_cleanup("-1001", [111, 222])
        await asyncio.sleep(WAIT_FOR_TIMER)

        assert transport.revoked == []
        assert not pool.get("-1001").is_busy


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_prevents_timer(self, running_cleanup, pool, transport):
        open_room(pool)
        await running_cleanup.schedule_cleanup("-1001", [111, 222])

        assert running_cleanup.cancel_scheduled("-1001") is True
        assert running_cleanup.cancel_scheduled("-1001") is False

        await asyncio.sleep(WAIT_FOR_TIMER)
        assert transport.evicted == []
        assert pool.get("-1001").is_busy
        assert running_cleanup.state_of("-1001") is CleanupState.ACTIVE

    @pytest.mark.asyncio
    async def test_release_now_frees_and_disarms(self, running_cleanup, pool, transport):
        open_room(pool)
        await running_cleanup.schedule_cleanup("-1001", [111, 222])

        assert running_cleanup.release_now("-1001") is True
        assert not pool.get("-1001").is_busy
        assert not running_cleanup.has_pending_timer("-1001")

        await asyncio.sleep(WAIT_FOR_TIMER)
        assert transport.evicted == []
        assert running_cleanup.release_now("-1001") is False

    @pytest.mark.asyncio
    async def test_release_during_warning_disarms_timer(self, running_cleanup, pool, transport, notifier):
        open_room(pool)
        notifier.on_send = lambda target, text: running_cleanup.release_now(target)

        await running_cleanup.schedule_cleanup("-1001", [111, 222])

        assert not pool.get("-1001").is_busy
        assert not running_cleanup.has_pending_timer("-1001")
        assert running_cleanup.state_of("-1001") is CleanupState.RELEASED

        await asyncio.sleep(WAIT_FOR_TIMER)
        assert transport.evicted == []

    @pytest.mark.asyncio
    async def test_reuse_during_evictions_spares_new_pair(self, running_cleanup, pool, transport, notifier):
        open_room(pool)
        reused = []

        def hand_room_to_new_pair(channel_id, identity):
            if not reused:
                pool.release(channel_id)
                pool.reserve(channel_id, 333, 444)
                reused.append(channel_id)

        transport.on_evict = hand_room_to_new_pair

        await running_cleanup.schedule_cleanup("-1001", [111, 222])
        await asyncio.sleep(WAIT_FOR_TIMER)

        assert transport.evicted == [("-1001", 111)]
        assert CleanupScheduler.FINAL_MESSAGE not in notifier.messages_to("-1001")
        assert transport.revoked == [("-1001", "https://t.me/+room")]
        assert pool.is_allowed("-1001", 333)
        assert pool.is_allowed("-1001", 444)

    @pytest.mark.asyncio
    async def test_stale_run_does_not_touch_reused_room(self, cleanup, pool, transport):
        open_room(pool)
        await cleanup.schedule_cleanup("-1001", [111, 222])

        # Room emptied out-of-band and immediately handed to a new pair,
        # but the old timer body still runs (e.g. it was already executing)
        pool.release("-1001")
        pool.reserve("-1001", 333, 444)
        await cleanup.run_cleanup("-1001")

        assert transport.evicted == []
        assert pool.is_allowed("-1001", 333)
        assert pool.get("-1001").is_busy


class TestStateOf:

    def test_state_transitions_without_timer(self, cleanup, pool):
        assert cleanup.state_of("-1001") is CleanupState.RELEASED
        pool.reserve("-1001", 1, 2)
        assert cleanup.state_of("-1001") is CleanupState.ACTIVE
        assert cleanup.state_of("-9999") is CleanupState.RELEASED
