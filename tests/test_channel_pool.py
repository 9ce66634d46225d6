"""
Test Channel Pool
Free/busy bookkeeping, gating membership, pending invites and lease-guarded release
"""

import threading

import pytest

from services.channel_pool import ChannelPool, ChannelState
from utils.exceptions import AlreadyBusy, NoFreeChannel, NotFound


class TestAllocation:

    def test_find_free_follows_configuration_order(self, pool):
        assert pool.find_free() == "-1001"
        pool.reserve("-1001", 1, 2)
        assert pool.find_free() == "-1002"
        pool.reserve("-1002", 3, 4)
        assert pool.find_free() is None

    def test_ids_are_normalised_and_deduplicated(self):
        pool = ChannelPool([-1001, " -1002 ", "-1001", ""])
        assert pool.channel_ids == ("-1001", "-1002")
        assert pool.is_managed(-1001)

    def test_reserve_marks_busy_with_pair(self, pool):
        lease = pool.reserve("-1001", 10, 20)

        room = pool.get("-1001")
        assert room.state is ChannelState.BUSY
        assert room.initiator_id == 10
        assert room.partner_id == 20
        assert room.lease == lease == 1

    def test_reserve_busy_room_rejected(self, pool):
        pool.reserve("-1001", 10, 20)

        with pytest.raises(AlreadyBusy):
            pool.reserve("-1001", 30, 40)

        assert pool.get("-1001").initiator_id == 10

    def test_reserve_unknown_room(self, pool):
        with pytest.raises(NotFound):
            pool.reserve("-9999", 1, 2)

    def test_reserve_free_exhausts_pool(self, pool):
        assert pool.reserve_free(1, 2) == "-1001"
        assert pool.reserve_free(3, 4) == "-1002"
        with pytest.raises(NoFreeChannel) as exc_info:
            pool.reserve_free(5, 6)
        assert exc_info.value.message == "All groups are busy, please try later."

    def test_reserve_free_never_hands_out_a_room_twice(self):
        pool = ChannelPool([str(-100 - i) for i in range(5)])
        won, lost = [], []

        def attempt(n):
            try:
                won.append(pool.reserve_free(n, n + 1000))
            except NoFreeChannel:
                lost.append(n)

        threads = [threading.Thread(target=attempt, args=(n,)) for n in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(won) == sorted(pool.channel_ids)
        assert len(lost) == 15


class TestGatingMembership:

    def test_only_the_pair_is_allowed(self, pool):
        pool.reserve("-1001", 10, 20)

        assert pool.is_allowed("-1001", 10)
        assert pool.is_allowed("-1001", 20)
        assert not pool.is_allowed("-1001", 30)

    def test_nobody_allowed_in_free_or_unknown_room(self, pool):
        assert not pool.is_allowed("-1001", 10)
        assert not pool.is_allowed("-9999", 10)


class TestInvitesAndTransactions:

    def test_attach_invite_updates_pending_invite(self, pool):
        pool.reserve("-1001", 10, 20)
        pool.attach_invite("-1001", "https://t.me/+abc")

        assert pool.get("-1001").invite_token == "https://t.me/+abc"
        assert pool.find_by_identity(10) == ("-1001", "https://t.me/+abc")
        assert pool.find_by_identity(20) is None

    def test_attach_to_free_room_rejected(self, pool):
        with pytest.raises(NotFound):
            pool.attach_invite("-1001", "token")
        with pytest.raises(NotFound):
            pool.attach_transaction("-1001", 1)

    def test_attach_transaction(self, pool):
        pool.reserve("-1001", 10, 20)
        pool.attach_transaction("-1001", 7)
        assert pool.get("-1001").transaction_id == 7


class TestRelease:

    def test_release_clears_everything(self, pool):
        pool.reserve("-1001", 10, 20)
        pool.attach_invite("-1001", "token")
        pool.attach_transaction("-1001", 7)

        assert pool.release("-1001") is True

        room = pool.get("-1001")
        assert room.state is ChannelState.FREE
        assert room.participants == []
        assert room.invite_token is None
        assert room.transaction_id is None
        assert pool.find_by_identity(10) is None
        assert not pool.is_allowed("-1001", 10)

    def test_release_is_idempotent(self, pool):
        pool.reserve("-1001", 10, 20)
        assert pool.release("-1001") is True
        assert pool.release("-1001") is False
        assert pool.release("-9999") is False

    def test_stale_lease_does_not_free_reused_room(self, pool):
        first = pool.reserve("-1001", 10, 20)
        pool.release("-1001")
        second = pool.reserve("-1001", 30, 40)

        assert second == first + 1
        assert pool.release("-1001", lease=first) is False
        assert pool.is_allowed("-1001", 30)
        assert pool.release("-1001", lease=second) is True

    def test_released_room_is_reusable(self, pool):
        pool.reserve_free(1, 2)
        pool.reserve_free(3, 4)
        pool.release("-1001")
        assert pool.reserve_free(5, 6) == "-1001"

    def test_snapshot_lists_rooms_in_order(self, pool):
        pool.reserve("-1002", 1, 2)
        states = [(r.channel_id, r.is_busy) for r in pool.snapshot()]
        assert states == [("-1001", False), ("-1002", True)]
