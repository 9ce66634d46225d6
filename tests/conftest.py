"""
Shared Test Fixtures for the Escrow Room Bot
Provides an isolated SQLite database per test, in-memory fakes for the chat
transport and notifier, and fully wired escrow services.

Key Components:
1. Database fixtures (in-memory by default, file-backed for thread tests)
2. Recording fakes for Notifier / ChannelTransport with injectable failures
3. Ledger, ChannelPool, TransactionEngine, CleanupScheduler, EscrowRoomService
4. Helpers to register funded users
"""

import os

# Keep the module-level engine in database.py away from any real database
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ESCROW_GROUP_IDS", "-1001,-1002")

import asyncio
import logging
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from database import build_engine, build_session_factory
from models import Base
from services.channel_pool import ChannelPool
from services.cleanup_scheduler import CleanupScheduler
from services.escrow_room_service import EscrowRoomService
from services.ledger import Ledger
from services.transaction_engine import TransactionEngine

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

ROOM_IDS = ["-1001", "-1002"]
TEST_GRACE_SECONDS = 0.05


# ============================================================================
# FAKE CAPABILITIES
# ============================================================================

class FakeNotifier:
    """Records every message; can be told to fail for specific targets"""

    def __init__(self):
        self.sent: List[Tuple[str, str]] = []
        self.failing_targets = set()
        # Called with (target, text) before a message is recorded
        self.on_send = None

    async def send(self, target, text: str) -> None:
        if str(target) in self.failing_targets:
            raise RuntimeError(f"cannot reach {target}")
        if self.on_send is not None:
            self.on_send(str(target), text)
        self.sent.append((str(target), text))

    def messages_to(self, target) -> List[str]:
        return [text for t, text in self.sent if t == str(target)]


class FakeTransport:
    """In-memory group membership; each primitive can be switched to fail"""

    def __init__(self):
        self.invites_created: List[Tuple[str, int]] = []
        self.revoked: List[Tuple[str, str]] = []
        self.evicted: List[Tuple[str, int]] = []
        self.member_counts: Dict[str, int] = {}
        self.fail_create = False
        self.fail_revoke = False
        self.fail_evict = False
        self.fail_member_count = False
        # Called with (channel_id, identity) before an eviction is recorded
        self.on_evict = None
        self._counter = 0

    async def create_invite(self, channel_id: str, max_uses: int) -> str:
        if self.fail_create:
            raise RuntimeError("invite API unavailable")
        self._counter += 1
        self.invites_created.append((channel_id, max_uses))
        return f"https://t.me/+invite{self._counter}"

    async def revoke_invite(self, channel_id: str, token: str) -> None:
        if self.fail_revoke:
            raise RuntimeError("revoke failed")
        self.revoked.append((channel_id, token))

    async def evict(self, channel_id: str, identity: int) -> None:
        if self.fail_evict:
            raise RuntimeError("not enough rights")
        if self.on_evict is not None:
            self.on_evict(channel_id, identity)
        self.evicted.append((channel_id, identity))

    async def member_count(self, channel_id: str) -> int:
        if self.fail_member_count:
            raise RuntimeError("chat not found")
        return self.member_counts.get(channel_id, 3)


# ============================================================================
# DATABASE
# ============================================================================

@pytest.fixture
def session_factory():
    """Fresh in-memory schema per test"""
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield build_session_factory(engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed schema for tests that hit the database from several threads"""
    engine = build_engine(f"sqlite:///{tmp_path / 'escrow_test.db'}")
    Base.metadata.create_all(bind=engine)
    yield build_session_factory(engine)
    engine.dispose()


# ============================================================================
# SERVICES
# ============================================================================

@pytest.fixture
def ledger(session_factory):
    return Ledger(session_factory)


@pytest.fixture
def pool():
    return ChannelPool(ROOM_IDS)


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def engine(ledger):
    return TransactionEngine(ledger)


@pytest.fixture
def cleanup(pool, transport, notifier):
    """Cleanup scheduler that is NOT started; jobs stay pending until start()"""
    scheduler = CleanupScheduler(pool, transport, notifier, grace_seconds=TEST_GRACE_SECONDS)
    yield scheduler
    scheduler.shutdown()


@pytest_asyncio.fixture
async def running_cleanup(cleanup):
    """Cleanup scheduler started on the test's event loop"""
    cleanup.start()
    yield cleanup
    cleanup.shutdown()
    # AsyncIOScheduler.shutdown is delivered through the loop
    await asyncio.sleep(0)


@pytest.fixture
def service(ledger, pool, engine, cleanup, transport, notifier):
    return EscrowRoomService(
        ledger=ledger,
        pool=pool,
        engine=engine,
        cleanup=cleanup,
        transport=transport,
        notifier=notifier,
    )


# ============================================================================
# HELPERS
# ============================================================================

def make_user(ledger: Ledger, telegram_id: int, username: str, balance: Optional[str] = None):
    """Register a user and optionally fund them"""
    user = ledger.create_user(telegram_id, username)
    if balance is not None:
        user = ledger.credit(user.id, Decimal(balance))
    return user


@pytest.fixture
def alice(ledger):
    return make_user(ledger, 111, "alice", "100")


@pytest.fixture
def bob(ledger):
    return make_user(ledger, 222, "bob")


@pytest.fixture
def carol(ledger):
    return make_user(ledger, 333, "carol", "50")
