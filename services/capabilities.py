"""
Capability Interfaces
What the escrow core needs from the chat transport. The Telegram implementations
live in services/telegram_channel_transport.py; tests provide in-memory fakes.
"""

from typing import Protocol, Union

ChatTarget = Union[int, str]


class Notifier(Protocol):
    async def send(self, target: ChatTarget, text: str) -> None:
        """Best-effort message to a user or a room"""
        ...


class ChannelTransport(Protocol):
    async def create_invite(self, channel_id: str, max_uses: int) -> str:
        """Create an invite link token; failure aborts opening a room"""
        ...

    async def revoke_invite(self, channel_id: str, token: str) -> None:
        ...

    async def evict(self, channel_id: str, identity: int) -> None:
        """Remove a member without permanently banning them"""
        ...

    async def member_count(self, channel_id: str) -> int:
        ...
