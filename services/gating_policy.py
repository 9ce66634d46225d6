"""
Gating Policy
Pure predicates deciding who may act inside an escrow room and who may trade
with whom. The ``require_*`` helpers turn a failed predicate into Unauthorized.
"""

from models import User
from services.channel_pool import ChannelPool
from utils.exceptions import Unauthorized


class GatingPolicy:
    """Stateless authorization checks for escrow rooms"""

    @staticmethod
    def can_act_in(channel_id, identity: int, pool: ChannelPool) -> bool:
        return pool.is_allowed(channel_id, identity)

    @staticmethod
    def can_transact(buyer: User, seller: User) -> bool:
        return buyer.telegram_id != seller.telegram_id

    @classmethod
    def require_channel_access(cls, channel_id, identity: int, pool: ChannelPool, reason: str) -> None:
        if not cls.can_act_in(channel_id, identity, pool):
            raise Unauthorized(reason)

    @classmethod
    def require_distinct_parties(cls, buyer: User, seller: User, reason: str = "You cannot transact with yourself") -> None:
        if not cls.can_transact(buyer, seller):
            raise Unauthorized(reason)
