"""
Admin API Routes
Thin FastAPI wrapper over the escrow room service: registration, listings,
manual confirmation, balance top-up and broadcast.
"""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from services.escrow_room_service import EscrowRoomService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["admin"])


class RegisterRequest(BaseModel):
    telegram_id: int
    name: str


class ConfirmRequest(BaseModel):
    buyer_id: int


class TopUpRequest(BaseModel):
    telegram_id: int
    amount: Decimal


class BroadcastRequest(BaseModel):
    message: Optional[str] = None


def get_escrow_service(request: Request) -> EscrowRoomService:
    return request.app.state.escrow_service


@router.post("/register")
def register_user(body: RegisterRequest, service: EscrowRoomService = Depends(get_escrow_service)):
    user = service.register(body.telegram_id, body.name)
    return user.to_dict()


@router.get("/admin/users")
def list_users(service: EscrowRoomService = Depends(get_escrow_service)):
    return [u.to_dict() for u in service.ledger.list_users()]


@router.get("/admin/transactions")
def list_transactions(service: EscrowRoomService = Depends(get_escrow_service)):
    return [t.to_dict() for t in service.ledger.list_transactions()]


@router.get("/admin/rooms")
def list_rooms(service: EscrowRoomService = Depends(get_escrow_service)):
    return [
        {
            "channel_id": room.channel_id,
            "state": room.state.value,
            "initiator_id": room.initiator_id,
            "partner_id": room.partner_id,
            "transaction_id": room.transaction_id,
            "cleanup": service.cleanup.state_of(room.channel_id).value,
        }
        for room in service.pool.snapshot()
    ]


@router.post("/admin/confirm/{tx_id}")
async def confirm_transaction(
    tx_id: int, body: ConfirmRequest, service: EscrowRoomService = Depends(get_escrow_service)
):
    tx = await service.admin_confirm(tx_id, body.buyer_id)
    logger.info(f"Admin confirmed transaction {tx_id}")
    return tx.to_dict()


@router.post("/admin/topup")
def top_up(body: TopUpRequest, service: EscrowRoomService = Depends(get_escrow_service)):
    user = service.ledger.top_up(body.telegram_id, body.amount)
    logger.info(f"Admin top-up of {body.amount} for telegram user {body.telegram_id}")
    return user.to_dict()


@router.post("/admin/broadcast")
async def broadcast(body: BroadcastRequest, service: EscrowRoomService = Depends(get_escrow_service)):
    if not body.message or not body.message.strip():
        raise HTTPException(status_code=400, detail="Message is required")
    sent = await service.broadcast(body.message)
    return {"success": True, "sent": sent}
