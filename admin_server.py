"""
Admin Server
Builds the FastAPI admin app around an EscrowRoomService. The app is served
from main.py in the same process as the bot, since room state is in-process.
"""

import logging
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from routes.admin_api import router as admin_router
from services.escrow_room_service import EscrowRoomService
from utils.exceptions import EscrowError, NotFound

logger = logging.getLogger(__name__)


async def escrow_error_handler(request: Request, exc: EscrowError) -> JSONResponse:
    status_code = 404 if isinstance(exc, NotFound) else 400
    logger.info(f"Admin API rejected {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=status_code, content={"error": exc.message, "code": exc.error_code})


def create_admin_app(service: EscrowRoomService) -> FastAPI:
    app = FastAPI(title="Escrow Room Admin")
    app.state.escrow_service = service
    app.add_exception_handler(EscrowError, escrow_error_handler)
    app.include_router(admin_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "rooms": len(service.pool.channel_ids)}

    return app
