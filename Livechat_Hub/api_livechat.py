import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from Livechat_Hub.data_models import Credentials, NormalizedMessage, Platform
from Livechat_Hub.errors import ErrorEvent, LiveChatError, OAuthError
from Livechat_Hub.livechat import LiveChatController
from Livechat_Hub.livechat_config import build_livechat_config

logger = logging.getLogger(__name__)

# Global variable to hold the LiveChatController instance
live_chat_controller: Optional[LiveChatController] = None


def create_controller() -> LiveChatController:
    return LiveChatController(build_livechat_config())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    global live_chat_controller

    # Startup
    logger.info("Starting up...")
    live_chat_controller = create_controller()
    logger.info("Live chat controller initialized successfully")

    yield  # Application runs here

    # Shutdown
    logger.info("Shutting down...")
    await live_chat_controller.close()
    live_chat_controller = None
    logger.info("live_chat_controller cleanup completed")


class JoinRequest(BaseModel):
    platform: str
    channel: str
    token: Optional[str] = None
    username: Optional[str] = None


class LeaveRequest(BaseModel):
    platform: str
    channel: str


class SendRequest(BaseModel):
    platform: str
    channel: str
    body: str
    token: Optional[str] = None
    username: Optional[str] = None


class OAuthCompleteRequest(BaseModel):
    code_or_token: str


class OAuthBeginResponse(BaseModel):
    platform: str
    authorize_url: str


class TokenResponse(BaseModel):
    platform: str
    access_token: str


class StatusResponse(BaseModel):
    status: str
    platform: str
    channel: str


app = FastAPI(
    title="Live chat hub API",
    description="Join, leave and send to Twitch, Kick and YouTube live chats; stream normalized chat events",
    version="1.0.0",
    lifespan=lifespan
)


def _controller() -> LiveChatController:
    if live_chat_controller is None:
        raise HTTPException(status_code=503, detail="Live chat controller not initialized")
    return live_chat_controller


def _platform(value: str) -> Platform:
    try:
        return Platform(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown platform: {value}")


def _error_detail(platform: Platform, e: LiveChatError) -> dict:
    detail = ErrorEvent.from_exception(platform, e).to_dict()
    reason = getattr(e, "reason", None)
    if reason is not None:
        detail["reason"] = reason.value
    return detail


def serialize_payload(payload: Any) -> Any:
    if isinstance(payload, (NormalizedMessage, ErrorEvent)):
        return payload.to_dict()
    return payload


@app.post("/join", response_model=StatusResponse)
async def join_endpoint(request: JoinRequest):
    """Starts a session. Connection results arrive on /events as '{platform}-connected' or '{platform}-error'."""
    controller = _controller()
    platform = _platform(request.platform)
    try:
        session = await controller.join(platform, request.channel,
                                        Credentials(token=request.token, username=request.username))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return StatusResponse(status="joining", platform=platform.value, channel=session.channel)


@app.post("/leave", response_model=StatusResponse)
async def leave_endpoint(request: LeaveRequest):
    controller = _controller()
    platform = _platform(request.platform)
    stopped = await controller.leave(platform, request.channel)
    return StatusResponse(status="left" if stopped else "not_joined", platform=platform.value,
                          channel=controller.adapter(platform).normalize_channel(request.channel))


@app.post("/send", response_model=StatusResponse)
async def send_endpoint(request: SendRequest):
    controller = _controller()
    platform = _platform(request.platform)
    try:
        await controller.send(platform, request.channel, request.body,
                              Credentials(token=request.token, username=request.username))
    except LiveChatError as e:
        logger.warning(f"Send to {platform.value} failed: {e}")
        raise HTTPException(status_code=502, detail=_error_detail(platform, e))
    return StatusResponse(status="sent", platform=platform.value, channel=request.channel)


@app.post("/oauth/{platform}/begin", response_model=OAuthBeginResponse)
async def oauth_begin_endpoint(platform: str):
    controller = _controller()
    resolved = _platform(platform)
    url = controller.begin_oauth(resolved)
    return OAuthBeginResponse(platform=resolved.value, authorize_url=url)


@app.post("/oauth/{platform}/complete", response_model=TokenResponse)
async def oauth_complete_endpoint(platform: str, request: OAuthCompleteRequest):
    controller = _controller()
    resolved = _platform(platform)
    try:
        token = await controller.complete_oauth(resolved, request.code_or_token)
    except OAuthError as e:
        logger.warning(f"OAuth for {resolved.value} failed: {e}")
        raise HTTPException(status_code=400, detail=_error_detail(resolved, e))
    return TokenResponse(platform=resolved.value, access_token=token)


@app.websocket("/events")
async def events_endpoint(websocket: WebSocket):
    """Streams every engine event as JSON {"event": name, "payload": ...}."""
    controller = _controller()
    queue = controller.sink.queue_listener()
    try:
        await websocket.accept()
        while True:
            name, payload = await queue.get()
            await websocket.send_json({"event": name, "payload": serialize_payload(payload)})
    except WebSocketDisconnect:
        logger.info("Event stream client disconnected.")
    finally:
        controller.sink.remove_queue(queue)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    controller = live_chat_controller
    return {
        "status": "healthy",
        "live_chat_controller_initialized": controller is not None,
        "active_sessions": [
            {"platform": s.platform.value, "channel": s.channel, "ids": dict(s.ids)}
            for s in (controller.active_sessions() if controller else [])
        ],
    }


if __name__ == "__main__":
    from src.utils.logger import setup_logging

    setup_logging()
    api_settings = build_livechat_config()["api"]
    uvicorn.run(
        app,
        host=api_settings.get("host", "127.0.0.1"),
        port=int(api_settings.get("port", 8001)),
    )
