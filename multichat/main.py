from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .conversation import ModelRef, ParticipantKey
from .hosts import HostRegistry
from .llm import OllamaClient, OllamaError
from .orchestrator import Orchestrator
from .prompts import Attachment
from .scanner import NetworkScanner
from .settings import DEFAULT_SETTINGS, SettingsManager
from .storage import ChatStateStore, SessionStore
from .tasks import RequestRejected

DATA_DIR = Path(os.environ.get("MULTICHAT_DATA_DIR", "data"))
EDITABLE_SETTINGS = {
    "persist_data_locally",
    "enable_roles",
    "allow_same_model_multi_chat",
    "enable_message_streaming",
    "chat_config",
    "autonomous",
}


def _configure_logging(log_file: Path) -> logging.Logger:
    logger = logging.getLogger("multichat")
    if logger.handlers:
        return logger
    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    logger.propagate = False
    logger.debug("Logging initialised, writing to %s", log_file)
    return logger


class HostPayload(BaseModel):
    url: str


class ModelPayload(BaseModel):
    name: str


class ScanPayload(BaseModel):
    custom_range: Optional[str] = None


class ParticipantPayload(BaseModel):
    host_id: Optional[str] = None
    model: Optional[str] = None
    role: Optional[str] = None
    duplicate_of: Optional[str] = None


class ParticipantKeyPayload(BaseModel):
    key: str


class RolePayload(BaseModel):
    key: str
    role: str


class AttachmentPayload(BaseModel):
    name: str = ""
    mime_type: str = ""
    kind: str = "text"
    text_content: str = ""
    base64_content: str = ""


class MessagePayload(BaseModel):
    text: str = ""
    attachments: List[AttachmentPayload] = Field(default_factory=list)
    targets: Optional[List[str]] = None
    autonomous: bool = False


class AutonomousPayload(BaseModel):
    seed: Optional[str] = None
    participants: Optional[List[str]] = None


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"ok": False, "detail": message}, status_code=status_code)


def _parse_key(raw: str) -> ParticipantKey:
    try:
        return ParticipantKey.parse(raw)
    except ValueError as exc:
        raise RequestRejected(str(exc)) from None


def create_app(
    data_dir: Path = DATA_DIR,
    client: Optional[OllamaClient] = None,
    scanner: Optional[NetworkScanner] = None,
) -> FastAPI:
    data_dir.mkdir(parents=True, exist_ok=True)
    logger = _configure_logging(data_dir / "server.log")

    client = client or OllamaClient()
    settings_manager = SettingsManager(data_dir / "settings.json")
    registry = HostRegistry(settings_manager, client)
    sessions = SessionStore(ChatStateStore(data_dir))
    orchestrator = Orchestrator(settings_manager, registry, sessions, client)
    scanner = scanner or NetworkScanner(client)

    app = FastAPI(title="multichat")
    app.state.settings = settings_manager
    app.state.registry = registry
    app.state.orchestrator = orchestrator
    app.state.scanner = scanner

    @app.exception_handler(RequestRejected)
    async def rejected_handler(request: Request, exc: RequestRejected) -> JSONResponse:
        return _error(str(exc), status.HTTP_400_BAD_REQUEST)

    @app.exception_handler(KeyError)
    async def missing_handler(request: Request, exc: KeyError) -> JSONResponse:
        name = exc.args[0] if exc.args else ""
        return _error(f"Not found: {name}", status.HTTP_404_NOT_FOUND)

    @app.exception_handler(OllamaError)
    async def backend_handler(request: Request, exc: OllamaError) -> JSONResponse:
        return _error(str(exc), status.HTTP_502_BAD_GATEWAY)

    @app.on_event("startup")
    async def on_startup() -> None:
        orchestrator.load()
        await registry.refresh_all()
        logger.info("Application startup complete.")

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        await orchestrator.shutdown()
        logger.info("Application shutdown complete.")

    @app.get("/health", response_class=JSONResponse)
    async def health() -> JSONResponse:
        return JSONResponse(
            {
                "status": "ok",
                "hosts": {host_id: value.value for host_id, value in registry.statuses().items()},
                "queue": len(orchestrator.queue),
                "autonomous": orchestrator.autonomous_active,
            }
        )

    @app.get("/state", response_class=JSONResponse)
    async def state_endpoint() -> JSONResponse:
        payload = orchestrator.state()
        payload["scan"] = _scan_state()
        return JSONResponse(payload)

    @app.get("/settings", response_class=JSONResponse)
    async def get_settings() -> JSONResponse:
        return JSONResponse(settings_manager.settings)

    @app.post("/settings", response_class=JSONResponse)
    async def update_settings(payload: Dict[str, Any]) -> JSONResponse:
        accepted = {key: value for key, value in payload.items() if key in EDITABLE_SETTINGS}
        ignored = sorted(set(payload) - EDITABLE_SETTINGS)
        if ignored:
            logger.debug("Ignoring unknown settings keys: %s", ", ".join(ignored))
        for key, value in accepted.items():
            if isinstance(DEFAULT_SETTINGS[key], dict) and not isinstance(value, dict):
                raise RequestRejected(f"Setting {key} must be an object.")
        settings_manager.save(accepted)
        logger.info("Settings updated: %s", ", ".join(sorted(accepted)) or "nothing")
        return JSONResponse(settings_manager.settings)

    # -- hosts and models -------------------------------------------------

    @app.post("/hosts", response_class=JSONResponse)
    async def add_host(payload: HostPayload) -> JSONResponse:
        try:
            host = registry.add_host(payload.url)
        except ValueError as exc:
            raise RequestRejected(str(exc)) from None
        result = await registry.test_connection(host.id)
        return JSONResponse({"ok": True, **host.to_dict(), "status": result.value})

    @app.delete("/hosts/{host_id}", response_class=JSONResponse)
    async def remove_host(host_id: str) -> JSONResponse:
        orchestrator.remove_host(host_id)
        return JSONResponse({"ok": True})

    @app.post("/hosts/{host_id}/test", response_class=JSONResponse)
    async def test_host(host_id: str) -> JSONResponse:
        result = await registry.test_connection(host_id)
        return JSONResponse({"ok": True, "status": result.value})

    @app.post("/hosts/{host_id}/pull", response_class=JSONResponse)
    async def pull_model(host_id: str, payload: ModelPayload) -> JSONResponse:
        result = await registry.pull_model(host_id, payload.name)
        return JSONResponse({"ok": True, "status": result.value})

    @app.delete("/hosts/{host_id}/models/{name:path}", response_class=JSONResponse)
    async def delete_model(host_id: str, name: str) -> JSONResponse:
        result = await registry.delete_model(host_id, name)
        return JSONResponse({"ok": True, "status": result.value})

    @app.get("/models", response_class=JSONResponse)
    async def list_models() -> JSONResponse:
        return JSONResponse({"models": registry.available_models()})

    # -- scanning ---------------------------------------------------------

    def _scan_state() -> Dict[str, Any]:
        if scanner.last_result is not None and not scanner.scanning:
            return scanner.last_result.to_dict()
        return {"state": scanner.state.value, "hosts": []}

    @app.post("/scan", response_class=JSONResponse)
    async def start_scan(payload: ScanPayload) -> JSONResponse:
        host_urls = [host.url for host in registry.hosts()]
        result = await scanner.scan(host_urls, payload.custom_range)
        if result is None:
            raise RequestRejected("A scan is already running.")
        return JSONResponse(result.to_dict())

    @app.get("/scan", response_class=JSONResponse)
    async def scan_state() -> JSONResponse:
        return JSONResponse(_scan_state())

    @app.post("/scan/add", response_class=JSONResponse)
    async def add_scanned(payload: HostPayload) -> JSONResponse:
        try:
            result = await orchestrator.add_scanned_host(payload.url)
        except ValueError as exc:
            raise RequestRejected(str(exc)) from None
        return JSONResponse({"ok": True, **result})

    # -- participants -----------------------------------------------------

    @app.post("/participants", response_class=JSONResponse)
    async def add_participant(payload: ParticipantPayload) -> JSONResponse:
        duplicate_of = _parse_key(payload.duplicate_of) if payload.duplicate_of else None
        ref = None
        if payload.host_id and payload.model:
            ref = ModelRef(payload.host_id, payload.model)
        participant = orchestrator.add_participant(ref, role=payload.role, duplicate_of=duplicate_of)
        return JSONResponse({"ok": True, "participant": participant.to_dict()})

    @app.delete("/participants", response_class=JSONResponse)
    async def remove_participant(payload: ParticipantKeyPayload) -> JSONResponse:
        orchestrator.remove_participant(_parse_key(payload.key))
        return JSONResponse({"ok": True})

    @app.put("/participants/role", response_class=JSONResponse)
    async def set_role(payload: RolePayload) -> JSONResponse:
        participant = orchestrator.set_role(_parse_key(payload.key), payload.role)
        return JSONResponse({"ok": True, "participant": participant.to_dict()})

    # -- messages and autonomous mode -------------------------------------

    @app.post("/messages", response_class=JSONResponse)
    async def send_message(payload: MessagePayload) -> JSONResponse:
        targets = [_parse_key(raw) for raw in payload.targets] if payload.targets is not None else None
        try:
            attachments = [Attachment.from_dict(item.model_dump()) for item in payload.attachments]
        except ValueError as exc:
            raise RequestRejected(str(exc)) from None
        request = orchestrator.submit(
            payload.text,
            attachments=attachments,
            targets=targets,
            autonomous=payload.autonomous,
        )
        if request is None:
            return JSONResponse({"ok": True, "interruption": True})
        return JSONResponse({"ok": True, "request": request.to_dict()})

    @app.post("/autonomous/start", response_class=JSONResponse)
    async def start_autonomous(payload: AutonomousPayload) -> JSONResponse:
        participants = (
            [_parse_key(raw) for raw in payload.participants]
            if payload.participants is not None
            else None
        )
        if not orchestrator.start_autonomous(seed=payload.seed, participants=participants):
            raise RequestRejected(
                "Inter-model chat needs at least two models and a message to continue from."
            )
        return JSONResponse({"ok": True})

    @app.post("/autonomous/stop", response_class=JSONResponse)
    async def stop_autonomous() -> JSONResponse:
        return JSONResponse({"ok": True, "stopped": orchestrator.stop_autonomous()})

    @app.delete("/queue/{request_id}", response_class=JSONResponse)
    async def remove_request(request_id: str) -> JSONResponse:
        orchestrator.remove_request(request_id)
        return JSONResponse({"ok": True})

    # -- sessions ---------------------------------------------------------

    @app.post("/sessions", response_class=JSONResponse)
    async def new_session() -> JSONResponse:
        session = orchestrator.new_session()
        return JSONResponse({"ok": True, "session_id": session.id})

    @app.post("/sessions/{session_id}/activate", response_class=JSONResponse)
    async def activate_session(session_id: str) -> JSONResponse:
        session = orchestrator.switch_session(session_id)
        return JSONResponse({"ok": True, "session_id": session.id})

    @app.delete("/sessions/{session_id}", response_class=JSONResponse)
    async def delete_session(session_id: str) -> JSONResponse:
        orchestrator.delete_session(session_id)
        return JSONResponse({"ok": True, "active_session_id": orchestrator.sessions.active_id})

    return app


app = create_app(DATA_DIR)

# Convenience include for uvicorn.
__all__ = ["app", "create_app"]


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=os.environ.get("MULTICHAT_HOST", "127.0.0.1"),
        port=int(os.environ.get("MULTICHAT_PORT", "8000")),
    )
