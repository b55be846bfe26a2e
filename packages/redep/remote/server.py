"""
redep server - Listens for deploy triggers and runs the deployment command.

Accepts WebSocket connections, verifies the HMAC proof of the single
request each connection carries, runs the configured command and sends the
signed result back before closing.

Rejections are generic on the wire; the reason is only logged here.
"""

import json
import asyncio
import logging
from pathlib import Path
from typing import Any

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
import uvicorn

from ..config import ServerSettings
from ..exceptions import ConfigurationError, ProtocolError
from ..shared.crypto import MAX_MESSAGE_AGE, get_timestamp, sign_message, verify_message
from ..shared.protocol import (
    MessageType,
    ErrorCode,
    DeploymentRequest,
    ErrorResponse,
)
from .executor import CommandExecutor

logger = logging.getLogger(__name__)

# Close code for rejected connections (RFC 6455 policy violation)
POLICY_VIOLATION = 1008


class RequestLog:
    """Remembers request ids inside the freshness window to refuse replays."""

    def __init__(self, window: int = MAX_MESSAGE_AGE):
        self.window = window
        self._seen: dict[str, int] = {}

    def _prune(self, now: int):
        expired = [rid for rid, issued_at in self._seen.items() if now - issued_at > self.window]
        for rid in expired:
            del self._seen[rid]

    def check_and_add(self, request_id: str, issued_at: int) -> bool:
        """Record a request id. Returns False if it was already seen."""
        self._prune(get_timestamp())
        if request_id in self._seen:
            return False
        self._seen[request_id] = issued_at
        return True


def create_app(settings: ServerSettings, executor: CommandExecutor | None = None) -> FastAPI:
    """Create the FastAPI app serving deploy triggers.

    Args:
        settings: Validated server settings (secret, command, working dir)
        executor: Executor to use; one is built from settings when omitted

    Returns:
        Configured FastAPI instance
    """
    if executor is None:
        executor = CommandExecutor(
            timeout=settings.command_timeout,
            max_output_bytes=settings.max_output_bytes,
        )
    request_log = RequestLog()

    app = FastAPI(
        title="redep",
        description="Remote deployment trigger server"
    )
    app.state.settings = settings
    app.state.executor = executor

    async def reject(websocket: WebSocket, code: ErrorCode):
        try:
            await websocket.send_text(json.dumps(ErrorResponse.for_code(code).to_message()))
            await websocket.close(code=POLICY_VIOLATION)
        except Exception as e:
            logger.debug(f"Could not deliver rejection: {e}")

    def parse_request(data: str | None) -> DeploymentRequest:
        if not isinstance(data, str):
            raise ProtocolError("Expected a text frame")
        try:
            message = json.loads(data)
        except json.JSONDecodeError as e:
            raise ProtocolError(f"Invalid JSON: {e}") from e
        return DeploymentRequest.from_message(message)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """WebSocket endpoint for deploy clients."""
        await websocket.accept()
        client_info = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "unknown"
        logger.info(f"Client connected: {client_info}")

        # Handshake: the signed request must arrive inside the window
        try:
            data = await asyncio.wait_for(
                websocket.receive_text(),
                timeout=settings.handshake_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"No request from {client_info} within {settings.handshake_timeout}s")
            await reject(websocket, ErrorCode.HANDSHAKE_TIMEOUT)
            return
        except WebSocketDisconnect:
            logger.info(f"Client disconnected before sending a request: {client_info}")
            return
        except KeyError:
            # Binary frame where text was expected
            logger.warning(f"Non-text frame from {client_info}")
            await reject(websocket, ErrorCode.BAD_REQUEST)
            return

        try:
            request = parse_request(data)
        except ProtocolError as e:
            logger.warning(f"Malformed request from {client_info}: {e}")
            await reject(websocket, ErrorCode.BAD_REQUEST)
            return

        is_valid, error = verify_message(settings.secret_key, request.to_message())
        if not is_valid:
            logger.warning(f"Auth failed from {client_info}: {error}")
            await reject(websocket, ErrorCode.UNAUTHORIZED)
            return

        if not request_log.check_and_add(request.request_id, request.issued_at):
            logger.warning(f"Replayed request {request.request_id} from {client_info}")
            await reject(websocket, ErrorCode.UNAUTHORIZED)
            return

        logger.info(f"Deploy {request.request_id} accepted from {client_info}")

        try:
            result = await executor.execute(
                settings.working_dir,
                settings.deployment_command,
                request_id=request.request_id
            )
        except ConfigurationError as e:
            logger.error(f"Deploy {request.request_id} refused: {e}")
            await reject(websocket, ErrorCode.SERVER_ERROR)
            return

        response = sign_message(
            settings.secret_key,
            MessageType.RESULT,
            result.to_payload(),
            request_id=request.request_id
        )

        try:
            await websocket.send_text(json.dumps(response))
            await websocket.close()
        except Exception as e:
            # The command already ran; the client just cannot hear about it
            logger.warning(
                f"Client {client_info} gone before result of {request.request_id} "
                f"(exit code {result.exit_code}): {e}"
            )

    @app.get("/health")
    async def health_check() -> dict[str, Any]:
        """Health check endpoint."""
        return {"status": "ok", "service": "redep", "busy": executor.busy}

    return app


def serve_settings(settings: ServerSettings) -> None:
    """Run the server until interrupted."""
    if not Path(settings.working_dir).is_dir():
        raise ConfigurationError(
            f"Working directory does not exist or is not a directory: {settings.working_dir}",
            missing_keys=["working_dir"]
        )

    app = create_app(settings)

    logger.info("Starting redep server...")
    logger.info(f"  Host: {settings.host}")
    logger.info(f"  Port: {settings.port}")
    logger.info(f"  Working dir: {settings.working_dir}")
    logger.info(f"  WebSocket: ws://{settings.host}:{settings.port}/ws")

    uvicorn.run(app, host=settings.host, port=settings.port, log_level="warning")


def serve(
    port: int,
    secret: str,
    working_dir: str,
    deployment_command: str,
    host: str = "0.0.0.0",
    command_timeout: float | None = None,
) -> None:
    """Bind to `port` and serve deploy triggers authenticated by `secret`."""
    serve_settings(ServerSettings(
        port=port,
        host=host,
        secret_key=secret,
        working_dir=working_dir,
        deployment_command=deployment_command,
        command_timeout=command_timeout,
    ))
