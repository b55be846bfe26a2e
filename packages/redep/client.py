"""Deploy client for redep - triggers a deployment on a redep server."""

import json
import asyncio
import logging
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from .exceptions import (
    AuthError,
    ConnectionFailedError,
    ProtocolError,
    RemoteServerError,
)
from .shared.crypto import sign_message, verify_message
from .shared.protocol import (
    MessageType,
    ErrorCode,
    DeploymentResult,
    ErrorResponse,
)

logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT = 600.0  # deployments can take a while

_SCHEME_MAP = {"http": "ws", "https": "wss", "ws": "ws", "wss": "wss"}


def to_websocket_url(server_url: str) -> str:
    """Turn a configured server URL into the server's websocket endpoint.

    Examples:
        http://example.com:3000   -> ws://example.com:3000/ws
        https://deploy.example.com -> wss://deploy.example.com/ws
        10.0.0.5:3000             -> ws://10.0.0.5:3000/ws
    """
    url = server_url.strip()
    if "://" not in url:
        url = f"http://{url}"

    parts = urlsplit(url)
    scheme = _SCHEME_MAP.get(parts.scheme.lower())
    if scheme is None:
        raise ConnectionFailedError(f"Unsupported URL scheme: {parts.scheme}", url=server_url)
    if not parts.netloc:
        raise ConnectionFailedError(f"Invalid server URL: {server_url}", url=server_url)

    path = parts.path if parts.path not in ("", "/") else "/ws"
    return urlunsplit((scheme, parts.netloc, path, parts.query, ""))


class DeployClient:
    """Client for triggering deployments on a redep server.

    Each trigger uses its own connection: the server answers one request
    and then closes.
    """

    def __init__(
        self,
        server_url: str,
        shared_secret: str,
        timeout: float = DEFAULT_TIMEOUT
    ):
        """Initialize deploy client.

        Args:
            server_url: Server URL (http(s)://, ws(s):// or host:port)
            shared_secret: Shared secret for HMAC proofs
            timeout: Maximum seconds for connect + deployment + response
        """
        self.server_url = server_url
        self.shared_secret = shared_secret
        self.timeout = timeout
        self.ws_url = to_websocket_url(server_url)

    async def trigger(self) -> DeploymentResult:
        """Trigger the server's deployment command and wait for its result.

        Returns:
            DeploymentResult produced by the server for this request

        Raises:
            AuthError: If the server rejects the proof or the result's proof is invalid
            ConnectionFailedError: If the server is unreachable or the round trip times out
            ProtocolError: If a message does not match the expected schema
            RemoteServerError: If the server could not run the deployment
        """
        message = sign_message(self.shared_secret, MessageType.DEPLOY, {})
        request_id = message["request_id"]
        logger.debug(f"Sending deploy {request_id} to {self.ws_url}")

        try:
            response = await asyncio.wait_for(
                self._round_trip(message),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            raise ConnectionFailedError(
                f"No response from {self.ws_url} within {self.timeout}s",
                url=self.ws_url
            )

        return self._parse_response(response, request_id)

    async def _round_trip(self, message: dict[str, Any]) -> Any:
        try:
            # Results carry up to two capped output streams, so no frame size limit
            async with websockets.connect(self.ws_url, max_size=None) as websocket:
                await websocket.send(json.dumps(message))
                response_text = await websocket.recv()
        except InvalidURI as e:
            raise ConnectionFailedError(f"Invalid server URL {self.ws_url}: {e}", url=self.ws_url)
        except (OSError, InvalidHandshake) as e:
            raise ConnectionFailedError(f"Failed to connect to {self.ws_url}: {e}", url=self.ws_url)
        except ConnectionClosed as e:
            raise ConnectionFailedError(
                f"Connection to {self.ws_url} closed before a response: {e}",
                url=self.ws_url
            )

        try:
            return json.loads(response_text)
        except (json.JSONDecodeError, TypeError) as e:
            raise ProtocolError(f"Server sent invalid JSON: {e}")

    def _parse_response(self, response: Any, request_id: str) -> DeploymentResult:
        if not isinstance(response, dict):
            raise ProtocolError("Server response is not a JSON object")

        msg_type = response.get("type")

        if msg_type == MessageType.ERROR:
            error = ErrorResponse.from_payload(response.get("payload", {}))
            if error.code == ErrorCode.UNAUTHORIZED:
                raise AuthError(f"Server rejected the request: {error.error}")
            if error.code == ErrorCode.BAD_REQUEST:
                raise ProtocolError(f"Server rejected the request: {error.error}")
            if error.code == ErrorCode.HANDSHAKE_TIMEOUT:
                raise ConnectionFailedError(f"Handshake timed out: {error.error}", url=self.ws_url)
            raise RemoteServerError(f"Remote error: {error.error} ({error.code})", code=error.code)

        if msg_type != MessageType.RESULT:
            raise ProtocolError(f"Unexpected message type: {msg_type!r}")

        if not isinstance(response.get("payload"), dict):
            raise ProtocolError("Result payload must be an object")

        is_valid, error = verify_message(self.shared_secret, response)
        if not is_valid:
            raise AuthError(f"Invalid result proof: {error}")

        if response.get("request_id") != request_id:
            raise ProtocolError(
                f"Result is for request {response.get('request_id')!r}, expected {request_id!r}"
            )

        result = DeploymentResult.from_payload(response["payload"])
        if result.request_id != request_id:
            raise ProtocolError("Result payload does not match the request")
        return result


async def trigger_async(
    server_url: str,
    secret: str,
    timeout: float = DEFAULT_TIMEOUT
) -> DeploymentResult:
    return await DeployClient(server_url, secret, timeout=timeout).trigger()


def trigger(
    server_url: str,
    secret: str,
    timeout: float = DEFAULT_TIMEOUT
) -> DeploymentResult:
    """Synchronous wrapper for a deploy trigger."""
    return asyncio.run(trigger_async(server_url, secret, timeout=timeout))
