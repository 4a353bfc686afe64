"""Feishu/Lark channel: REST API over httpx, inbound events over a FastAPI webhook."""

from __future__ import annotations

import asyncio
import contextlib
import json
import mimetypes
import time
from collections import OrderedDict
from pathlib import Path
from typing import Any

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from loguru import logger

from ocbridge.agent.formatter import split_message
from ocbridge.bus.events import OutboundMessage
from ocbridge.bus.queue import MessageBus
from ocbridge.channels.base import BaseChannel
from ocbridge.config.schema import FeishuConfig
from ocbridge.utils.helpers import ensure_dir

MAX_TEXT_LEN = 4000
IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp"}
_SEEN_EVENTS_MAX = 2048
_TOKEN_REFRESH_MARGIN_S = 60


class FeishuAPIError(RuntimeError):
    """Raised when the Feishu open API returns a non-zero code."""


def guess_upload_file_type(file_name: str) -> str:
    ext = Path(file_name).suffix.lower()
    if ext == ".opus":
        return "opus"
    if ext == ".mp4":
        return "mp4"
    if ext == ".pdf":
        return "pdf"
    if ext in (".doc", ".docx"):
        return "doc"
    if ext in (".xls", ".xlsx", ".csv"):
        return "xls"
    if ext in (".ppt", ".pptx"):
        return "ppt"
    return "stream"


def flatten_post(content: dict[str, Any]) -> str:
    """Extract plain text from a rich-text `post` message body."""
    body = content
    if "content" not in body:
        # Localised form: {"zh_cn": {...}} or {"en_us": {...}}
        body = next((v for v in content.values() if isinstance(v, dict)), {})
    parts: list[str] = []
    title = str(body.get("title") or "").strip()
    if title:
        parts.append(title)
    for paragraph in body.get("content") or []:
        if not isinstance(paragraph, list):
            continue
        pieces: list[str] = []
        for node in paragraph:
            if not isinstance(node, dict):
                continue
            tag = node.get("tag")
            if tag in ("text", "a"):
                pieces.append(str(node.get("text") or ""))
            elif tag == "at":
                pieces.append(f"@{node.get('user_name') or node.get('user_id') or ''}")
            elif tag == "code_block":
                pieces.append(f"```\n{node.get('text') or ''}\n```")
        line = "".join(pieces).strip()
        if line:
            parts.append(line)
    return "\n".join(parts)


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signals to the CLI."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class FeishuChannel(BaseChannel):
    """
    Feishu bot channel.

    Receives `im.message.receive_v1` events on a webhook and talks to the
    open API with a cached tenant access token.
    """

    name = "feishu"

    def __init__(
        self,
        config: FeishuConfig,
        bus: MessageBus,
        http: httpx.AsyncClient | None = None,
    ):
        super().__init__(config, bus)
        self.config: FeishuConfig = config
        self._http = http
        self._owns_http = http is None
        self._token = ""
        self._token_expires_at = 0.0
        self._seen_events: OrderedDict[str, None] = OrderedDict()
        self._server: _EmbeddedServer | None = None
        self._server_task: asyncio.Task | None = None
        self.bound_port: int = int(config.webhook_port)
        self.app = self._build_app()

    # Lifecycle

    async def start(self) -> None:
        if not self.config.app_id or not self.config.app_secret:
            raise ValueError("feishu.app_id and feishu.app_secret are required")
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.config.request_timeout_s)
            self._owns_http = True

        server_config = uvicorn.Config(
            self.app,
            host=self.config.webhook_host,
            port=self.config.webhook_port,
            log_level="warning",
            lifespan="off",
        )
        self._server = _EmbeddedServer(server_config)
        self._server_task = asyncio.create_task(self._server.serve())
        for _ in range(100):
            if self._server.started or self._server_task.done():
                break
            await asyncio.sleep(0.05)
        if self._server_task.done():
            # Surface bind errors and similar startup failures.
            await self._server_task
            raise RuntimeError("Feishu webhook server exited during startup")

        servers = getattr(self._server, "servers", None) or []
        if servers and servers[0].sockets:
            self.bound_port = int(servers[0].sockets[0].getsockname()[1])
        self._running = True
        logger.info(
            f"Feishu webhook listening on {self.config.webhook_host}:{self.bound_port}"
            f"{self.config.webhook_path}"
        )

    async def stop(self) -> None:
        self._running = False
        if self._server is not None:
            self._server.should_exit = True
        if self._server_task is not None:
            try:
                await asyncio.wait_for(self._server_task, timeout=5.0)
            except asyncio.TimeoutError:
                self._server_task.cancel()
            self._server_task = None
        self._server = None
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None
        logger.info("Feishu channel stopped")

    # Outbound

    async def send(self, msg: OutboundMessage) -> None:
        """Send a message through the Feishu open API."""
        if not self._http:
            logger.warning("Feishu HTTP client not initialized")
            return

        try:
            if msg.card:
                try:
                    await self.send_card(msg.chat_id, msg.card)
                except Exception as e:
                    logger.warning(f"Card delivery failed, falling back to text: {e}")
                    await self.send_text(msg.chat_id, msg.content)
            elif (msg.content or "").strip():
                await self.send_text(msg.chat_id, msg.content)

            for ref in msg.media:
                await self._send_media(msg.chat_id, ref)
        except Exception as e:
            logger.error(f"Error sending Feishu message to {msg.chat_id}: {e}")

    async def send_text(self, chat_id: str, text: str) -> None:
        for chunk in split_message(text, MAX_TEXT_LEN):
            if chunk.strip():
                await self._create_message(chat_id, "text", {"text": chunk})

    async def send_card(self, chat_id: str, card: dict[str, Any]) -> None:
        await self._create_message(chat_id, "interactive", card)

    async def send_image(self, chat_id: str, path: Path) -> None:
        with path.open("rb") as f:
            data = await self._api(
                "POST",
                "/im/v1/images",
                data={"image_type": "message"},
                files={"image": (path.name, f, mimetypes.guess_type(path.name)[0] or "image/png")},
            )
        image_key = (data.get("data") or {}).get("image_key")
        if not image_key:
            raise FeishuAPIError("Image upload succeeded but no image_key returned")
        await self._create_message(chat_id, "image", {"image_key": image_key})

    async def send_file(self, chat_id: str, path: Path) -> None:
        with path.open("rb") as f:
            data = await self._api(
                "POST",
                "/im/v1/files",
                data={"file_type": guess_upload_file_type(path.name), "file_name": path.name},
                files={"file": (path.name, f, "application/octet-stream")},
            )
        file_key = (data.get("data") or {}).get("file_key")
        if not file_key:
            raise FeishuAPIError("File upload succeeded but no file_key returned")
        await self._create_message(chat_id, "file", {"file_key": file_key})

    async def download_file(
        self, message_id: str, file_key: str, target_path: Path, resource_type: str = "file"
    ) -> Path:
        if not self._http:
            raise RuntimeError("Feishu HTTP client not initialized")
        headers = {"Authorization": f"Bearer {await self._tenant_token()}"}
        url = f"{self.config.api_base}/im/v1/messages/{message_id}/resources/{file_key}"
        ensure_dir(target_path.parent)
        async with self._http.stream(
            "GET", url, headers=headers, params={"type": resource_type}
        ) as response:
            response.raise_for_status()
            with target_path.open("wb") as f:
                async for chunk in response.aiter_bytes():
                    f.write(chunk)
        logger.info(f"Downloaded Feishu resource {file_key} to {target_path}")
        return target_path

    async def _send_media(self, chat_id: str, ref: str) -> None:
        if ref.startswith(("http://", "https://")):
            await self.send_text(chat_id, ref)
            return
        path = Path(ref).expanduser()
        if not path.is_file():
            await self.send_text(chat_id, f"[media not found: {ref}]")
            return
        if path.suffix.lower() in IMAGE_SUFFIXES:
            await self.send_image(chat_id, path)
        else:
            await self.send_file(chat_id, path)

    async def _create_message(self, chat_id: str, msg_type: str, content: dict[str, Any]) -> None:
        await self._api(
            "POST",
            "/im/v1/messages",
            params={"receive_id_type": "chat_id"},
            json={
                "receive_id": chat_id,
                "msg_type": msg_type,
                "content": json.dumps(content, ensure_ascii=False),
            },
        )

    async def _api(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        if not self._http:
            raise RuntimeError("Feishu HTTP client not initialized")
        headers = {"Authorization": f"Bearer {await self._tenant_token()}"}
        response = await self._http.request(
            method, f"{self.config.api_base}{path}", headers=headers, **kwargs
        )
        try:
            data = response.json()
        except ValueError:
            response.raise_for_status()
            raise FeishuAPIError(f"{path}: non-JSON response")
        if data.get("code", 0) != 0:
            raise FeishuAPIError(f"{path}: {data.get('msg') or data.get('code')}")
        return data

    async def _tenant_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        if not self._http:
            raise RuntimeError("Feishu HTTP client not initialized")
        response = await self._http.post(
            f"{self.config.api_base}/auth/v3/tenant_access_token/internal",
            json={"app_id": self.config.app_id, "app_secret": self.config.app_secret},
        )
        response.raise_for_status()
        data = response.json()
        if data.get("code", 0) != 0:
            raise FeishuAPIError(f"tenant_access_token: {data.get('msg')}")
        self._token = str(data.get("tenant_access_token") or "")
        expire = int(data.get("expire") or 7200)
        self._token_expires_at = time.monotonic() + max(0, expire - _TOKEN_REFRESH_MARGIN_S)
        return self._token

    # Inbound

    def _build_app(self) -> FastAPI:
        app = FastAPI(title="ocbridge feishu webhook", docs_url=None, redoc_url=None)

        @app.get("/health")
        async def health() -> PlainTextResponse:
            return PlainTextResponse("ok\n")

        @app.post(self.config.webhook_path)
        async def webhook(request: Request) -> JSONResponse:
            try:
                payload = await request.json()
            except ValueError:
                return JSONResponse({"msg": "invalid json"}, status_code=400)
            if not isinstance(payload, dict):
                return JSONResponse({"msg": "invalid payload"}, status_code=400)
            return await self._handle_webhook(payload)

        return app

    def _token_ok(self, token: Any) -> bool:
        expected = self.config.verification_token
        return not expected or token == expected

    async def _handle_webhook(self, payload: dict[str, Any]) -> JSONResponse:
        if "encrypt" in payload:
            logger.warning("Received encrypted Feishu event; disable event encryption for this app")
            return JSONResponse({"msg": "encrypted events are not supported"}, status_code=400)

        if payload.get("type") == "url_verification":
            if not self._token_ok(payload.get("token")):
                return JSONResponse({"msg": "invalid token"}, status_code=401)
            return JSONResponse({"challenge": payload.get("challenge", "")})

        header = payload.get("header") or {}
        if not self._token_ok(header.get("token")):
            logger.warning("Rejected Feishu event with invalid verification token")
            return JSONResponse({"msg": "invalid token"}, status_code=401)

        event_id = str(header.get("event_id") or "")
        if event_id:
            if event_id in self._seen_events:
                return JSONResponse({"code": 0})
            self._seen_events[event_id] = None
            while len(self._seen_events) > _SEEN_EVENTS_MAX:
                self._seen_events.popitem(last=False)

        if header.get("event_type") == "im.message.receive_v1":
            try:
                await self._on_message(payload.get("event") or {})
            except Exception as e:
                logger.error(f"Error handling Feishu message event: {e}")
        return JSONResponse({"code": 0})

    async def _on_message(self, event: dict[str, Any]) -> None:
        sender = event.get("sender") or {}
        if sender.get("sender_type") != "user":
            return
        ids = sender.get("sender_id") or {}
        sender_id = str(ids.get("user_id") or ids.get("open_id") or ids.get("union_id") or "")

        message = event.get("message") or {}
        chat_id = str(message.get("chat_id") or "")
        message_id = str(message.get("message_id") or "")
        if not sender_id or not chat_id or not message_id:
            logger.warning("Ignoring malformed Feishu message event")
            return

        message_type = str(message.get("message_type") or "text")
        raw_content = message.get("content") or ""
        try:
            content = json.loads(raw_content) if isinstance(raw_content, str) else raw_content
        except ValueError:
            content = {"text": raw_content}
        if not isinstance(content, dict):
            content = {}

        text = ""
        media: list[str] = []
        metadata: dict[str, Any] = {"message_id": message_id}
        if message_type == "text":
            text = str(content.get("text") or "")
        elif message_type == "post":
            text = flatten_post(content)
        elif message_type in ("file", "image", "media", "audio"):
            key = content.get("file_key") or content.get("image_key")
            if not key:
                logger.warning(f"Feishu {message_type} message {message_id} has no resource key")
                return
            media.append(str(key))
            metadata["file_name"] = str(content.get("file_name") or "")
            metadata["resource_type"] = "image" if message_type == "image" else "file"
        else:
            logger.debug(f"Ignoring unsupported Feishu message type: {message_type}")
            return

        mentions = [
            str(m.get("key")) for m in message.get("mentions") or [] if isinstance(m, dict) and m.get("key")
        ]
        await self._handle_message(
            sender_id=sender_id,
            chat_id=chat_id,
            content=text,
            media=media,
            metadata=metadata,
            chat_type="p2p" if message.get("chat_type") == "p2p" else "group",
            message_type=message_type,
            message_id=message_id,
            mentions=mentions,
        )
