from __future__ import annotations

import abc
import logging
import threading
from typing import Any, Dict, Optional

import httpx

from config import DISCORD_API_BASE_URL, DISCORD_BOT_TOKEN, DISCORD_GUILD_ID, DISCORD_TIMEOUT_SECONDS
from observability import get_logger, log_event

LOGGER = get_logger("storefront.discord")


class ChatPlatformClient(abc.ABC):
    """Bot-side operations used by fulfillment. Implementations report failure as False, never raise."""

    guild_id: Optional[str] = None

    @abc.abstractmethod
    def send_direct_message(self, destination_id: str, text: str) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    def grant_role(self, destination_id: str, role_id: str) -> bool:
        raise NotImplementedError

    def close(self) -> None:
        return None


class NullChatClient(ChatPlatformClient):
    def send_direct_message(self, destination_id: str, text: str) -> bool:
        log_event(LOGGER, logging.WARNING, "discord.disabled", action="send_direct_message", destination_id=destination_id)
        return False

    def grant_role(self, destination_id: str, role_id: str) -> bool:
        log_event(LOGGER, logging.WARNING, "discord.disabled", action="grant_role", destination_id=destination_id, role_id=role_id)
        return False


class DiscordBotClient(ChatPlatformClient):
    def __init__(
        self,
        *,
        token: str,
        guild_id: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not str(token or "").strip():
            raise ValueError("discord bot token is required")
        self.guild_id = str(guild_id or "").strip() or None
        self._client = client or httpx.Client(
            base_url=str(base_url or DISCORD_API_BASE_URL).rstrip("/"),
            timeout=float(timeout if timeout is not None else DISCORD_TIMEOUT_SECONDS),
            trust_env=False,
        )
        self._headers = {
            "Authorization": f"Bot {str(token).strip()}",
            "Content-Type": "application/json",
        }

    def _call(self, method: str, path: str, *, json_body: Optional[Dict[str, Any]] = None) -> Optional[httpx.Response]:
        try:
            resp = self._client.request(method, path, json=json_body, headers=self._headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            log_event(
                LOGGER,
                logging.WARNING,
                "discord.request_failed",
                method=method,
                path=path,
                status_code=exc.response.status_code,
                body=(exc.response.text or "")[:200],
            )
            return None
        except httpx.HTTPError as exc:
            log_event(LOGGER, logging.WARNING, "discord.request_error", method=method, path=path, error=str(exc))
            return None
        return resp

    def send_direct_message(self, destination_id: str, text: str) -> bool:
        channel_resp = self._call("POST", "/users/@me/channels", json_body={"recipient_id": str(destination_id)})
        if channel_resp is None:
            return False
        try:
            channel_id = str((channel_resp.json() or {}).get("id") or "").strip()
        except ValueError:
            channel_id = ""
        if not channel_id:
            log_event(LOGGER, logging.WARNING, "discord.dm_channel_missing", destination_id=destination_id)
            return False
        return self._call("POST", f"/channels/{channel_id}/messages", json_body={"content": text}) is not None

    def grant_role(self, destination_id: str, role_id: str) -> bool:
        if not self.guild_id:
            log_event(LOGGER, logging.WARNING, "discord.guild_missing", destination_id=destination_id, role_id=role_id)
            return False
        path = f"/guilds/{self.guild_id}/members/{destination_id}/roles/{role_id}"
        return self._call("PUT", path) is not None

    def close(self) -> None:
        self._client.close()


_CLIENT_LOCK = threading.Lock()
_CLIENT: Optional[ChatPlatformClient] = None


def get_chat_client() -> ChatPlatformClient:
    """One bot client per process; NullChatClient when no token is configured."""
    global _CLIENT
    with _CLIENT_LOCK:
        if _CLIENT is None:
            if DISCORD_BOT_TOKEN:
                _CLIENT = DiscordBotClient(token=DISCORD_BOT_TOKEN, guild_id=DISCORD_GUILD_ID)
            else:
                log_event(LOGGER, logging.WARNING, "discord.token_missing")
                _CLIENT = NullChatClient()
        return _CLIENT


def close_chat_client() -> None:
    global _CLIENT
    with _CLIENT_LOCK:
        if _CLIENT is not None:
            _CLIENT.close()
            _CLIENT = None
