"""ビルド結果の通知（Slack incoming webhook）."""

from __future__ import annotations

import json

import httpx
from loguru import logger


class SlackNotifier:
    """1メッセージを Slack hook に POST する. 送信失敗はログのみで例外は投げない."""

    def __init__(self, hook_url: str = "", transport: httpx.BaseTransport | None = None, timeout: float = 15.0) -> None:
        self.hook_url = hook_url
        self.transport = transport
        self.timeout = timeout

    def __call__(self, message: str) -> None:
        logger.info(f"notification: {message}")
        if not self.hook_url:
            return

        payload = json.dumps({"text": message})
        try:
            with httpx.Client(transport=self.transport, timeout=self.timeout) as client:
                response = client.post(self.hook_url, data={"payload": payload})
        except httpx.HTTPError as exc:
            logger.warning(f"notification failed: {exc}")
            return

        if response.status_code >= 300:
            logger.warning(f"notification rejected: {response.status_code} {response.reason_phrase}")
