"""HTTP トリガー（webhook）とビルドログの配信."""

from __future__ import annotations

import re
import secrets
import threading

from fastapi import FastAPI, HTTPException
from fastapi.responses import FileResponse
from loguru import logger
from pydantic import BaseModel, Field

from deploy_builder.config import Settings
from deploy_builder.core.dispatch import Dispatcher

BRANCH_REF_PREFIX = "refs/heads/"
RUN_ID_PATTERN = re.compile(r"^[0-9A-Za-z][0-9A-Za-z_-]*$")


class WebhookRepository(BaseModel):
    full_name: str = ""
    clone_url: str = ""
    ssh_url: str = ""


class WebhookPayload(BaseModel):
    secret: str = ""
    ref: str = ""
    repository: WebhookRepository = Field(default_factory=WebhookRepository)


def trigger_urls(dispatcher: Dispatcher, urls: list[str], branch: str) -> None:
    """URL を順に試し、最初に受理されたところで止める."""
    for url in urls:
        if not url:
            continue
        if dispatcher.trigger_from_url(url, branch):
            return


def create_app(dispatcher: Dispatcher, settings: Settings) -> FastAPI:
    app = FastAPI(title="deploy-builder")

    @app.post("/webhook")
    def webhook(payload: WebhookPayload) -> dict[str, str]:
        if settings.webhook_secret and not secrets.compare_digest(payload.secret, settings.webhook_secret):
            raise HTTPException(status_code=401, detail="Unauthorized")

        if not payload.ref.startswith(BRANCH_REF_PREFIX):
            logger.info(f"webhook ignored: ref is not a branch: {payload.ref}")
            return {"status": "ignored"}

        branch = payload.ref[len(BRANCH_REF_PREFIX) :]
        urls = [payload.repository.clone_url, payload.repository.ssh_url]
        # ビルドはリクエスト処理のスレッドプールとは別のスレッドで待たせる
        worker = threading.Thread(target=trigger_urls, args=(dispatcher, urls, branch), name=f"webhook-{branch}", daemon=True)
        worker.start()
        return {"status": "accepted"}

    @app.get("/build-logs/{run_id}")
    def build_log(run_id: str) -> FileResponse:
        if not RUN_ID_PATTERN.match(run_id):
            raise HTTPException(status_code=404, detail="Not Found")
        log_path = settings.log_path(run_id)
        if not log_path.is_file():
            raise HTTPException(status_code=404, detail="Not Found")
        return FileResponse(log_path, media_type="text/plain")

    return app
