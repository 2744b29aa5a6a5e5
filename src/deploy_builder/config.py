"""実行時設定."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from deploy_builder.core.models import RepoRef
from deploy_builder.core.tagging import TagMode

DEFAULT_SCRIPT_IMAGE = "alpine:3.18"
DEFAULT_KEEP_IMAGES = 5
DEFAULT_PUBLISH_TIMEOUT = 600.0


@dataclass(frozen=True)
class Settings:
    work_dir: Path = Path("work")
    apps_repo: RepoRef | None = None
    apps_file: str = "apps.yaml"
    git_prefix: str = ""
    git_allowed_prefixes: tuple[str, ...] = ()
    image_prefix: str = ""
    docker_args: tuple[str, ...] = ()
    tag_mode: TagMode = TagMode.COMMIT
    exact_tag: bool = False
    builder_url: str = ""
    slack_hook: str = ""
    webhook_secret: str = ""
    script_image: str = DEFAULT_SCRIPT_IMAGE
    keep_images: int = DEFAULT_KEEP_IMAGES
    publish_timeout: float = DEFAULT_PUBLISH_TIMEOUT

    @property
    def logs_dir(self) -> Path:
        return Path(self.work_dir) / "logs"

    @property
    def catalog_dir(self) -> Path:
        return Path(self.work_dir) / ".catalog"

    def log_path(self, run_id: str) -> Path:
        return self.logs_dir / f"{run_id}.log"

    def log_url(self, run_id: str) -> str:
        return f"{self.builder_url.rstrip('/')}/build-logs/{run_id}"

    def app_dir(self, app_name: str) -> Path:
        return Path(self.work_dir) / app_name
