"""docker CLI の薄いラッパー."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from loguru import logger

from .process import run_captured, run_logged

SCRIPT_WORKDIR = "/work"


@dataclass(frozen=True)
class LocalImage:
    """ローカルにあるイメージの1タグ."""

    reference: str
    image_id: str
    created: datetime


def parse_created_at(value: str) -> datetime:
    """`docker image ls` の CreatedAt（例: "2024-05-01 10:20:30 +0200 CEST"）を解析する."""
    parts = value.split()
    if len(parts) >= 3:
        try:
            return datetime.strptime(" ".join(parts[:3]), "%Y-%m-%d %H:%M:%S %z")
        except ValueError:
            pass
    logger.warning(f"unparsable image creation time: {value!r}")
    return datetime.fromtimestamp(0, tz=UTC)


class DockerCli:
    def __init__(self, binary: str = "docker") -> None:
        self.binary = binary

    def image_exists(self, reference: str) -> bool:
        result = run_captured([self.binary, "image", "inspect", "--format", "{{.Id}}", reference], check=False)
        return result.returncode == 0

    def build(self, context_dir: Path, args: list[str]) -> None:
        """`docker <args>` をビルドコンテキストで実行する（args は "build" から始まる）."""
        run_logged([self.binary, *args], cwd=context_dir)

    def save(self, reference: str, output: Path, timeout: float | None = None) -> None:
        run_logged([self.binary, "save", "--output", str(output), reference], timeout=timeout)

    def list_images(self, repository: str) -> list[LocalImage]:
        """リポジトリ名が一致するローカルイメージのタグ一覧."""
        result = run_captured([self.binary, "image", "ls", "--format", "{{json .}}", repository])
        images: list[LocalImage] = []
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            row = json.loads(line)
            if row.get("Repository") != repository or row.get("Tag") in (None, "", "<none>"):
                continue
            images.append(
                LocalImage(
                    reference=f"{row['Repository']}:{row['Tag']}",
                    image_id=row.get("ID", ""),
                    created=parse_created_at(row.get("CreatedAt", "")),
                )
            )
        return images

    def remove_image(self, reference: str) -> None:
        run_captured([self.binary, "image", "rm", reference])

    def run_script(self, image: str, workdir: Path, script: str, env: dict[str, str]) -> None:
        """使い捨てコンテナでスクリプトを実行する.

        workdir を /work にバインドマウントし、env の各変数をコンテナに渡す。

        Raises:
            CommandError: スクリプトが非ゼロ終了した場合
        """
        workdir = Path(workdir).resolve()
        args = [self.binary, "run", "--rm", "-v", f"{workdir}:{SCRIPT_WORKDIR}", "-w", SCRIPT_WORKDIR]
        for name in env:
            args.extend(["-e", name])
        args.extend(["--entrypoint", "/bin/ash", image, "-c", script])
        run_logged(args, cwd=workdir, env={**os.environ, **env})
