"""ビルド・デプロイの実行（1マッチ = 1 BuildRun）.

ソース（と overlay）を同期してイメージをビルドし、レジストリへ publish した後、
デプロイリポジトリのマニフェストを新しいタグに書き換えて commit / push する。
各ステップは順番に実行し、最初のエラーで中断する。結果の通知は1回だけ行う。
"""

from __future__ import annotations

import os
import shutil
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from loguru import logger

from deploy_builder.adapters.docker_cli import LocalImage
from deploy_builder.config import Settings
from deploy_builder.core.exceptions import BuildError, CommandError, DeployUpdateError, GitSyncError
from deploy_builder.core.models import BuildMatch, DeployUpdate
from deploy_builder.core.tagging import ImageTag, TagResolver, TagSource
from deploy_builder.core.yaml_set import apply_yaml_set_file

RUN_LOG_FORMAT = "{time:YYYY/MM/DD HH:mm:ss!UTC} {message}"


class GitOps(TagSource, Protocol):
    def fetch_branch(self, repo: str, branch: str, target_dir: Path) -> None: ...

    def status(self, target_dir: Path) -> list[str]: ...

    def commit_all(self, target_dir: Path, message: str) -> str: ...

    def push_branch(self, target_dir: Path, branch: str) -> None: ...


class ContainerEngine(Protocol):
    def image_exists(self, reference: str) -> bool: ...

    def build(self, context_dir: Path, args: list[str]) -> None: ...

    def list_images(self, repository: str) -> list[LocalImage]: ...

    def remove_image(self, reference: str) -> None: ...

    def run_script(self, image: str, workdir: Path, script: str, env: dict[str, str]) -> None: ...


class Publisher(Protocol):
    def publish(self, reference: str, work_dir: Path) -> str: ...


@dataclass
class BuildResult:
    run_id: str
    image: str = ""
    image_tag: str = ""
    commit: str = ""
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def new_run_id() -> str:
    """時刻順にソート可能な一意の実行 ID."""
    return f"{datetime.now(UTC):%Y%m%dT%H%M%S%fZ}-{uuid4().hex[:8]}"


@contextmanager
def run_log_sink(log_path: Path, run_id: str) -> Iterator[None]:
    """run_id が束縛されたログを log_path にも書き出す（プロセスログにも残る）."""
    log_path.parent.mkdir(parents=True, exist_ok=True)
    sink_id = logger.add(
        log_path,
        format=RUN_LOG_FORMAT,
        filter=lambda record: record["extra"].get("run_id") == run_id,
    )
    try:
        with logger.contextualize(run_id=run_id):
            yield
    finally:
        logger.remove(sink_id)


def commit_message(match: BuildMatch, image_tag: str) -> str:
    return f"auto-commit: app {match.app.name}: {match.build.source}: image tag {image_tag}"


def docker_build_args(
    image: str,
    tags: ImageTag,
    match: BuildMatch,
    ssh_auth_sock: str = "",
    global_args: tuple[str, ...] = (),
) -> list[str]:
    """`docker build` の引数を組み立てる.

    追加の build-arg は 全体設定 → App → Build → BranchInfo の順にそのまま追加する（上書きはしない）。
    """
    args = [
        "build",
        "-t",
        image,
        ".",
        "--network=host",
        f"--build-arg=GIT_TAG={tags.source_tag}",
        f"--build-arg=IMAGE_TAG={tags.image_tag}",
    ]
    if ssh_auth_sock:
        args.append(f"--ssh=default={ssh_auth_sock}")
    if tags.overlay_tag:
        args.extend(["--build-arg", f"OVERLAY_TAG={tags.overlay_tag}"])
    for extra in (global_args, match.app.docker_args, match.build.docker_args, match.branch.docker_args):
        for arg in extra:
            args.extend(["--build-arg", arg])
    return args


def _skip_overlay_path(relative: str) -> bool:
    return relative.startswith(".git") or os.path.basename(relative) == ".gitignore"


def copy_overlay(overlay_dir: Path, src_dir: Path) -> list[str]:
    """overlay のファイルをソースツリーに上書きコピーする.

    相対パスとファイルモードを保持し、`.git*` で始まるパスと `.gitignore` はスキップする。
    コピーに失敗した場合は書きかけのファイルを削除して中断する。

    Returns:
        コピーした相対パスのリスト

    Raises:
        BuildError: コピーに失敗した場合
    """
    logger.info(f"- copying overlay from {overlay_dir}")
    copied: list[str] = []
    for root, dirs, files in os.walk(overlay_dir):
        dirs.sort()
        for name in sorted(files):
            source = Path(root) / name
            relative = source.relative_to(overlay_dir).as_posix()
            if _skip_overlay_path(relative) or not source.is_file():
                continue

            target = src_dir / relative
            mode = source.stat().st_mode & 0o7777
            logger.info(f"  - overlay copy: {relative} (mode: {mode:04o})")
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(source, target)
                os.chmod(target, mode)
            except OSError as exc:
                target.unlink(missing_ok=True)
                msg = f"overlay copy failed: {relative}: {exc}"
                raise BuildError(msg) from exc
            copied.append(relative)
    return copied


class BuildExecutor:
    """1件のマッチに対してビルド・publish・デプロイ更新を実行する."""

    def __init__(
        self,
        settings: Settings,
        git: GitOps,
        docker: ContainerEngine,
        publisher: Publisher,
        notify: Callable[[str], None],
    ) -> None:
        self.settings = settings
        self.git = git
        self.docker = docker
        self.publisher = publisher
        self.notify = notify
        self.tags = TagResolver(git, settings.tag_mode)

    def __call__(self, match: BuildMatch) -> BuildResult:
        return self.run(match)

    def run(self, match: BuildMatch) -> BuildResult:
        """パイプラインを実行し、成功・失敗を通知する.

        例外は送出せず BuildResult.error に格納する。
        """
        result = BuildResult(run_id=new_run_id())
        try:
            with run_log_sink(self.settings.log_path(result.run_id), result.run_id):
                try:
                    self._execute(match, result)
                except Exception as e:
                    result.error = e
                    logger.error(f"build failed: {e}")
        except OSError as e:
            result.error = e
            logger.error(f"failed to create log file: {e}")

        self.notify(self._notification(match, result))
        return result

    def _notification(self, match: BuildMatch, result: BuildResult) -> str:
        prefix = (
            f"[{result.run_id}]({self.settings.log_url(result.run_id)}) running "
            f"{match.app.name}/{match.build.source} (branch {match.branch.source})"
        )
        if result.error is not None:
            return f"{prefix} failed: {result.error}"
        return f"{prefix} successful"

    def _fetch(self, repo: str, branch: str, target_dir: Path, what: str) -> None:
        try:
            self.git.fetch_branch(repo, branch, target_dir)
        except GitSyncError as exc:
            msg = f"failed to fetch {what}: {exc}"
            raise GitSyncError(msg) from exc

    def _execute(self, match: BuildMatch, result: BuildResult) -> None:
        app, build, branch = match.app, match.build, match.branch
        trigger = f"overlay {build.overlay} branch {branch.overlay}" if match.via_overlay else f"source branch {branch.source}"
        logger.info(f"building {app.name}/{build.source} (triggered by {trigger})")
        app_dir = self.settings.app_dir(app.name)
        base_dir = app_dir / "builds" / build.source

        src_dir = base_dir / "src"
        self._fetch(build.source, branch.source, src_dir, "source")

        overlay_dir: Path | None = None
        if build.overlay:
            overlay_dir = base_dir / "overlay"
            self._fetch(build.overlay, branch.overlay, overlay_dir, "overlay")
            copy_overlay(overlay_dir, src_dir)

        try:
            tags = self.tags.resolve(src_dir, branch.source, branch.docker_tag_suffix, overlay_dir, branch.overlay)
        except GitSyncError as exc:
            msg = f"failed to get image tag: {exc}"
            raise GitSyncError(msg) from exc
        result.image_tag = tags.image_tag

        image_name = self.settings.image_prefix + build.image_name
        image = f"{image_name}:{tags.image_tag}"
        result.image = image

        # build-arg のキャッシュは当てにならないので、最終タグの有無でビルドを省略する
        if self.docker.image_exists(image):
            logger.info(f"image {image} already exists, not rebuilding.")
        else:
            args = docker_build_args(
                image, tags, match, os.environ.get("SSH_AUTH_SOCK", ""), self.settings.docker_args
            )
            try:
                self.docker.build(src_dir, args)
            except CommandError as exc:
                msg = f"image build failed: {exc}"
                raise BuildError(msg) from exc

        self.publisher.publish(image, app_dir)
        self.prune_images(image_name)

        deploy_dir = app_dir / "deploy"
        self._fetch(app.deploy, branch.deploy, deploy_dir, "deploy")

        logger.info("- updating deployment repository")
        for idx, update in enumerate(build.deploy_updates, start=1):
            self.apply_deploy_update(idx, update, deploy_dir, tags.image_tag)

        changes = self.git.status(deploy_dir)
        if not changes:
            logger.info("  `-> no changes made")
            return

        logger.info(f"  {len(changes)} changes:")
        for line in changes:
            logger.info(f"  - {line}")

        result.commit = self.git.commit_all(deploy_dir, commit_message(match, tags.image_tag))
        logger.info(f"- deploy commit: {result.commit}")
        self.git.push_branch(deploy_dir, branch.deploy)

    def apply_deploy_update(self, idx: int, update: DeployUpdate, deploy_dir: Path, image_tag: str) -> None:
        """デプロイ更新の1ステップ（script → yaml_set の順）."""
        logger.info(f"  - step {idx}")
        if update.script:
            try:
                self.docker.run_script(self.settings.script_image, deploy_dir, update.script, {"IMAGE_TAG": image_tag})
            except CommandError as exc:
                msg = f"step {idx}: script failed: {exc}"
                raise DeployUpdateError(msg) from exc
        if update.yaml_set is not None:
            apply_yaml_set_file(deploy_dir, update.yaml_set, image_tag)

    def prune_images(self, repository: str) -> list[str]:
        """同じリポジトリ名のローカルイメージを新しい順に keep_images 個だけ残す.

        失敗はログに残すだけで、ビルドは失敗扱いにしない。

        Returns:
            削除したイメージ参照のリスト
        """
        keep = self.settings.keep_images
        try:
            images = self.docker.list_images(repository)
        except (CommandError, OSError, ValueError) as exc:
            logger.warning(f"failed to list images for {repository}: {exc}")
            return []

        images.sort(key=lambda image: image.created)
        removed: list[str] = []
        for image in images[: max(len(images) - keep, 0)]:
            try:
                self.docker.remove_image(image.reference)
            except (CommandError, OSError) as exc:
                logger.warning(f"failed to remove image {image.reference}: {exc}")
                continue
            logger.info(f"- removed old image {image.reference}")
            removed.append(image.reference)
        return removed
