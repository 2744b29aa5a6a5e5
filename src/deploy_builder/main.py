"""deploy-builder のエントリポイント.

カタログを読み込んだ後、`--trigger-git` があれば1回だけトリガーして終了し、
なければ webhook を受け付ける HTTP サーバーを起動する。
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path

import uvicorn
from loguru import logger

from deploy_builder.adapters import DockerCli, GitCredentials, GitSync, RegistryPublisher, SlackNotifier
from deploy_builder.builder import BuildExecutor
from deploy_builder.config import DEFAULT_KEEP_IMAGES, DEFAULT_PUBLISH_TIMEOUT, DEFAULT_SCRIPT_IMAGE, Settings
from deploy_builder.core.catalog import CatalogStore, RepoCatalogLoader
from deploy_builder.core.dispatch import Dispatcher, RepoPrefixes
from deploy_builder.core.models import RepoRef
from deploy_builder.core.tagging import TagMode
from deploy_builder.server import create_app


def parse_bind(bind: str) -> tuple[str, int]:
    """`host:port` / `:port` を (host, port) に分解する（host 省略時は全インターフェース）."""
    host, sep, port = bind.rpartition(":")
    if not sep:
        host, port = "", bind
    return host or "0.0.0.0", int(port)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Build container images from git pushes and update deployment repositories")
    p.add_argument("--apps-repo", required=True, help="apps (catalog) repository path")
    p.add_argument("--apps-branch", default="main", help="apps repository branch")
    p.add_argument("--apps-file", default="apps.yaml", help="apps file path in repository")
    p.add_argument("--work-dir", type=Path, default=Path("work"), help="work directory")
    p.add_argument(
        "--git-prefix",
        default="",
        help='git repo prefix (ie: "git@git.myorg:", "https://git.myorg/")',
    )
    p.add_argument(
        "--git-allow-prefix",
        action="append",
        default=[],
        help="additional allowed git prefix for triggers (repeatable)",
    )
    p.add_argument("--docker-prefix", default="", help="prefix of produced docker images")
    p.add_argument(
        "--docker-arg",
        action="append",
        default=[],
        help="extra build arg for every docker build (repeatable)",
    )
    p.add_argument(
        "--tag-mode",
        choices=[mode.value for mode in TagMode],
        default=TagMode.COMMIT.value,
        help="image tag derivation",
    )
    p.add_argument("--exact-tag", action="store_true", help="prefer an annotated tag on the exact commit")
    p.add_argument("--builder-url", default="", help="public URL of this builder (for build log links)")
    p.add_argument("--slack-hook", default=os.environ.get("SLACK_HOOK", ""), help="Slack notification hook")
    p.add_argument(
        "--webhook-secret",
        default=os.environ.get("WEBHOOK_SECRET", ""),
        help="shared webhook secret (default: $WEBHOOK_SECRET)",
    )
    p.add_argument("--script-image", default=DEFAULT_SCRIPT_IMAGE, help="image running deploy update scripts")
    p.add_argument("--keep-images", type=int, default=DEFAULT_KEEP_IMAGES, help="local images kept per repository")
    p.add_argument(
        "--publish-timeout",
        type=float,
        default=DEFAULT_PUBLISH_TIMEOUT,
        help="timeout in seconds for a whole image publish",
    )
    p.add_argument("--bind", default=":80", help="HTTP bind for triggers")
    p.add_argument("--trigger-git", default="", help="run a single trigger for this git URL, then exit")
    p.add_argument("--trigger-branch", default="main", help="branch of the single trigger")
    return p


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(
        work_dir=args.work_dir,
        apps_repo=RepoRef(repo=args.apps_repo, branch=args.apps_branch),
        apps_file=args.apps_file,
        git_prefix=args.git_prefix,
        git_allowed_prefixes=tuple(args.git_allow_prefix),
        image_prefix=args.docker_prefix,
        docker_args=tuple(args.docker_arg),
        tag_mode=TagMode(args.tag_mode),
        exact_tag=args.exact_tag,
        builder_url=args.builder_url,
        slack_hook=args.slack_hook,
        webhook_secret=args.webhook_secret,
        script_image=args.script_image,
        keep_images=args.keep_images,
        publish_timeout=args.publish_timeout,
    )


def create_dispatcher(settings: Settings, credentials: GitCredentials) -> Dispatcher:
    """設定からアダプタ・executor・カタログを組み立てる."""
    git = GitSync(prefix=settings.git_prefix, credentials=credentials, exact_tag=settings.exact_tag)
    docker = DockerCli()
    publisher = RegistryPublisher(docker, timeout=settings.publish_timeout)
    executor = BuildExecutor(settings, git, docker, publisher, SlackNotifier(settings.slack_hook))

    loader = RepoCatalogLoader(git, settings.apps_repo, settings.apps_file, settings.catalog_dir)
    store = CatalogStore(loader, source=settings.apps_repo)
    prefixes = RepoPrefixes(git_prefix=settings.git_prefix, allowed=settings.git_allowed_prefixes)
    return Dispatcher(store, executor, prefixes)


def main() -> None:
    args = build_parser().parse_args()
    settings = settings_from_args(args)

    credentials = GitCredentials.from_env()
    if not credentials.configured:
        logger.warning("no git authentication defined (env GIT_TOKEN or GIT_USER and GIT_PASSWORD)")

    settings.work_dir.mkdir(parents=True, exist_ok=True)
    dispatcher = create_dispatcher(settings, credentials)
    dispatcher.reload()

    if args.trigger_git:
        dispatcher.trigger_from_url(args.trigger_git, args.trigger_branch)
        return

    host, port = parse_bind(args.bind)
    logger.info(f"listening on {args.bind}")
    uvicorn.run(create_app(dispatcher, settings), host=host, port=port)


if __name__ == "__main__":
    main()
