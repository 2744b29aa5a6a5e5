"""トリガーのディスパッチ.

(リポジトリ, ブランチ) のイベントをカタログと照合し、マッチした BranchInfo ごとに
ビルドを1回ずつ実行する。カタログのリロードとディスパッチ〜ビルドの一連は
プロセス全体で1つのロックで直列化される。
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from loguru import logger

from .catalog import CatalogStore
from .models import BuildMatch, Catalog

RunBuild = Callable[[BuildMatch], object]


def match_builds(catalog: Catalog, repo: str, branch: str) -> list[BuildMatch]:
    """カタログのスナップショットからイベントにマッチするビルドを列挙する.

    Build ごとに source 一致を先に判定し、source が一致した場合は overlay 側は
    見ない（source と overlay が同じリポジトリでも二重にマッチしない）。

    Args:
        catalog: カタログのスナップショット
        repo: 正規化済みのリポジトリ ID
        branch: ブランチ名

    Returns:
        マッチしたビルドのリスト（カタログ順）
    """
    matches: list[BuildMatch] = []
    for app in catalog.apps:
        for build in app.builds:
            if repo == build.source:
                for info in build.branches:
                    if info.source == branch:
                        logger.info(f"- matched build {app.name} repo {build.source}, branch {branch}")
                        matches.append(BuildMatch(app=app, build=build, branch=info))
            elif build.overlay and repo == build.overlay:
                for info in build.branches:
                    if info.overlay == branch:
                        logger.info(
                            f"- matched build {app.name} repo {build.source} via overlay ({build.overlay}), branch {branch}"
                        )
                        matches.append(BuildMatch(app=app, build=build, branch=info, via_overlay=True))
    return matches


@dataclass(frozen=True)
class RepoPrefixes:
    """トリガー URL から取り除くプレフィックス."""

    git_prefix: str = ""
    allowed: tuple[str, ...] = ()

    def cut(self, url: str) -> str | None:
        """許可されたプレフィックスを取り除いたリポジトリ ID（許可外なら None）."""
        for prefix in (self.git_prefix, *self.allowed):
            if url.startswith(prefix):
                repo = url[len(prefix) :]
                return repo.removesuffix(".git")
        return None


class Dispatcher:
    """カタログの保持とトリガーの直列実行を担う."""

    def __init__(self, store: CatalogStore, run_build: RunBuild, prefixes: RepoPrefixes | None = None) -> None:
        self.store = store
        self.run_build = run_build
        self.prefixes = prefixes or RepoPrefixes()
        self._lock = threading.Lock()

    def reload(self) -> Catalog:
        with self._lock:
            return self.store.reload()

    def trigger(self, repo: str, branch: str) -> list[BuildMatch]:
        """イベントにマッチしたビルドを順番に実行する.

        カタログ自身のリポジトリ・ブランチへのイベントなら、マッチングの前に
        カタログを同期的にリロードする。個々のビルドの失敗は次のビルドを止めない。

        Returns:
            実行したマッチのリスト
        """
        with self._lock:
            if self.store.is_source(repo, branch):
                self.store.reload()
            catalog = self.store.current()
            matches = match_builds(catalog, repo, branch)
            self._run_all(matches)
            return matches

    def _run_all(self, matches: Iterable[BuildMatch]) -> None:
        for match in matches:
            try:
                self.run_build(match)
            except Exception as e:
                # 1件の失敗で残りのビルドは止めない
                logger.error(f"build {match.app.name}/{match.build.source} aborted: {e}")

    def trigger_from_url(self, url: str, branch: str) -> bool:
        """URL とブランチからトリガーする.

        Returns:
            受理した場合 True（プレフィックスが許可外、またはカタログが参照しない
            リポジトリなら False）
        """
        logger.info(f"trigger from URL: {url}")
        repo = self.prefixes.cut(url)
        if repo is None:
            logger.info("trigger ignored: prefix not allowed")
            return False

        catalog = self.store.current()
        if not (catalog.references(repo) or self.store.source is not None and repo == self.store.source.repo):
            logger.info(f"trigger ignored: {repo} is not referenced by the catalog")
            return False

        logger.info(f"trigger: {repo} branch {branch}")
        self.trigger(repo, branch)
        return True
