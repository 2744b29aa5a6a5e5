"""git リポジトリの同期（bare ミラー + ワークツリー）.

ターゲットディレクトリ <dir> ごとに、bare ミラー <dir>.git とチェックアウト済みの
ワークツリー <dir> を維持する。git CLI を subprocess で呼び出す。

同期は明示的な状態遷移で行い、origin の URL がずれていた場合の再クローンは1回まで:

    NEEDS_CLONE -> NEEDS_FETCH
    NEEDS_FETCH (URL 一致) -> fetch -> clean_branch
    NEEDS_FETCH (URL 不一致) -> NEEDS_RECLONE -> NEEDS_CLONE
"""

from __future__ import annotations

import base64
import os
import shutil
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path

from loguru import logger

from deploy_builder.core.exceptions import CommandError, GitSyncError

from .process import run_captured

FETCH_REFSPEC = "+refs/heads/*:refs/remotes/origin/*"
SHORT_HASH_LEN = 7
COMMIT_AUTHOR_NAME = "builder"
COMMIT_AUTHOR_EMAIL = "builder@localhost"


class SyncState(Enum):
    NEEDS_CLONE = auto()
    NEEDS_FETCH = auto()
    NEEDS_RECLONE = auto()


@dataclass(frozen=True)
class GitCredentials:
    """git 認証情報（起動時に環境変数から1度だけ解決する）."""

    token: str = ""
    username: str = ""
    password: str = ""
    ssh_user: str = ""
    ssh_auth_sock: str = ""

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> GitCredentials:
        """GIT_TOKEN → GIT_USER/GIT_PASSWORD → GIT_SSH_USER/SSH_AUTH_SOCK の優先順で解決する."""
        env = os.environ if environ is None else environ
        if token := env.get("GIT_TOKEN", ""):
            logger.info("setting git auth from $GIT_TOKEN")
            return cls(token=token)
        user, password = env.get("GIT_USER", ""), env.get("GIT_PASSWORD", "")
        if user and password:
            logger.info("setting git auth from $GIT_USER and $GIT_PASSWORD")
            return cls(username=user, password=password)
        ssh_user, sock = env.get("GIT_SSH_USER", ""), env.get("SSH_AUTH_SOCK", "")
        if ssh_user and sock:
            logger.info("setting git auth from $GIT_SSH_USER $SSH_AUTH_SOCK")
            return cls(ssh_user=ssh_user, ssh_auth_sock=sock)
        return cls()

    @property
    def configured(self) -> bool:
        return bool(self.token or self.username or self.ssh_user)

    def auth_header(self) -> str:
        if self.token:
            return f"Authorization: Bearer {self.token}"
        if self.username:
            basic = base64.b64encode(f"{self.username}:{self.password}".encode()).decode()
            return f"Authorization: Basic {basic}"
        return ""

    def environ(self) -> dict[str, str]:
        """git プロセス用の環境変数.

        HTTP 認証ヘッダは GIT_CONFIG_* で渡す（コマンドラインやエラーメッセージに出さない）。
        """
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"
        if header := self.auth_header():
            env["GIT_CONFIG_COUNT"] = "1"
            env["GIT_CONFIG_KEY_0"] = "http.extraHeader"
            env["GIT_CONFIG_VALUE_0"] = header
        if self.ssh_user:
            env["SSH_AUTH_SOCK"] = self.ssh_auth_sock
            env["GIT_SSH_COMMAND"] = f"ssh -l {self.ssh_user}"
        return env


def mirror_dir(target_dir: Path) -> Path:
    target_dir = Path(target_dir)
    return target_dir.with_name(target_dir.name + ".git")


def remove_tree(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


class GitSync:
    """bare ミラー + ワークツリーの同期と、タグ・コミット関連の問い合わせ."""

    def __init__(
        self,
        prefix: str = "",
        credentials: GitCredentials | None = None,
        exact_tag: bool = False,
        git_binary: str = "git",
    ) -> None:
        self.prefix = prefix
        self.credentials = credentials or GitCredentials()
        self.exact_tag = exact_tag
        self.git_binary = git_binary

    def url(self, repo: str) -> str:
        return self.prefix + repo

    def _git(self, *args: str, git_dir: Path | None = None, work_tree: Path | None = None) -> list[str]:
        cmd = [self.git_binary]
        if git_dir is not None:
            cmd.append(f"--git-dir={Path(git_dir).absolute()}")
        if work_tree is not None:
            cmd.append(f"--work-tree={Path(work_tree).absolute()}")
        cmd.extend(args)
        return cmd

    def _run(
        self,
        *args: str,
        what: str,
        git_dir: Path | None = None,
        work_tree: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> str:
        run_env = self.credentials.environ()
        if env:
            run_env.update(env)
        try:
            result = run_captured(self._git(*args, git_dir=git_dir, work_tree=work_tree), cwd=work_tree, env=run_env)
        except CommandError as exc:
            msg = f"{what}: {exc}"
            raise GitSyncError(msg) from exc
        return result.stdout

    def _origin_urls(self, mirror: Path) -> list[str]:
        cmd = self._git("config", "--get-all", "remote.origin.url", git_dir=mirror)
        result = run_captured(cmd, env=self.credentials.environ(), check=False)
        # exit 1: origin に URL が設定されていない
        if result.returncode not in (0, 1):
            msg = f"failed to get remote origin: {result.stderr.strip()}"
            raise GitSyncError(msg)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def _clone(self, url: str, mirror: Path) -> None:
        mirror.parent.mkdir(parents=True, exist_ok=True)
        if mirror.exists():
            # HEAD のない中途半端なミラー
            remove_tree(mirror)
        self._run("clone", "--bare", url, str(mirror), what=f"failed to clone {url}")
        self._run("config", "remote.origin.fetch", FETCH_REFSPEC, what="failed to configure remote", git_dir=mirror)

    def fetch_branch(self, repo: str, branch: str, target_dir: Path) -> None:
        """リポジトリのブランチをターゲットディレクトリに同期する.

        Args:
            repo: リポジトリ ID（git prefix を付けて URL にする）
            branch: 同期するブランチ
            target_dir: ワークツリーのパス（ミラーは <target_dir>.git）

        Raises:
            GitSyncError: clone/fetch の失敗、再クローン後も URL が一致しない場合など
        """
        target_dir = Path(target_dir)
        mirror = mirror_dir(target_dir)
        url = self.url(repo)

        logger.info(f"- fetching {url} branch {branch} to {mirror}")

        state = SyncState.NEEDS_FETCH if (mirror / "HEAD").is_file() else SyncState.NEEDS_CLONE
        recloned = False
        while True:
            if state is SyncState.NEEDS_CLONE:
                self._clone(url, mirror)
                state = SyncState.NEEDS_FETCH
                continue

            if state is SyncState.NEEDS_RECLONE:
                if recloned:
                    msg = f"remote for origin in {mirror} still does not match {url} after reclone"
                    raise GitSyncError(msg)
                logger.warning(f"remote for origin is not {url!r}, cloning from scratch")
                remove_tree(target_dir)
                remove_tree(mirror)
                recloned = True
                state = SyncState.NEEDS_CLONE
                continue

            if url not in self._origin_urls(mirror):
                state = SyncState.NEEDS_RECLONE
                continue
            break

        self._run("fetch", "--prune", "--tags", "origin", what=f"failed to fetch {url}", git_dir=mirror)

        logger.info(f"  `-> resetting to remote branch {branch}")
        self.clean_branch(branch, target_dir)

    def resolve_branch(self, target_dir: Path, branch: str) -> str:
        """origin/<branch> のコミットハッシュを返す."""
        out = self._run(
            "rev-parse",
            "--verify",
            "--quiet",
            f"refs/remotes/origin/{branch}^{{commit}}",
            what=f"unknown branch {branch!r}",
            git_dir=mirror_dir(target_dir),
        )
        return out.strip()

    def clean_branch(self, branch: str, target_dir: Path) -> None:
        """ワークツリーを origin/<branch> に強制的に揃える.

        ローカルブランチを作成（または上書き）し、hard reset した後に
        未追跡のファイル・ディレクトリを削除する。
        """
        target_dir = Path(target_dir)
        mirror = mirror_dir(target_dir)
        target_dir.mkdir(parents=True, exist_ok=True)

        commit = self.resolve_branch(target_dir, branch)
        logger.info(f"- branch {branch} is on commit {commit}")

        self._run("checkout", "--force", "-B", branch, commit, what="failed to checkout", git_dir=mirror, work_tree=target_dir)
        self._run("reset", "--hard", commit, what="failed to reset", git_dir=mirror, work_tree=target_dir)
        self._run("clean", "-ffd", what="failed to clean", git_dir=mirror, work_tree=target_dir)

    def _annotated_tags(self, mirror: Path) -> dict[str, str]:
        """注釈付きタグの 対象コミット -> タグ名（辞書順で最大のもの）."""
        out = self._run(
            "for-each-ref",
            "--format=%(objecttype)%09%(*objecttype)%09%(*objectname)%09%(refname:short)",
            "refs/tags",
            what="failed to list tags",
            git_dir=mirror,
        )
        commits_tag: dict[str, str] = {}
        for line in out.splitlines():
            parts = line.split("\t")
            if len(parts) != 4:
                continue
            obj_type, peeled_type, peeled, name = parts
            if obj_type != "tag" or peeled_type != "commit":
                continue
            prev = commits_tag.get(peeled)
            if prev is None or prev < name:
                commits_tag[peeled] = name
        return commits_tag

    def tag(self, target_dir: Path, branch: str) -> str:
        """ブランチ先端のコミットの短縮ハッシュ（7文字）を返す.

        exact_tag が有効で、そのコミットを直接指す注釈付きタグがあればタグ名を優先する。
        """
        commit = self.resolve_branch(target_dir, branch)
        if self.exact_tag:
            name = self._annotated_tags(mirror_dir(target_dir)).get(commit)
            if name:
                return name
        return commit[:SHORT_HASH_LEN]

    def describe(self, target_dir: Path, branch: str) -> str:
        """git describe 風のバージョン文字列を返す.

        先端からコミッター時刻順に履歴を辿り、最初に見つかったタグ付きコミットまでの
        距離を depth として `tag` または `tag-<depth>-g<short>` を返す。
        タグが1つもなければ短縮ハッシュそのもの。
        """
        mirror = mirror_dir(target_dir)
        commit = self.resolve_branch(target_dir, branch)
        short = commit[:SHORT_HASH_LEN]
        commits_tag = self._annotated_tags(mirror)
        if not commits_tag:
            return short

        history = self._run("rev-list", commit, what="failed to compute git log", git_dir=mirror)
        depth = 0
        for line in history.splitlines():
            name = commits_tag.get(line.strip())
            if name is None:
                depth += 1
                continue
            if depth == 0:
                return name
            return f"{name}-{depth}-g{short}"
        return short

    def head_summary(self, target_dir: Path) -> tuple[str, str]:
        """HEAD のコミットハッシュと件名1行目."""
        out = self._run(
            "log",
            "-1",
            "--format=%H%x09%s",
            "HEAD",
            what="failed to read HEAD",
            git_dir=mirror_dir(target_dir),
            work_tree=Path(target_dir),
        )
        commit, _, subject = out.strip().partition("\t")
        return commit, subject.strip()

    def status(self, target_dir: Path) -> list[str]:
        """`git status --porcelain` の各行（変更がなければ空リスト）."""
        out = self._run(
            "status",
            "--porcelain",
            "--untracked-files=all",
            what="failed to get status",
            git_dir=mirror_dir(target_dir),
            work_tree=Path(target_dir),
        )
        return [line for line in out.splitlines() if line.strip()]

    def commit_all(self, target_dir: Path, message: str) -> str:
        """全変更（追加・削除を含む）をステージしてコミットし、コミットハッシュを返す."""
        target_dir = Path(target_dir)
        mirror = mirror_dir(target_dir)
        self._run("add", "--all", ".", what="failed to add change", git_dir=mirror, work_tree=target_dir)
        identity = {
            "GIT_AUTHOR_NAME": COMMIT_AUTHOR_NAME,
            "GIT_AUTHOR_EMAIL": COMMIT_AUTHOR_EMAIL,
            "GIT_COMMITTER_NAME": COMMIT_AUTHOR_NAME,
            "GIT_COMMITTER_EMAIL": COMMIT_AUTHOR_EMAIL,
        }
        self._run(
            "commit",
            "--no-verify",
            "-m",
            message,
            what="failed to commit on deploy",
            git_dir=mirror,
            work_tree=target_dir,
            env=identity,
        )
        return self._run("rev-parse", "HEAD", what="failed to read HEAD", git_dir=mirror).strip()

    def push_branch(self, target_dir: Path, branch: str) -> None:
        refspec = f"{branch}:{branch}"
        logger.info(f"- git push origin {refspec}")
        self._run("push", "origin", refspec, what=f"failed to push {refspec}", git_dir=mirror_dir(target_dir))
