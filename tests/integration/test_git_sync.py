"""Integration tests for the git synchronizer.

Drives a real git binary against local bare repositories:
- clone / fetch / reset of the worktree
- origin URL drift and reclone
- commit / describe tags
- deploy commit and push
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from deploy_builder.adapters.git_sync import GitSync, mirror_dir
from deploy_builder.core.exceptions import GitSyncError

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed"),
]


def _git(cwd: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True, check=True)
    return result.stdout.strip()


class Upstream:
    """作業用クローン（seed）から bare リポジトリ（remote）へ push する上流リポジトリ."""

    def __init__(self, root: Path, name: str = "app") -> None:
        self.seed = root / "seed" / name
        self.remote = root / "remotes" / name
        self.seed.mkdir(parents=True)
        _git(self.seed, "init", "-q")
        _git(self.seed, "symbolic-ref", "HEAD", "refs/heads/main")
        self.commit("README.md", "hello\n", "initial")
        self.remote.parent.mkdir(parents=True, exist_ok=True)
        _git(root, "clone", "-q", "--bare", str(self.seed), str(self.remote))

    def commit(self, name: str, text: str, message: str) -> str:
        (self.seed / name).write_text(text, encoding="utf-8")
        _git(self.seed, "add", name)
        _git(self.seed, "commit", "-q", "-m", message)
        return _git(self.seed, "rev-parse", "HEAD")

    def tag(self, name: str) -> None:
        _git(self.seed, "tag", "-a", name, "-m", name)

    def push(self) -> None:
        _git(self.seed, "push", "-q", "--tags", str(self.remote), "main")


@pytest.fixture(autouse=True)
def git_identity(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("GIT_AUTHOR_NAME", "tester")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "tester@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "tester")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "tester@example.com")
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("HOME", str(tmp_path))


@pytest.fixture
def upstream(tmp_path: Path) -> Upstream:
    return Upstream(tmp_path)


@pytest.fixture
def git(tmp_path: Path) -> GitSync:
    return GitSync(prefix=f"{tmp_path / 'remotes'}/")


class TestFetchBranch:
    """ブランチ同期のテスト."""

    def test_initial_clone(self, tmp_path: Path, upstream: Upstream, git: GitSync) -> None:
        target = tmp_path / "work" / "src"

        git.fetch_branch("app", "main", target)

        assert (target / "README.md").read_text(encoding="utf-8") == "hello\n"
        assert (mirror_dir(target) / "HEAD").is_file()

    def test_idempotent(self, tmp_path: Path, upstream: Upstream, git: GitSync) -> None:
        """2回目の同期でもワークツリーは origin と一致し、ローカル変更は消える."""
        target = tmp_path / "work" / "src"
        git.fetch_branch("app", "main", target)
        (target / "README.md").write_text("local edit\n", encoding="utf-8")
        (target / "untracked").mkdir()
        (target / "untracked" / "file.txt").write_text("x", encoding="utf-8")

        git.fetch_branch("app", "main", target)

        assert (target / "README.md").read_text(encoding="utf-8") == "hello\n"
        assert not (target / "untracked").exists()
        assert git.status(target) == []

    def test_follows_new_commits(self, tmp_path: Path, upstream: Upstream, git: GitSync) -> None:
        target = tmp_path / "work" / "src"
        git.fetch_branch("app", "main", target)
        head = upstream.commit("README.md", "v2\n", "second")
        upstream.push()

        git.fetch_branch("app", "main", target)

        assert (target / "README.md").read_text(encoding="utf-8") == "v2\n"
        assert git.head_summary(target) == (head, "second")

    def test_origin_drift_reclones(self, tmp_path: Path, upstream: Upstream, git: GitSync) -> None:
        """origin の URL がずれていれば作り直す."""
        target = tmp_path / "work" / "src"
        git.fetch_branch("app", "main", target)
        _git(tmp_path, f"--git-dir={mirror_dir(target)}", "config", "remote.origin.url", "https://elsewhere.invalid/app")
        (target / "stale.txt").write_text("stale", encoding="utf-8")

        git.fetch_branch("app", "main", target)

        origin = _git(tmp_path, f"--git-dir={mirror_dir(target)}", "config", "--get", "remote.origin.url")
        assert origin == git.url("app")
        assert not (target / "stale.txt").exists()
        assert (target / "README.md").is_file()

    def test_persistent_drift_fails_after_one_reclone(
        self, tmp_path: Path, upstream: Upstream, git: GitSync, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """再クローン後も origin が一致しなければ、それ以上は繰り返さずエラー."""
        target = tmp_path / "work" / "src"
        git.fetch_branch("app", "main", target)
        clones: list[Path] = []
        clone = git._clone

        def counting_clone(url: str, mirror: Path) -> None:
            clones.append(mirror)
            clone(url, mirror)

        monkeypatch.setattr(git, "_clone", counting_clone)
        monkeypatch.setattr(git, "_origin_urls", lambda mirror: ["https://elsewhere.invalid/app"])

        with pytest.raises(GitSyncError, match="still does not match"):
            git.fetch_branch("app", "main", target)

        assert clones == [mirror_dir(target)]

    def test_unknown_branch(self, tmp_path: Path, upstream: Upstream, git: GitSync) -> None:
        with pytest.raises(GitSyncError, match="unknown branch"):
            git.fetch_branch("app", "no-such-branch", tmp_path / "work" / "src")

    def test_unknown_repository(self, tmp_path: Path, git: GitSync) -> None:
        with pytest.raises(GitSyncError, match="failed to clone"):
            git.fetch_branch("missing", "main", tmp_path / "work" / "src")


class TestTags:
    """タグ解決のテスト."""

    def test_commit_tag(self, tmp_path: Path, upstream: Upstream, git: GitSync) -> None:
        target = tmp_path / "work" / "src"
        git.fetch_branch("app", "main", target)

        head = _git(upstream.seed, "rev-parse", "HEAD")
        assert git.tag(target, "main") == head[:7]

    def test_describe_without_tags(self, tmp_path: Path, upstream: Upstream, git: GitSync) -> None:
        target = tmp_path / "work" / "src"
        git.fetch_branch("app", "main", target)

        assert git.describe(target, "main") == _git(upstream.seed, "rev-parse", "HEAD")[:7]

    def test_describe_on_tag(self, tmp_path: Path, upstream: Upstream, git: GitSync) -> None:
        """先端がタグ付きならタグ名そのもの."""
        upstream.tag("v1.0")
        upstream.push()
        target = tmp_path / "work" / "src"
        git.fetch_branch("app", "main", target)

        assert git.describe(target, "main") == "v1.0"

    def test_describe_with_depth(self, tmp_path: Path, upstream: Upstream, git: GitSync) -> None:
        """タグから N コミット先は tag-N-g<short>."""
        upstream.tag("v1.0")
        upstream.commit("a.txt", "a", "a")
        head = upstream.commit("b.txt", "b", "b")
        upstream.push()
        target = tmp_path / "work" / "src"
        git.fetch_branch("app", "main", target)

        assert git.describe(target, "main") == f"v1.0-2-g{head[:7]}"

    def test_lightweight_tags_ignored(self, tmp_path: Path, upstream: Upstream, git: GitSync) -> None:
        _git(upstream.seed, "tag", "light")
        upstream.push()
        target = tmp_path / "work" / "src"
        git.fetch_branch("app", "main", target)

        assert git.describe(target, "main") == _git(upstream.seed, "rev-parse", "HEAD")[:7]

    def test_exact_tag(self, tmp_path: Path, upstream: Upstream) -> None:
        """exact_tag 有効時は先端を直接指す注釈付きタグ名を使う."""
        upstream.tag("v2.0")
        upstream.tag("v1.9")
        upstream.push()
        git = GitSync(prefix=f"{tmp_path / 'remotes'}/", exact_tag=True)
        target = tmp_path / "work" / "src"
        git.fetch_branch("app", "main", target)

        assert git.tag(target, "main") == "v2.0"

    def test_exact_tag_falls_back_to_hash(self, tmp_path: Path, upstream: Upstream) -> None:
        upstream.tag("v1.0")
        head = upstream.commit("c.txt", "c", "c")
        upstream.push()
        git = GitSync(prefix=f"{tmp_path / 'remotes'}/", exact_tag=True)
        target = tmp_path / "work" / "src"
        git.fetch_branch("app", "main", target)

        assert git.tag(target, "main") == head[:7]


class TestDeployCommit:
    """デプロイリポジトリへの commit / push のテスト."""

    def test_commit_and_push(self, tmp_path: Path, upstream: Upstream, git: GitSync) -> None:
        target = tmp_path / "work" / "deploy"
        git.fetch_branch("app", "main", target)
        (target / "values.yaml").write_text("tag: abc1234\n", encoding="utf-8")
        (target / "README.md").unlink()

        changes = git.status(target)
        commit = git.commit_all(target, "auto-commit: app shop: team/shop: image tag abc1234")
        git.push_branch(target, "main")

        assert len(changes) == 2
        assert _git(upstream.remote, "rev-parse", "main") == commit
        log = _git(upstream.remote, "log", "-1", "--format=%an <%ae>%n%s", "main")
        assert log == "builder <builder@localhost>\nauto-commit: app shop: team/shop: image tag abc1234"
        assert _git(upstream.remote, "ls-tree", "--name-only", "main") == "values.yaml"
