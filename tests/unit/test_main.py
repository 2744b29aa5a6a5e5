from __future__ import annotations

from pathlib import Path

import pytest

from deploy_builder.adapters.git_sync import GitCredentials
from deploy_builder.config import Settings
from deploy_builder.core.tagging import TagMode
from deploy_builder.main import build_parser, parse_bind, settings_from_args


class TestCli:
    """CLI 引数と設定のテスト."""

    def test_defaults(self) -> None:
        args = build_parser().parse_args(["--apps-repo", "ops/apps"])
        settings = settings_from_args(args)

        assert settings.apps_repo is not None
        assert (settings.apps_repo.repo, settings.apps_repo.branch) == ("ops/apps", "main")
        assert settings.apps_file == "apps.yaml"
        assert settings.work_dir == Path("work")
        assert settings.tag_mode is TagMode.COMMIT
        assert settings.keep_images == 5
        assert args.bind == ":80"

    def test_repeatable_flags(self) -> None:
        args = build_parser().parse_args(
            [
                "--apps-repo",
                "ops/apps",
                "--git-prefix",
                "git@git.example.com:",
                "--git-allow-prefix",
                "https://git.example.com/",
                "--git-allow-prefix",
                "ssh://git@git.example.com/",
                "--docker-arg",
                "HTTP_PROXY=http://proxy:3128",
                "--tag-mode",
                "describe",
                "--exact-tag",
            ]
        )
        settings = settings_from_args(args)

        assert settings.git_allowed_prefixes == ("https://git.example.com/", "ssh://git@git.example.com/")
        assert settings.docker_args == ("HTTP_PROXY=http://proxy:3128",)
        assert settings.tag_mode is TagMode.DESCRIBE
        assert settings.exact_tag

    def test_apps_repo_required(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args([])
        assert exc_info.value.code == 2

    @pytest.mark.parametrize(
        ("bind", "expected"),
        [(":80", ("0.0.0.0", 80)), ("127.0.0.1:8080", ("127.0.0.1", 8080)), ("9000", ("0.0.0.0", 9000))],
    )
    def test_parse_bind(self, bind: str, expected: tuple[str, int]) -> None:
        assert parse_bind(bind) == expected


class TestSettings:
    def test_log_url(self) -> None:
        settings = Settings(builder_url="https://builder.example.com/")

        assert settings.log_url("abc") == "https://builder.example.com/build-logs/abc"
        assert settings.log_path("abc") == Path("work") / "logs" / "abc.log"


class TestGitCredentials:
    """環境変数からの git 認証情報の解決テスト."""

    def test_token_first(self) -> None:
        creds = GitCredentials.from_env({"GIT_TOKEN": "tok", "GIT_USER": "u", "GIT_PASSWORD": "p"})
        env = creds.environ()

        assert creds.auth_header() == "Authorization: Bearer tok"
        assert env["GIT_CONFIG_KEY_0"] == "http.extraHeader"
        assert env["GIT_CONFIG_VALUE_0"] == "Authorization: Bearer tok"

    def test_basic(self) -> None:
        creds = GitCredentials.from_env({"GIT_USER": "u", "GIT_PASSWORD": "p"})

        assert creds.auth_header() == "Authorization: Basic dTpw"

    def test_ssh_agent(self) -> None:
        creds = GitCredentials.from_env({"GIT_SSH_USER": "deploy", "SSH_AUTH_SOCK": "/run/agent.sock"})
        env = creds.environ()

        assert creds.configured
        assert creds.auth_header() == ""
        assert env["GIT_SSH_COMMAND"] == "ssh -l deploy"
        assert env["SSH_AUTH_SOCK"] == "/run/agent.sock"

    def test_nothing_configured(self) -> None:
        creds = GitCredentials.from_env({})

        assert not creds.configured
        assert creds.environ()["GIT_TERMINAL_PROMPT"] == "0"
