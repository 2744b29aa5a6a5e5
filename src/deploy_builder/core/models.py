"""カタログのデータモデル.

apps.yaml から読み込まれる App / Build / BranchInfo / DeployUpdate を
イミュータブルな dataclass として表現します。デコードは strict で、
未知のキーは CatalogError になります。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .exceptions import CatalogError


def _check_keys(data: Any, allowed: set[str], where: str) -> dict[str, Any]:
    if data is None:
        data = {}
    if not isinstance(data, dict):
        msg = f"{where}: expected a mapping, got {type(data).__name__}"
        raise CatalogError(msg)
    unknown = sorted(str(k) for k in data if k not in allowed)
    if unknown:
        msg = f"{where}: unknown field(s) {', '.join(unknown)}"
        raise CatalogError(msg)
    return data


def _str(data: dict[str, Any], key: str, where: str, default: str = "") -> str:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        msg = f"{where}.{key}: expected a string, got {type(value).__name__}"
        raise CatalogError(msg)
    return str(value)


def _str_list(data: dict[str, Any], key: str, where: str) -> tuple[str, ...]:
    value = data.get(key)
    if value is None:
        return ()
    if not isinstance(value, list):
        msg = f"{where}.{key}: expected a list, got {type(value).__name__}"
        raise CatalogError(msg)
    return tuple(str(v) for v in value)


def _list(data: dict[str, Any], key: str, where: str) -> list[Any]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        msg = f"{where}.{key}: expected a list, got {type(value).__name__}"
        raise CatalogError(msg)
    return value


@dataclass(frozen=True)
class RepoRef:
    """リポジトリパスとブランチの組（カタログ自身の取得元）."""

    repo: str
    branch: str = "main"


@dataclass(frozen=True)
class YamlSet:
    """デプロイリポジトリ内 YAML ファイルへの値設定操作."""

    file: str
    path: str
    value: str

    @classmethod
    def from_dict(cls, data: Any, where: str = "yaml_set") -> YamlSet:
        data = _check_keys(data, {"file", "path", "value"}, where)
        file = _str(data, "file", where)
        path = _str(data, "path", where)
        if not file or not path:
            msg = f"{where}: 'file' and 'path' are required"
            raise CatalogError(msg)
        return cls(file=file, path=path, value=_str(data, "value", where))


@dataclass(frozen=True)
class DeployUpdate:
    """デプロイ更新の1ステップ.

    script と yaml_set はどちらも任意で、両方ある場合は script → yaml_set の順に実行する。
    """

    script: str = ""
    yaml_set: YamlSet | None = None

    @classmethod
    def from_dict(cls, data: Any, where: str = "deploy_update") -> DeployUpdate:
        data = _check_keys(data, {"script", "yaml_set"}, where)
        yaml_set = None
        if data.get("yaml_set") is not None:
            yaml_set = YamlSet.from_dict(data["yaml_set"], f"{where}.yaml_set")
        return cls(script=_str(data, "script", where), yaml_set=yaml_set)


@dataclass(frozen=True)
class BranchInfo:
    """トリガー対象となる (source, overlay, deploy) ブランチの組."""

    source: str
    deploy: str
    overlay: str = ""
    docker_tag_suffix: str = ""
    docker_args: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Any, where: str = "branch") -> BranchInfo:
        data = _check_keys(data, {"source", "overlay", "deploy", "docker_tag_suffix", "docker_args"}, where)
        return cls(
            source=_str(data, "source", where),
            overlay=_str(data, "overlay", where),
            deploy=_str(data, "deploy", where),
            docker_tag_suffix=_str(data, "docker_tag_suffix", where),
            docker_args=_str_list(data, "docker_args", where),
        )


@dataclass(frozen=True)
class Build:
    """ソースリポジトリ1つ分のビルド定義."""

    source: str
    overlay: str = ""
    docker: str = ""
    branches: tuple[BranchInfo, ...] = ()
    deploy_updates: tuple[DeployUpdate, ...] = ()
    docker_args: tuple[str, ...] = ()

    @property
    def image_name(self) -> str:
        return self.docker or self.source

    @classmethod
    def from_dict(cls, data: Any, where: str = "build") -> Build:
        data = _check_keys(
            data,
            {"source", "overlay", "docker", "branches", "deploy_updates", "docker_args"},
            where,
        )
        source = _str(data, "source", where)
        if not source:
            msg = f"{where}: 'source' is required"
            raise CatalogError(msg)
        return cls(
            source=source,
            overlay=_str(data, "overlay", where),
            docker=_str(data, "docker", where),
            branches=tuple(
                BranchInfo.from_dict(b, f"{where}.branches[{i}]")
                for i, b in enumerate(_list(data, "branches", where))
            ),
            deploy_updates=tuple(
                DeployUpdate.from_dict(u, f"{where}.deploy_updates[{i}]")
                for i, u in enumerate(_list(data, "deploy_updates", where))
            ),
            docker_args=_str_list(data, "docker_args", where),
        )


@dataclass(frozen=True)
class App:
    """デプロイ対象アプリケーション."""

    name: str
    deploy: str
    builds: tuple[Build, ...] = ()
    docker_args: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Any, where: str = "app") -> App:
        data = _check_keys(data, {"name", "deploy", "builds", "docker_args"}, where)
        name = _str(data, "name", where)
        if not name:
            msg = f"{where}: 'name' is required"
            raise CatalogError(msg)
        return cls(
            name=name,
            deploy=_str(data, "deploy", where),
            builds=tuple(
                Build.from_dict(b, f"{where}.builds[{i}]") for i, b in enumerate(_list(data, "builds", where))
            ),
            docker_args=_str_list(data, "docker_args", where),
        )


@dataclass(frozen=True)
class Catalog:
    """有効な App 定義一式（リロード時に丸ごと置き換えられる）."""

    apps: tuple[App, ...] = ()
    commit: str = ""
    source: RepoRef | None = None

    def references(self, repo: str) -> bool:
        """repo がいずれかの Build の source / overlay として参照されていれば True."""
        return any(repo in (build.source, build.overlay) for app in self.apps for build in app.builds if repo)


@dataclass(frozen=True)
class BuildMatch:
    """Dispatcher が見つけた1件のマッチ（BuildRun の入力）."""

    app: App
    build: Build
    branch: BranchInfo
    via_overlay: bool = field(default=False, compare=False)
