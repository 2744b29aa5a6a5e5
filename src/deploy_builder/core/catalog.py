"""カタログ（apps.yaml）の読み込みと現在値の管理.

インデックスファイルの各エントリは App 定義ファイル（file）か、
data でレンダリングする Jinja2 テンプレート（template）を指します。

使用例:
    >>> catalog = load_catalog(Path("work/.catalog"), "apps.yaml")
    >>> store = CatalogStore(loader=lambda: catalog)
    >>> store.reload().apps
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

import jinja2
import yaml
from loguru import logger

from .exceptions import CatalogError, DeployBuilderError
from .models import App, Catalog, RepoRef

if TYPE_CHECKING:
    from deploy_builder.adapters.git_sync import GitSync

_INDEX_KEYS = {"apps"}
_ENTRY_KEYS = {"file", "template", "data"}


def _read_text(root: Path, relative: str) -> str:
    path = (root / relative).resolve()
    if not path.is_relative_to(root.resolve()):
        msg = f"path escapes catalog root: {relative}"
        raise CatalogError(msg)
    if not path.is_file():
        msg = f"file not found in catalog: {relative}"
        raise CatalogError(msg)
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        msg = f"failed to read {relative}: {exc}"
        raise CatalogError(msg) from exc


def _parse_yaml(text: str, name: str) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        msg = f"failed to parse {name}: {exc}"
        raise CatalogError(msg) from exc


def render_template(source: str, name: str, data: dict[str, Any]) -> str:
    """App 定義テンプレートを data でレンダリングする.

    未定義変数はエラーにする（StrictUndefined）。

    Raises:
        CatalogError: テンプレートの構文エラー・レンダリングエラー
    """
    env = jinja2.Environment(undefined=jinja2.StrictUndefined, keep_trailing_newline=True)
    try:
        template = env.from_string(source)
    except jinja2.TemplateSyntaxError as exc:
        msg = f"failed to parse template {name}: {exc}"
        raise CatalogError(msg) from exc
    try:
        return template.render(**data)
    except Exception as exc:
        # data 由来の型エラーなども含めてエントリ単位の失敗にする
        msg = f"failed to render template {name}: {exc}"
        raise CatalogError(msg) from exc


def load_app_entry(root: Path, entry: Any, where: str = "apps[0]") -> App:
    """インデックスの1エントリから App を読み込む.

    Args:
        root: カタログのルートディレクトリ（チェックアウト済みワークツリー）
        entry: {file} または {template, data} の辞書
        where: エラーメッセージ用の位置情報

    Returns:
        デコード済みの App

    Raises:
        CatalogError: ファイル欠落、テンプレートエラー、不正なフィールド
    """
    if not isinstance(entry, dict):
        msg = f"{where}: expected a mapping, got {type(entry).__name__}"
        raise CatalogError(msg)
    unknown = sorted(str(k) for k in entry if k not in _ENTRY_KEYS)
    if unknown:
        msg = f"{where}: unknown field(s) {', '.join(unknown)}"
        raise CatalogError(msg)

    if entry.get("file"):
        name = str(entry["file"])
        text = _read_text(root, name)
    elif entry.get("template"):
        name = str(entry["template"])
        data = entry.get("data") or {}
        if not isinstance(data, dict):
            msg = f"{where}.data: expected a mapping"
            raise CatalogError(msg)
        text = render_template(_read_text(root, name), name, data)
    else:
        msg = f"{where}: one of 'file' or 'template' is required"
        raise CatalogError(msg)

    return App.from_dict(_parse_yaml(text, name), where=f"{where} ({name})")


def load_catalog(root: Path, apps_file: str, commit: str = "", source: RepoRef | None = None) -> Catalog:
    """カタログ全体を読み込む.

    個々のエントリの読み込み失敗はログに出してスキップし、残りの App で
    カタログを構成する。インデックス自体が読めない場合は例外。

    Raises:
        CatalogError: インデックスファイルが存在しない・不正な場合
    """
    root = Path(root)
    index = _parse_yaml(_read_text(root, apps_file), apps_file) or {}
    if not isinstance(index, dict):
        msg = f"{apps_file}: expected a mapping at top level"
        raise CatalogError(msg)
    unknown = sorted(str(k) for k in index if k not in _INDEX_KEYS)
    if unknown:
        msg = f"{apps_file}: unknown field(s) {', '.join(unknown)}"
        raise CatalogError(msg)
    entries = index.get("apps") or []
    if not isinstance(entries, list):
        msg = f"{apps_file}: 'apps' must be a list"
        raise CatalogError(msg)

    apps: list[App] = []
    for idx, entry in enumerate(entries):
        try:
            apps.append(load_app_entry(root, entry, where=f"apps[{idx}]"))
        except CatalogError as exc:
            logger.error(f"failed to load apps[{idx}]: {exc}")

    return Catalog(apps=tuple(apps), commit=commit, source=source)


class RepoCatalogLoader:
    """カタログリポジトリを同期してから load_catalog する loader."""

    def __init__(self, git: GitSync, ref: RepoRef, apps_file: str, checkout_dir: Path) -> None:
        self.git = git
        self.ref = ref
        self.apps_file = apps_file
        self.checkout_dir = Path(checkout_dir)

    def __call__(self) -> Catalog:
        self.git.fetch_branch(self.ref.repo, self.ref.branch, self.checkout_dir)
        commit, subject = self.git.head_summary(self.checkout_dir)
        catalog = load_catalog(self.checkout_dir, self.apps_file, commit=commit, source=self.ref)
        logger.info(f"loaded {len(catalog.apps)} apps (commit {commit[:7]}: {subject})")
        return catalog


class CatalogStore:
    """現在のカタログを保持する（置き換えは常に丸ごと）."""

    def __init__(self, loader: Callable[[], Catalog], source: RepoRef | None = None) -> None:
        self._loader = loader
        self._lock = threading.Lock()
        self._current = Catalog(source=source)
        self.source = source

    def current(self) -> Catalog:
        with self._lock:
            return self._current

    def reload(self) -> Catalog:
        """loader でカタログを再読み込みする.

        失敗時はログに残して直前のカタログを維持する。
        """
        try:
            catalog = self._loader()
        except (DeployBuilderError, OSError) as exc:
            logger.error(f"update apps failed, keeping previous catalog: {exc}")
            return self.current()

        with self._lock:
            self._current = catalog
        return catalog

    def is_source(self, repo: str, branch: str) -> bool:
        return self.source is not None and repo == self.source.repo and branch == self.source.branch
