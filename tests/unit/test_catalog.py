from __future__ import annotations

from pathlib import Path

import pytest

from deploy_builder.core.catalog import CatalogStore, load_app_entry, load_catalog, render_template
from deploy_builder.core.exceptions import CatalogError, GitSyncError
from deploy_builder.core.models import App, Build, Catalog, RepoRef


def _write(root: Path, rel: str, text: str) -> None:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


APP_YAML = """\
name: shop
deploy: infra/shop-deploy
docker_args: ["PIP_INDEX=https://pypi.internal"]
builds:
  - source: team/shop
    overlay: team/shop-config
    docker: shop-image
    docker_args: ["MODE=prod"]
    branches:
      - source: main
        overlay: prod
        deploy: main
        docker_tag_suffix: -prod
    deploy_updates:
      - yaml_set:
          file: values.yaml
          path: image.tag
          value: ${IMAGE_TAG}
      - script: echo $IMAGE_TAG > tag.txt
"""


class TestModels:
    """カタログモデルのデコードテスト."""

    def test_full_app(self) -> None:
        """全フィールドを持つ App のデコード."""
        import yaml

        app = App.from_dict(yaml.safe_load(APP_YAML))

        assert app.name == "shop"
        assert app.deploy == "infra/shop-deploy"
        assert app.docker_args == ("PIP_INDEX=https://pypi.internal",)
        build = app.builds[0]
        assert build.image_name == "shop-image"
        assert build.branches[0].docker_tag_suffix == "-prod"
        assert build.deploy_updates[0].yaml_set is not None
        assert build.deploy_updates[0].yaml_set.value == "${IMAGE_TAG}"
        assert build.deploy_updates[1].script.startswith("echo")

    def test_image_name_defaults_to_source(self) -> None:
        """docker 未指定時はソース名がイメージ名になる."""
        assert Build(source="team/api").image_name == "team/api"

    def test_unknown_field_rejected(self) -> None:
        """未知のフィールドはエラー."""
        with pytest.raises(CatalogError, match="unknown field"):
            App.from_dict({"name": "x", "deploy": "d", "extra": 1})

    def test_unknown_nested_field_rejected(self) -> None:
        """ネストした未知フィールドもエラーで、位置が分かる."""
        data = {"name": "x", "deploy": "d", "builds": [{"source": "s", "branches": [{"source": "m", "bogus": 1}]}]}
        with pytest.raises(CatalogError, match=r"builds\[0\]\.branches\[0\]"):
            App.from_dict(data)

    def test_name_required(self) -> None:
        with pytest.raises(CatalogError, match="'name' is required"):
            App.from_dict({"deploy": "d"})

    def test_yaml_set_requires_file_and_path(self) -> None:
        data = {"name": "x", "deploy": "d", "builds": [{"source": "s", "deploy_updates": [{"yaml_set": {"file": "a"}}]}]}
        with pytest.raises(CatalogError, match="'file' and 'path' are required"):
            App.from_dict(data)

    def test_catalog_references(self) -> None:
        """source / overlay に出てくるリポジトリだけが参照扱い."""
        catalog = Catalog(apps=(App(name="a", deploy="d", builds=(Build(source="s", overlay="o"),)),))

        assert catalog.references("s")
        assert catalog.references("o")
        assert not catalog.references("d")
        assert not catalog.references("")


class TestLoadCatalog:
    """カタログ読み込みテスト."""

    def test_file_entries(self, tmp_path: Path) -> None:
        """file エントリの読み込み."""
        _write(tmp_path, "apps.yaml", "apps:\n  - file: apps/shop.yaml\n")
        _write(tmp_path, "apps/shop.yaml", APP_YAML)

        catalog = load_catalog(tmp_path, "apps.yaml", commit="abc")

        assert [app.name for app in catalog.apps] == ["shop"]
        assert catalog.commit == "abc"

    def test_template_entry(self, tmp_path: Path) -> None:
        """template + data エントリのレンダリング."""
        _write(tmp_path, "apps.yaml", "apps:\n  - template: tpl/app.yaml.j2\n    data: {name: api, repo: team/api}\n")
        _write(
            tmp_path,
            "tpl/app.yaml.j2",
            "name: {{ name }}\ndeploy: infra/{{ name }}\nbuilds:\n  - source: {{ repo }}\n",
        )

        catalog = load_catalog(tmp_path, "apps.yaml")

        assert catalog.apps[0].name == "api"
        assert catalog.apps[0].deploy == "infra/api"
        assert catalog.apps[0].builds[0].source == "team/api"

    def test_bad_entry_dropped(self, tmp_path: Path) -> None:
        """不正なエントリはスキップされ、残りは読み込まれる."""
        _write(
            tmp_path,
            "apps.yaml",
            "apps:\n  - file: missing.yaml\n  - file: bad.yaml\n  - file: good.yaml\n",
        )
        _write(tmp_path, "bad.yaml", "name: bad\ndeploy: d\nunknown: 1\n")
        _write(tmp_path, "good.yaml", "name: good\ndeploy: d\n")

        catalog = load_catalog(tmp_path, "apps.yaml")

        assert [app.name for app in catalog.apps] == ["good"]

    def test_undecodable_file_dropped(self, tmp_path: Path) -> None:
        """UTF-8 として読めないファイルのエントリだけがスキップされる."""
        _write(tmp_path, "apps.yaml", "apps:\n  - file: bad.yaml\n  - file: good.yaml\n")
        (tmp_path / "bad.yaml").write_bytes(b"name: \xff\xfe\n")
        _write(tmp_path, "good.yaml", "name: good\ndeploy: d\n")

        catalog = load_catalog(tmp_path, "apps.yaml")

        assert [app.name for app in catalog.apps] == ["good"]

    def test_template_runtime_error_dropped(self, tmp_path: Path) -> None:
        """data の型が合わずレンダリング中に失敗したテンプレートはスキップされる."""
        _write(
            tmp_path,
            "apps.yaml",
            "apps:\n  - template: tpl.j2\n    data: {n: x}\n  - file: good.yaml\n",
        )
        _write(tmp_path, "tpl.j2", "name: {{ n + 1 }}\ndeploy: d\n")
        _write(tmp_path, "good.yaml", "name: good\ndeploy: d\n")

        catalog = load_catalog(tmp_path, "apps.yaml")

        assert [app.name for app in catalog.apps] == ["good"]

    def test_undecodable_index(self, tmp_path: Path) -> None:
        (tmp_path / "apps.yaml").write_bytes(b"apps: \xff\n")

        with pytest.raises(CatalogError, match="failed to read apps.yaml"):
            load_catalog(tmp_path, "apps.yaml")

    def test_missing_index(self, tmp_path: Path) -> None:
        """インデックスが無い場合は例外."""
        with pytest.raises(CatalogError, match="file not found"):
            load_catalog(tmp_path, "apps.yaml")

    def test_path_escape_rejected(self, tmp_path: Path) -> None:
        """カタログ外のファイルは参照できない."""
        root = tmp_path / "catalog"
        root.mkdir()
        _write(tmp_path, "secret.yaml", "name: x\ndeploy: d\n")

        with pytest.raises(CatalogError, match="escapes"):
            load_app_entry(root, {"file": "../secret.yaml"})

    def test_entry_requires_file_or_template(self, tmp_path: Path) -> None:
        with pytest.raises(CatalogError, match="one of 'file' or 'template'"):
            load_app_entry(tmp_path, {"data": {}})

    def test_template_undefined_variable(self) -> None:
        """未定義変数はレンダリングエラー."""
        with pytest.raises(CatalogError, match="failed to render"):
            render_template("name: {{ missing }}\n", "t.j2", {})


class TestCatalogStore:
    """カタログの保持・リロードテスト."""

    def test_reload_replaces_catalog(self) -> None:
        catalogs = iter([Catalog(commit="1"), Catalog(commit="2")])
        store = CatalogStore(lambda: next(catalogs))

        assert store.reload().commit == "1"
        assert store.reload().commit == "2"
        assert store.current().commit == "2"

    def test_failed_reload_keeps_previous(self) -> None:
        """リロード失敗時は直前のカタログを維持する."""
        calls = {"n": 0}

        def loader() -> Catalog:
            calls["n"] += 1
            if calls["n"] > 1:
                raise GitSyncError("remote unreachable")
            return Catalog(commit="first")

        store = CatalogStore(loader)
        store.reload()

        assert store.reload().commit == "first"
        assert store.current().commit == "first"

    def test_is_source(self) -> None:
        store = CatalogStore(Catalog, source=RepoRef(repo="ops/apps", branch="main"))

        assert store.is_source("ops/apps", "main")
        assert not store.is_source("ops/apps", "dev")
        assert not store.is_source("team/api", "main")
