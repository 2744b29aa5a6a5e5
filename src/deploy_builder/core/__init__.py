"""ビルド・デプロイパイプラインのコア処理群.

- カタログ（App / Build / BranchInfo）の読み込み
- トリガーのマッチングとディスパッチ
- イメージタグの決定
- YAML のキーパス書き換え
"""

from .catalog import CatalogStore, load_catalog
from .dispatch import Dispatcher, match_builds
from .tagging import TagMode, TagResolver, compose_image_tag
from .yaml_set import apply_yaml_set

__all__ = [
    "CatalogStore",
    "load_catalog",
    "Dispatcher",
    "match_builds",
    "TagMode",
    "TagResolver",
    "compose_image_tag",
    "apply_yaml_set",
]
