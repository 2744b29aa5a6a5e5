"""YAML パッチエンジン（コメント・キー順を保持したままキーパスの値を書き換える）.

ruamel.yaml のラウンドトリップ表現を使うため、触れていないノード・コメント・
キーの順序・クォートはそのまま維持されます。

使用例:
    >>> apply_yaml_set('a:\\n  b: "old-value"\\n', "a/b", "new")
    'a:\\n  b: new\\n'
"""

from __future__ import annotations

import io
from pathlib import Path

from loguru import logger
from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap
from ruamel.yaml.error import YAMLError
from ruamel.yaml.scalarstring import PlainScalarString
from ruamel.yaml.util import load_yaml_guess_indent

from .exceptions import DeployUpdateError
from .models import YamlSet

IMAGE_TAG_TOKEN = "${IMAGE_TAG}"
_SCALAR_YAML = YAML(typ="safe", pure=True)


def _guess_mapping_indent(text: str) -> int | None:
    # キーだけの行の直後にある、より深いキー行との差をマッピングのインデントとする
    parent: int | None = None
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        column = len(line) - len(line.lstrip(" "))
        if parent is not None and column > parent and not stripped.startswith("- "):
            return column - parent
        parent = column if stripped.endswith(":") and not stripped.startswith("- ") else None
    return None


def _make_yaml(text: str) -> YAML:
    # 元ファイルのインデント幅を推定して出力に合わせる
    _, indent, block_seq_indent = load_yaml_guess_indent(text)
    indent = indent or 2
    block_seq_indent = block_seq_indent or 0
    mapping = _guess_mapping_indent(text) or indent
    yaml = YAML()
    yaml.preserve_quotes = True
    yaml.width = 4096
    yaml.indent(mapping=mapping, sequence=max(indent, block_seq_indent + 2), offset=block_seq_indent)
    return yaml


def _find_key(node: CommentedMap, prop: str) -> object | None:
    """prop に一致するキーを返す.

    文字列以外のキー（true, 1 など）は prop を YAML のスカラーとして解釈して比較する。
    """
    parsed: object = prop
    for key in node:
        if isinstance(key, str):
            if key == prop:
                return key
            continue
        if parsed is prop:
            try:
                parsed = _SCALAR_YAML.load(prop)
            except YAMLError:
                parsed = None
        if isinstance(parsed, bool) == isinstance(key, bool) and parsed == key:
            return key
    return None


def set_path(root: object, path: str, value: str) -> CommentedMap:
    """ルートから slash 区切りのパスを辿り、末端を value（plain scalar）で上書きする.

    途中のノードがマッピングでなければ空のマッピングで置き換え、存在しないキーは
    既存キーの後ろに追加する。

    Returns:
        更新後のルートマッピング（ルートがマッピングでなければ新しいマッピング）
    """
    if not isinstance(root, CommentedMap):
        root = CommentedMap()

    node = root
    props = path.split("/")
    for prop in props[:-1]:
        key = _find_key(node, prop)
        if key is None:
            key = prop
            node[key] = CommentedMap()
        child = node[key]
        if not isinstance(child, CommentedMap):
            child = CommentedMap()
            node[key] = child
        node = child

    last = props[-1]
    key = _find_key(node, last)
    # 元のクォートは引き継がず、必要な場合だけ ruamel がクォートする
    node[last if key is None else key] = PlainScalarString(value)
    return root


def apply_yaml_set(text: str, path: str, value: str) -> str:
    """YAML テキストにキーパス設定を適用した結果を返す.

    Args:
        text: 元の YAML テキスト（空文字列・スカラーのみの文書も可）
        path: slash 区切りのキーパス（例: "image/tag"）
        value: 設定する値

    Returns:
        更新後の YAML テキスト

    Raises:
        DeployUpdateError: YAML として解析できない場合
    """
    try:
        yaml = _make_yaml(text)
        data = yaml.load(text)
    except YAMLError as exc:
        msg = f"failed to parse yaml: {exc}"
        raise DeployUpdateError(msg) from exc

    data = set_path(data, path, value)

    out = io.StringIO()
    yaml.dump(data, out)
    return out.getvalue()


def apply_yaml_set_file(deploy_dir: Path, op: YamlSet, image_tag: str) -> None:
    """デプロイワークツリー内のファイルに YamlSet を適用する.

    value 中の `${IMAGE_TAG}` は解決済みのイメージタグで置換する。

    Raises:
        DeployUpdateError: ファイルの読み書き・解析に失敗した場合
    """
    file_path = Path(deploy_dir) / op.file
    value = op.value.replace(IMAGE_TAG_TOKEN, image_tag)
    logger.info(f"    - yaml set {op.file}:{op.path} to {value!r} ({op.value!r})")

    try:
        text = file_path.read_text(encoding="utf-8")
    except OSError as exc:
        msg = f"failed to read {op.file}: {exc}"
        raise DeployUpdateError(msg) from exc

    try:
        result = apply_yaml_set(text, op.path, value)
    except DeployUpdateError as exc:
        msg = f"{op.file}: {exc}"
        raise DeployUpdateError(msg) from exc

    try:
        file_path.write_text(result, encoding="utf-8")
    except OSError as exc:
        msg = f"failed to write {op.file}: {exc}"
        raise DeployUpdateError(msg) from exc
