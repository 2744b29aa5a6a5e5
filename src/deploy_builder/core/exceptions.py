"""Deploy builder exceptions.

ビルド・デプロイパイプラインで使うカスタム例外クラスを定義します。
"""

from __future__ import annotations


class DeployBuilderError(Exception):
    """deploy_builder が送出する例外の基底クラス."""


class CatalogError(DeployBuilderError):
    """カタログ（apps.yaml / App定義）の読み込み・検証に失敗した場合の例外."""


class GitSyncError(DeployBuilderError):
    """clone/fetch/reset/push などの git 操作に失敗した場合の例外."""


class CommandError(DeployBuilderError):
    """外部コマンドが非ゼロ終了した場合の例外.

    Attributes:
        command: 実行したコマンド（引数リスト）
        returncode: 終了コード
    """

    def __init__(self, command: list[str], returncode: int, detail: str = "") -> None:
        """例外初期化.

        Args:
            command: 実行したコマンド
            returncode: 終了コード
            detail: 標準エラー出力などの補足情報
        """
        self.command = list(command)
        self.returncode = returncode
        message = f"command failed with exit code {returncode}: {' '.join(self.command)}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class PublishError(DeployBuilderError):
    """レジストリへのイメージ publish に失敗した場合の例外."""


class PublishTimeoutError(PublishError):
    """publish 全体がタイムアウトを超過した場合の例外."""


class DeployUpdateError(DeployBuilderError):
    """デプロイリポジトリの更新（script / yaml_set）に失敗した場合の例外."""


class BuildError(DeployBuilderError):
    """overlay のコピーやイメージビルドに失敗した場合の例外."""
