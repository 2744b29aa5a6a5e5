"""外部コマンド実行のヘルパー."""

from __future__ import annotations

import subprocess
import threading
from collections.abc import Mapping, Sequence
from pathlib import Path

from loguru import logger

from deploy_builder.core.exceptions import CommandError


def run_logged(
    args: Sequence[str],
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> None:
    """コマンドを実行し、stdout/stderr を1行ずつログに流す.

    Args:
        args: コマンドと引数
        cwd: 作業ディレクトリ
        env: 環境変数（None なら親プロセスを継承）
        timeout: 秒数。超過時は subprocess.TimeoutExpired

    Raises:
        CommandError: 非ゼロ終了の場合
    """
    logger.info(f"  {cwd or '.'}$ {' '.join(args)}")
    with subprocess.Popen(
        list(args),
        cwd=cwd,
        env=dict(env) if env is not None else None,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        errors="replace",
    ) as proc:
        expired = threading.Event()

        def _expire() -> None:
            expired.set()
            proc.kill()

        # stdout の読み取り中でも timeout で kill する
        timer = threading.Timer(timeout, _expire) if timeout is not None else None
        if timer is not None:
            timer.start()
        try:
            assert proc.stdout is not None
            for line in proc.stdout:
                logger.info(f"    {line.rstrip()}")
            returncode = proc.wait()
        finally:
            if timer is not None:
                timer.cancel()

    if expired.is_set():
        raise subprocess.TimeoutExpired(list(args), timeout)

    if returncode != 0:
        raise CommandError(list(args), returncode)


def run_captured(
    args: Sequence[str],
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    check: bool = True,
    input_text: str | None = None,
    timeout: float | None = None,
) -> subprocess.CompletedProcess[str]:
    """コマンドを実行して出力を取得する.

    Raises:
        CommandError: check=True かつ非ゼロ終了の場合（stderr をメッセージに含む）
    """
    result = subprocess.run(
        list(args),
        cwd=cwd,
        env=dict(env) if env is not None else None,
        capture_output=True,
        text=True,
        input=input_text,
        timeout=timeout,
    )
    if check and result.returncode != 0:
        raise CommandError(list(args), result.returncode, result.stderr.strip())
    return result
