"""イメージタグの決定."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol


class TagMode(str, Enum):
    COMMIT = "commit"
    DESCRIBE = "describe"


class TagSource(Protocol):
    def tag(self, target_dir: Path, branch: str) -> str: ...

    def describe(self, target_dir: Path, branch: str) -> str: ...


@dataclass(frozen=True)
class ImageTag:
    """解決済みのタグ一式."""

    source_tag: str
    image_tag: str
    overlay_tag: str = ""


def compose_image_tag(source_tag: str, overlay_tag: str = "", suffix: str = "") -> str:
    """`source_tag` + (`_overlay.<overlay_tag>`) + suffix を返す."""
    tag = source_tag
    if overlay_tag:
        tag += f"_overlay.{overlay_tag}"
    return tag + suffix


class TagResolver:
    def __init__(self, git: TagSource, mode: TagMode = TagMode.COMMIT) -> None:
        self.git = git
        self.mode = TagMode(mode)

    def branch_tag(self, target_dir: Path, branch: str) -> str:
        if self.mode is TagMode.DESCRIBE:
            return self.git.describe(target_dir, branch)
        return self.git.tag(target_dir, branch)

    def resolve(
        self,
        source_dir: Path,
        source_branch: str,
        suffix: str = "",
        overlay_dir: Path | None = None,
        overlay_branch: str = "",
    ) -> ImageTag:
        """ソース（と overlay）のブランチからイメージタグを決定する.

        Args:
            source_dir: ソースのワークツリー
            source_branch: ソースのブランチ
            suffix: BranchInfo の docker_tag_suffix
            overlay_dir: overlay のワークツリー（overlay なしなら None）
            overlay_branch: overlay のブランチ

        Returns:
            ImageTag
        """
        source_tag = self.branch_tag(source_dir, source_branch)
        overlay_tag = ""
        if overlay_dir is not None:
            overlay_tag = self.branch_tag(overlay_dir, overlay_branch)
        return ImageTag(
            source_tag=source_tag,
            image_tag=compose_image_tag(source_tag, overlay_tag, suffix),
            overlay_tag=overlay_tag,
        )
