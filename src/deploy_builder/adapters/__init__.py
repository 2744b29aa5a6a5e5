"""外部システム（git / docker / レジストリ / Slack）へのアダプタ."""

from .docker_cli import DockerCli, LocalImage
from .git_sync import GitCredentials, GitSync
from .notify import SlackNotifier
from .registry import ImageReference, RegistryPublisher

__all__ = [
    "DockerCli",
    "LocalImage",
    "GitCredentials",
    "GitSync",
    "SlackNotifier",
    "ImageReference",
    "RegistryPublisher",
]
