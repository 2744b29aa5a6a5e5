"""コンテナレジストリへのイメージ publish.

`docker save` で書き出したアーカイブ（OCI image layout）を読み、レジストリに
既に存在する blob / manifest はスキップしながら宛先リポジトリへコピーする。
認証はホストのコンテナエンジンの認証情報（~/.docker/config.json）を使う。
"""

from __future__ import annotations

import base64
import json
import os
import re
import subprocess
import tarfile
import time
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Protocol

import httpx
from loguru import logger

from deploy_builder.core.exceptions import CommandError, PublishError, PublishTimeoutError

from .process import run_captured

PUBLISH_TIMEOUT = 600.0
CHUNK_SIZE = 1024 * 1024

OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"
DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
MANIFEST_TYPES = {OCI_MANIFEST, DOCKER_MANIFEST}
INDEX_TYPES = {OCI_INDEX, DOCKER_MANIFEST_LIST}

REF_NAME_ANNOTATION = "org.opencontainers.image.ref.name"
CONTAINERD_NAME_ANNOTATION = "io.containerd.image.name"

_REPOSITORY_RE = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*(?:/[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*)*$")
_TAG_RE = re.compile(r"^[\w][\w.-]{0,127}$")


@dataclass(frozen=True)
class ImageReference:
    registry: str
    repository: str
    tag: str

    @classmethod
    def parse(cls, reference: str) -> ImageReference:
        """`<registry>/<repository>:<tag>` を分解する.

        Raises:
            PublishError: レジストリが含まれていない、または形式が不正な場合
        """
        name, sep, tag = reference.rpartition(":")
        if not sep or "/" in tag:
            msg = f"invalid image reference: {reference}: missing tag"
            raise PublishError(msg)
        registry, slash, repository = name.partition("/")
        if not slash or not ("." in registry or ":" in registry or registry == "localhost"):
            msg = f"invalid image reference: {reference}: missing registry"
            raise PublishError(msg)
        if not _REPOSITORY_RE.match(repository) or not _TAG_RE.match(tag):
            msg = f"invalid image reference: {reference}"
            raise PublishError(msg)
        return cls(registry=registry, repository=repository, tag=tag)

    def __str__(self) -> str:
        return f"{self.registry}/{self.repository}:{self.tag}"


@dataclass(frozen=True)
class Credential:
    username: str
    secret: str


def _docker_config_path() -> Path:
    base = os.environ.get("DOCKER_CONFIG")
    return Path(base) / "config.json" if base else Path.home() / ".docker" / "config.json"


def _from_helper(helper: str, registry: str) -> Credential | None:
    try:
        result = run_captured([f"docker-credential-{helper}", "get"], check=False, input_text=registry, timeout=30)
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.warning(f"credential helper {helper} failed: {exc}")
        return None
    if result.returncode != 0:
        return None
    data = json.loads(result.stdout or "{}")
    if not data.get("Secret"):
        return None
    return Credential(username=data.get("Username", ""), secret=data["Secret"])


def load_credential(registry: str, config_path: Path | None = None) -> Credential | None:
    """コンテナエンジンの認証ストアから registry の認証情報を得る.

    credHelpers（ホスト別）→ credsStore → auths の順に探す。見つからなければ None（匿名）。

    Raises:
        PublishError: config.json が壊れている場合
    """
    path = config_path or _docker_config_path()
    if not path.exists():
        return None
    try:
        config = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        msg = f"failed to load auth config: {exc}"
        raise PublishError(msg) from exc

    if helper := config.get("credHelpers", {}).get(registry):
        return _from_helper(helper, registry)
    if store := config.get("credsStore"):
        credential = _from_helper(store, registry)
        if credential is not None:
            return credential

    auths: dict[str, Any] = config.get("auths", {})
    for key in (registry, f"https://{registry}", f"http://{registry}", f"https://{registry}/v1/"):
        entry = auths.get(key)
        if not entry:
            continue
        if entry.get("auth"):
            username, _, secret = base64.b64decode(entry["auth"]).decode().partition(":")
            return Credential(username=username, secret=secret)
        if entry.get("username"):
            return Credential(username=entry["username"], secret=entry.get("password", ""))
    return None


class Deadline:
    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        self.expires = time.monotonic() + seconds

    def remaining(self) -> float:
        left = self.expires - time.monotonic()
        if left <= 0:
            msg = f"publish timed out after {self.seconds:.0f}s"
            raise PublishTimeoutError(msg)
        return left


class OciArchive:
    """`docker save` が出力する OCI image layout の tar を読む."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._tar = tarfile.open(self.path)
        self._members = {m.name.removeprefix("./"): m for m in self._tar.getmembers() if m.isfile()}

    def __enter__(self) -> OciArchive:
        return self

    def __exit__(self, *exc: object) -> None:
        self._tar.close()

    def _blob_name(self, digest: str) -> str:
        algorithm, _, encoded = digest.partition(":")
        return f"blobs/{algorithm}/{encoded}"

    def has_blob(self, digest: str) -> bool:
        return self._blob_name(digest) in self._members

    def open_blob(self, digest: str) -> IO[bytes]:
        member = self._members.get(self._blob_name(digest))
        fileobj = self._tar.extractfile(member) if member is not None else None
        if fileobj is None:
            msg = f"blob {digest} is missing from {self.path.name}"
            raise PublishError(msg)
        return fileobj

    def read_json(self, name: str) -> dict[str, Any]:
        member = self._members.get(name)
        fileobj = self._tar.extractfile(member) if member is not None else None
        if fileobj is None:
            msg = f"{name} not found in {self.path.name}: not an OCI image layout"
            raise PublishError(msg)
        return json.loads(fileobj.read())

    def select_root(self, tag: str) -> dict[str, Any]:
        """index.json から tag に対応するルート descriptor を選ぶ."""
        manifests = self.read_json("index.json").get("manifests", [])
        for desc in manifests:
            annotations = desc.get("annotations") or {}
            if annotations.get(REF_NAME_ANNOTATION) == tag:
                return desc
            if annotations.get(CONTAINERD_NAME_ANNOTATION, "").endswith(f":{tag}"):
                return desc
        if len(manifests) == 1:
            return manifests[0]
        msg = f"tag {tag} not found in {self.path.name}"
        raise PublishError(msg)


def _describe(desc: dict[str, Any]) -> str:
    return f"{desc.get('mediaType', '?')} {desc['digest']} ({desc.get('size', 0)} bytes)"


def _iter_chunks(fileobj: IO[bytes], deadline: Deadline) -> Iterator[bytes]:
    # 転送中も全体の期限を確認する（httpx の timeout は操作ごと）
    while chunk := fileobj.read(CHUNK_SIZE):
        deadline.remaining()
        yield chunk


def _parse_challenge(header: str) -> tuple[str, dict[str, str]]:
    scheme, _, params = header.partition(" ")
    return scheme.lower(), dict(re.findall(r'(\w+)="([^"]*)"', params))


class RegistryClient:
    """OCI distribution API のクライアント（1リポジトリ分）."""

    def __init__(
        self,
        client: httpx.Client,
        ref: ImageReference,
        credential: Credential | None,
        deadline: Deadline,
    ) -> None:
        self.client = client
        self.ref = ref
        self.credential = credential
        self.deadline = deadline
        scheme = "http" if ref.registry.split(":")[0] in ("localhost", "127.0.0.1") else "https"
        self.base = f"{scheme}://{ref.registry}/v2/{ref.repository}"
        self.root = f"{scheme}://{ref.registry}/v2/"
        self.headers: dict[str, str] = {}

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        headers = {**self.headers, **kwargs.pop("headers", {})}
        try:
            return self.client.request(method, url, headers=headers, timeout=self.deadline.remaining(), **kwargs)
        except httpx.TimeoutException as exc:
            self.deadline.remaining()
            msg = f"{method} {url} timed out: {exc}"
            raise PublishError(msg) from exc
        except httpx.HTTPError as exc:
            msg = f"{method} {url} failed: {exc}"
            raise PublishError(msg) from exc

    def _basic(self) -> str:
        assert self.credential is not None
        raw = f"{self.credential.username}:{self.credential.secret}".encode()
        return "Basic " + base64.b64encode(raw).decode()

    def authenticate(self) -> None:
        """/v2/ のチャレンジに応じて Bearer トークンまたは Basic 認証を用意する."""
        response = self._request("GET", self.root)
        if response.status_code != 401:
            return
        scheme, params = _parse_challenge(response.headers.get("www-authenticate", ""))
        if scheme == "basic":
            if self.credential is None:
                msg = f"registry {self.ref.registry} requires credentials"
                raise PublishError(msg)
            self.headers["Authorization"] = self._basic()
            return
        if scheme != "bearer" or "realm" not in params:
            msg = f"unsupported auth challenge from {self.ref.registry}: {response.headers.get('www-authenticate')}"
            raise PublishError(msg)

        query = {"scope": f"repository:{self.ref.repository}:pull,push"}
        if params.get("service"):
            query["service"] = params["service"]
        headers = {"Authorization": self._basic()} if self.credential else {}
        token_response = self._request("GET", params["realm"], params=query, headers=headers)
        if token_response.status_code != 200:
            msg = f"token request to {params['realm']} failed: {token_response.status_code}"
            raise PublishError(msg)
        body = token_response.json()
        token = body.get("token") or body.get("access_token")
        if not token:
            msg = f"no token in response from {params['realm']}"
            raise PublishError(msg)
        self.headers["Authorization"] = f"Bearer {token}"

    def _check(self, response: httpx.Response, what: str, expected: tuple[int, ...]) -> httpx.Response:
        if response.status_code not in expected:
            msg = f"{what} failed: {response.status_code} {response.text[:200]}"
            raise PublishError(msg)
        return response

    def blob_exists(self, digest: str) -> bool:
        return self._request("HEAD", f"{self.base}/blobs/{digest}").status_code == 200

    def manifest_exists(self, digest: str, media_type: str) -> bool:
        response = self._request("HEAD", f"{self.base}/manifests/{digest}", headers={"Accept": media_type})
        return response.status_code == 200

    def push_blob(self, desc: dict[str, Any], fileobj: IO[bytes]) -> None:
        digest = desc["digest"]
        started = self._check(self._request("POST", f"{self.base}/blobs/uploads/"), f"upload of {digest}", (202,))
        location = started.headers.get("location")
        if not location:
            msg = f"upload of {digest} failed: no Location header"
            raise PublishError(msg)
        # Location のクエリ（_state など）を残したまま digest を追加する
        upload_url = httpx.URL(self.root).join(location).copy_merge_params({"digest": digest})
        self._check(
            self._request(
                "PUT",
                str(upload_url),
                content=_iter_chunks(fileobj, self.deadline),
                headers={"Content-Type": "application/octet-stream", "Content-Length": str(desc["size"])},
            ),
            f"upload of {digest}",
            (201, 204),
        )

    def push_manifest(self, reference: str, media_type: str, body: bytes) -> None:
        self._check(
            self._request(
                "PUT",
                f"{self.base}/manifests/{reference}",
                content=body,
                headers={"Content-Type": media_type},
            ),
            f"manifest push {reference}",
            (200, 201),
        )


class ImageExporter(Protocol):
    def save(self, reference: str, output: Path, timeout: float | None = None) -> None: ...


class RegistryPublisher:
    """ローカルイメージをレジストリへ publish する."""

    def __init__(
        self,
        exporter: ImageExporter,
        timeout: float = PUBLISH_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
        docker_config: Path | None = None,
    ) -> None:
        self.exporter = exporter
        self.timeout = timeout
        self.transport = transport
        self.docker_config = docker_config

    def publish(self, reference: str, work_dir: Path) -> str:
        """イメージを書き出してレジストリへコピーする.

        Args:
            reference: `<registry>/<repository>:<tag>`
            work_dir: 一時アーカイブ（image.tar）の置き場所

        Returns:
            ルート manifest の digest

        Raises:
            PublishError: 参照が不正、書き出し・コピーの失敗
            PublishTimeoutError: 全体のタイムアウト超過
        """
        deadline = Deadline(self.timeout)
        ref = ImageReference.parse(reference)
        credential = load_credential(ref.registry, self.docker_config)

        work_dir = Path(work_dir)
        work_dir.mkdir(parents=True, exist_ok=True)
        archive_path = work_dir / "image.tar"
        try:
            logger.info(f"exporting image to {archive_path}")
            try:
                self.exporter.save(reference, archive_path, timeout=deadline.remaining())
            except subprocess.TimeoutExpired as exc:
                msg = f"failed to export image: save: timed out after {self.timeout:.0f}s"
                raise PublishTimeoutError(msg) from exc
            except (CommandError, OSError) as exc:
                msg = f"failed to export image: save: {exc}"
                raise PublishError(msg) from exc

            with OciArchive(archive_path) as archive, httpx.Client(transport=self.transport, follow_redirects=True) as client:
                registry = RegistryClient(client, ref, credential, deadline)
                registry.authenticate()
                root = archive.select_root(ref.tag)
                self._copy(archive, registry, root, tag=ref.tag)
        finally:
            archive_path.unlink(missing_ok=True)

        logger.info(f"image pushed: {reference} (digest: {root['digest']})")
        return root["digest"]

    def _copy(self, archive: OciArchive, registry: RegistryClient, desc: dict[str, Any], tag: str = "") -> None:
        media_type = desc.get("mediaType", "")
        digest = desc["digest"]

        if media_type in MANIFEST_TYPES | INDEX_TYPES:
            if not tag and registry.manifest_exists(digest, media_type):
                logger.info(f"- skipped {_describe(desc)}")
                return
            body = archive.open_blob(digest).read()
            manifest = json.loads(body)
            if media_type in INDEX_TYPES:
                children = manifest.get("manifests", [])
            else:
                children = [manifest["config"], *manifest.get("layers", [])]
            for child in children:
                self._copy(archive, registry, child)
            logger.info(f"- pushing {_describe(desc)}")
            registry.push_manifest(tag or digest, media_type, body)
            return

        if registry.blob_exists(digest):
            logger.info(f"- skipped {_describe(desc)}")
            return
        logger.info(f"- pushing {_describe(desc)}")
        registry.push_blob(desc, archive.open_blob(digest))
