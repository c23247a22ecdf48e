"""
Content-storage network client.

Articles are stored as folders: every file is uploaded as its own signed
data item, then a manifest mapping file names to item ids is uploaded. The
manifest id is the article's content id. Reads try the configured gateways
in priority order.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable, Protocol, Sequence, runtime_checkable

import httpx

from dblog_delegation.errors import NetworkError
from dblog_delegation.types import DelegationConfig, FolderFile, FolderUpload

logger = logging.getLogger(__name__)

ARTICLE_INDEX_FILE = "index.md"
ARTICLE_COVER_IMAGE_FILE = "coverImage"

MANIFEST_CONTENT_TYPE = "application/x.irys-manifest+json"


class UploadSigner(Protocol):
    """Signs upload payloads; implemented by the delegated key."""

    @property
    def address(self) -> str: ...

    def sign(self, data: bytes) -> str: ...


@runtime_checkable
class ContentStorage(Protocol):
    """What the publish workflow needs from the storage network."""

    async def upload_folder(
        self,
        files: Sequence[FolderFile],
        signer: UploadSigner,
        paid_by: str | None = None,
        manifest_tags: Iterable[tuple[str, str]] = (),
    ) -> FolderUpload: ...

    async def approve_delegate(
        self, owner: str, delegate: str, amount: int, expires_in: int
    ) -> None: ...


def build_manifest(files: dict[str, str], index: str | None = None) -> dict[str, Any]:
    """Folder manifest mapping each file name to its data-item id."""
    manifest: dict[str, Any] = {
        "manifest": "irys:manifest",
        "version": "0.1.0",
        "paths": {name: {"id": tx_id} for name, tx_id in files.items()},
    }
    if index:
        manifest["index"] = {"path": index}
    return manifest


class GatewayStorage:
    """Upload node plus read gateways, both over httpx."""

    def __init__(self, config: DelegationConfig, client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        self._upload_url = config.storage_upload_url.rstrip("/")
        self._gateways = list(config.storage_gateways)
        self._client = client or httpx.AsyncClient(timeout=config.http_timeout_seconds)
        self._owns_client = client is None

    # ---- Upload ----

    async def upload_item(
        self,
        data: bytes,
        content_type: str,
        signer: UploadSigner,
        tags: Iterable[tuple[str, str]] = (),
        paid_by: str | None = None,
    ) -> str:
        """Upload one signed data item and return its id."""
        all_tags = [
            {"name": "Content-Type", "value": content_type},
            {"name": "App-Name", "value": self._config.app_name},
            *({"name": name, "value": value} for name, value in tags),
        ]
        headers = {
            "Content-Type": content_type,
            "x-signer": signer.address,
            "x-signature": signer.sign(data),
            "x-tags": json.dumps(all_tags),
        }
        # Uploads under the free limit are never billed to the owner
        if paid_by and len(data) > self._config.storage_free_upload_limit:
            headers["x-paid-by"] = paid_by

        try:
            response = await self._client.post(
                f"{self._upload_url}/tx", content=data, headers=headers
            )
        except httpx.HTTPError as e:
            raise NetworkError(f"Storage upload failed: {e.__class__.__name__}") from e
        if response.status_code >= 400:
            raise NetworkError(f"Storage upload failed ({response.status_code})")
        try:
            item_id = response.json()["id"]
        except (ValueError, KeyError, TypeError) as e:
            raise NetworkError("Storage node returned no item id") from e
        logger.debug("Uploaded %d bytes (%s) as %s", len(data), content_type, item_id)
        return item_id

    async def upload_folder(
        self,
        files: Sequence[FolderFile],
        signer: UploadSigner,
        paid_by: str | None = None,
        manifest_tags: Iterable[tuple[str, str]] = (),
    ) -> FolderUpload:
        """Upload every file, then the manifest that ties them together.

        The first file is the folder's index.
        """
        if not files:
            raise ValueError("a folder needs at least one file")

        ids: dict[str, str] = {}
        for f in files:
            ids[f.name] = await self.upload_item(
                f.data, f.content_type, signer, tags=f.tags, paid_by=paid_by
            )

        manifest = build_manifest(ids, index=files[0].name)
        manifest_id = await self.upload_item(
            json.dumps(manifest).encode("utf-8"),
            MANIFEST_CONTENT_TYPE,
            signer,
            tags=[
                ("Type", "manifest"),
                ("App-Version", self._config.app_version),
                *manifest_tags,
            ],
            paid_by=paid_by,
        )
        logger.info("Content folder uploaded: %s (%d files)", manifest_id, len(ids))
        return FolderUpload(manifest_id=manifest_id, file_ids=ids)

    async def approve_delegate(
        self, owner: str, delegate: str, amount: int, expires_in: int
    ) -> None:
        """Let ``delegate`` spend up to ``amount`` of ``owner``'s upload balance."""
        try:
            response = await self._client.post(
                f"{self._upload_url}/approval",
                json={
                    "owner": owner,
                    "approvedAddress": delegate,
                    "amount": str(amount),
                    "expiresInSeconds": expires_in,
                },
            )
        except httpx.HTTPError as e:
            raise NetworkError(f"Balance approval failed: {e.__class__.__name__}") from e
        if response.status_code >= 400:
            raise NetworkError(f"Balance approval failed ({response.status_code})")

    # ---- Read ----

    async def download_manifest(self, manifest_id: str) -> dict[str, Any]:
        response = await self._get_from_gateways(manifest_id)
        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(f"Manifest {manifest_id} is not valid JSON") from e

    async def fetch_file(self, manifest_id: str, name: str = ARTICLE_INDEX_FILE) -> bytes:
        response = await self._get_from_gateways(f"{manifest_id}/{name}")
        return response.content

    async def _get_from_gateways(self, path: str) -> httpx.Response:
        for gateway in self._gateways:
            try:
                response = await self._client.get(f"{gateway}/{path}")
            except httpx.HTTPError as e:
                logger.warning("Gateway %s failed to fetch %s: %s", gateway, path, e)
                continue
            if response.is_success:
                return response
            logger.debug("Gateway %s returned %d for %s", gateway, response.status_code, path)
        raise NetworkError(f"Failed to fetch {path} from all gateways")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
