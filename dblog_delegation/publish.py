"""
Article publishing: upload the content folder, then register it on-chain.

Both steps run under the delegated key. If the on-chain call fails because of
the key's capability grant, a new key is forced and the call is retried once
with the same content id. Uploaded content is never rolled back; the storage
network is content-addressed and immutable.
"""

from __future__ import annotations

import logging

from eth_utils import is_address, to_checksum_address

from dblog_delegation.actions import SessionActions
from dblog_delegation.contracts import publish_params
from dblog_delegation.errors import ValidationError
from dblog_delegation.signer import DelegatedSigner
from dblog_delegation.storage import (
    ARTICLE_COVER_IMAGE_FILE,
    ARTICLE_INDEX_FILE,
    ContentStorage,
)
from dblog_delegation.types import (
    ZERO_ADDRESS,
    DelegatedKey,
    DelegationConfig,
    FolderFile,
    FolderUpload,
    Originality,
    PublishRequest,
    PublishResult,
)

logger = logging.getLogger(__name__)

PUBLISH_OPERATION = "publish"

MAX_TITLE_BYTES = 128
MAX_ORIGINAL_AUTHOR_BYTES = 64
MAX_ROYALTY_BPS = 10_000
MAX_TAGS = 20
MAX_TAG_LENGTH = 32
MAX_SUMMARY_TAG_CHARS = 200
UINT64_MAX = 2**64 - 1
UINT256_MAX = 2**256 - 1


def validate_publish_request(request: PublishRequest) -> PublishRequest:
    """Check every field before any side effect; return a trimmed copy.

    Raises:
        ValidationError: Describing the first invalid field.
    """
    title = request.title.strip()
    body = request.body.strip()

    if not title:
        raise ValidationError("Title is required")
    if not body:
        raise ValidationError("Content is required")
    if len(title.encode("utf-8")) > MAX_TITLE_BYTES:
        raise ValidationError(f"Title is too long (max {MAX_TITLE_BYTES} bytes)")
    if len(request.original_author.encode("utf-8")) > MAX_ORIGINAL_AUTHOR_BYTES:
        raise ValidationError(
            f"Original author name is too long (max {MAX_ORIGINAL_AUTHOR_BYTES} bytes)"
        )
    if not 0 <= request.category_id <= UINT64_MAX:
        raise ValidationError("Valid category is required")
    if not 0 <= request.royalty_bps <= MAX_ROYALTY_BPS:
        raise ValidationError("Royalty must be between 0 and 100% (0-10000 basis points)")
    if request.collect_price < 0:
        raise ValidationError("Collect price must be non-negative")
    if request.collect_price > UINT256_MAX:
        raise ValidationError("Collect price is too large")
    if request.max_collect_supply < 0:
        raise ValidationError("Max collect supply must be non-negative")
    if request.max_collect_supply > UINT256_MAX:
        raise ValidationError("Max collect supply is too large")
    if request.true_author is not None and not is_address(request.true_author):
        raise ValidationError("True author must be a valid address")
    if len(request.tags) > MAX_TAGS:
        raise ValidationError(f"Too many tags (max {MAX_TAGS})")
    for tag in request.tags:
        if not tag.strip() or len(tag) > MAX_TAG_LENGTH:
            raise ValidationError(f"Invalid tag {tag!r} (1-{MAX_TAG_LENGTH} characters)")
    if request.cover is not None and not request.cover.data:
        raise ValidationError("Cover image is empty")

    return request.model_copy(
        update={
            "title": title,
            "summary": request.summary.strip(),
            "body": body,
            "tags": [t.strip() for t in request.tags],
            "originality": Originality(request.originality),
        }
    )


class PublishOrchestrator:
    """Two-phase publish with one bounded retry on capability failures."""

    def __init__(
        self,
        config: DelegationConfig,
        actions: SessionActions,
        signer: DelegatedSigner,
        storage: ContentStorage,
    ) -> None:
        self._config = config
        self._actions = actions
        self._signer = signer
        self._storage = storage

    async def publish(self, request: PublishRequest) -> PublishResult:
        """Upload ``request`` and register it on-chain.

        Returns:
            :class:`PublishResult` whose ``content_id`` is durably stored and
            whose ``tx_hash`` is a confirmed registration referencing it.

        Raises:
            ValidationError: Before any network call.
            UserRejectionError: The user declined key registration or funding.
            FundingError: The delegated key could not be funded.
            DelegationError: Any other failure, after at most one retry.
        """
        request = validate_publish_request(request)

        key = await self._actions.prepare(PUBLISH_OPERATION)

        logger.info("Uploading article %r with delegated key %s", request.title, key.address)
        upload = await self._upload(request, key)
        params = self._params(request, upload.manifest_id)
        tx_hash = await self._actions.call(PUBLISH_OPERATION, params, key=key)

        logger.info("Article published: content %s, tx %s", upload.manifest_id, tx_hash)
        return PublishResult(
            content_id=upload.manifest_id,
            tx_hash=tx_hash,
            index_id=upload.file_ids.get(ARTICLE_INDEX_FILE),
            cover_id=upload.file_ids.get(ARTICLE_COVER_IMAGE_FILE),
        )

    async def _upload(self, request: PublishRequest, key: DelegatedKey) -> FolderUpload:
        files = [
            FolderFile(
                name=ARTICLE_INDEX_FILE,
                data=request.body.encode("utf-8"),
                content_type="text/markdown",
                tags=[
                    ("App-Version", self._config.app_version),
                    ("Type", "article-content"),
                    ("Title", request.title),
                    *(("Tag", t) for t in request.tags),
                ],
            )
        ]
        if request.cover is not None:
            files.append(
                FolderFile(
                    name=ARTICLE_COVER_IMAGE_FILE,
                    data=request.cover.data,
                    content_type=request.cover.content_type,
                    tags=[("Type", "article-cover")],
                )
            )
        return await self._storage.upload_folder(
            files,
            self._signer.for_uploads(key),
            paid_by=key.owner,
            manifest_tags=[
                ("Article-Title", request.title),
                ("Article-Summary", request.summary[:MAX_SUMMARY_TAG_CHARS]),
                *(("Article-Tag", t) for t in request.tags),
            ],
        )

    def _params(self, request: PublishRequest, content_id: str) -> tuple:
        return publish_params(
            content_id,
            request.category_id,
            request.royalty_bps,
            request.original_author,
            request.title,
            to_checksum_address(request.true_author or ZERO_ADDRESS),
            request.collect_price,
            request.max_collect_supply,
            int(request.originality),
        )

