from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

from .bundle import Bundle, pack_bundle
from .config import DEFAULT_MAX_BUNDLE_SIZE
from .manifest import ManifestValidator, SkillManifest, basic_validate, load_manifest
from .models import BundleMetadata, DurabilityState, RegistrationReceipt, SkillMetadata, UploadResult
from .signing import Signer

log = logging.getLogger(__name__)

ACTION_REGISTER = "Register-Skill"
ACTION_UPDATE = "Update-Skill"


class PublishRegistry(Protocol):
    def get_skill(self, name: str, version: str | None = None) -> SkillMetadata | None: ...

    def register_skill(self, metadata: SkillMetadata) -> str: ...

    def update_skill(self, metadata: SkillMetadata) -> str: ...

    def read_result(self, message_id: str, *, wait_s: float = ..., poll_interval_s: float = ...) -> RegistrationReceipt: ...


class PublishTransport(Protocol):
    def upload(self, data: bytes, metadata: BundleMetadata, signer: Signer) -> UploadResult: ...

    def poll_durability(
        self,
        content_id: str,
        *,
        timeout_s: float = ...,
        interval_s: float = ...,
        on_state: Callable[[DurabilityState], None] | None = ...,
    ) -> bool: ...


@dataclass(frozen=True)
class PublishResult:
    name: str
    version: str
    content_id: str
    message_id: str
    action: str
    cost: int
    free_tier: bool
    size: int
    file_count: int
    exceeded_limit: bool
    receipt: RegistrationReceipt | None = None
    confirmed: bool | None = None


def to_metadata(manifest: SkillManifest, *, content_id: str, owner: str) -> SkillMetadata:
    return SkillMetadata(
        name=manifest.name,
        version=manifest.version,
        description=manifest.description,
        author=manifest.author,
        owner=owner,
        tags=manifest.tags,
        dependencies=manifest.dependencies,
        content_id=content_id,
        license=manifest.license,
    )


class PublishService:
    """Directory -> validated manifest -> bundle -> upload -> registry entry."""

    def __init__(
        self,
        registry: PublishRegistry,
        transport: PublishTransport,
        signer: Signer,
        *,
        max_bundle_size: int = DEFAULT_MAX_BUNDLE_SIZE,
        validator: ManifestValidator = basic_validate,
        on_progress: Callable[[str, str], None] | None = None,
    ) -> None:
        self.registry = registry
        self.transport = transport
        self.signer = signer
        self.max_bundle_size = max_bundle_size
        self.validator = validator
        self._on_progress = on_progress

    def _emit(self, step: str, message: str) -> None:
        log.debug("%s: %s", step, message)
        if self._on_progress is not None:
            self._on_progress(step, message)

    def prepare(self, directory: Path) -> tuple[SkillManifest, Bundle]:
        self._emit("validate", f"Reading manifest in {directory}")
        manifest = load_manifest(directory, validator=self.validator)
        self._emit("pack", f"Packing {manifest.name}@{manifest.version}")
        bundle = pack_bundle(directory, max_bundle_size=self.max_bundle_size)
        return manifest, bundle

    def publish(
        self,
        directory: Path,
        *,
        skip_confirmation: bool = False,
        skip_receipt: bool = False,
        durability_timeout_s: float = 300.0,
    ) -> PublishResult:
        """
        Publish the skill in `directory`.

        By default the registry receipt is read and the upload is polled until the storage
        network confirms it; `skip_receipt` and `skip_confirmation` turn those waits off.
        """
        manifest, bundle = self.prepare(directory)

        self._emit("upload", f"Uploading {bundle.size} bytes")
        upload = self.transport.upload(
            bundle.data,
            BundleMetadata(name=manifest.name, version=manifest.version),
            self.signer,
        )
        log.info("uploaded %s@%s as %s", manifest.name, manifest.version, upload.content_id)

        metadata = to_metadata(manifest, content_id=upload.content_id, owner=self.signer.address)
        existing = self.registry.get_skill(manifest.name)
        if existing is None:
            action = ACTION_REGISTER
            self._emit("register", f"Registering {manifest.name}@{manifest.version}")
            message_id = self.registry.register_skill(metadata)
        else:
            action = ACTION_UPDATE
            self._emit("register", f"Updating {manifest.name} {existing.version} -> {manifest.version}")
            message_id = self.registry.update_skill(metadata)

        receipt = None
        if not skip_receipt:
            self._emit("confirm", f"Waiting for registry receipt for {message_id}")
            receipt = self.registry.read_result(message_id)

        confirmed = None
        if not skip_confirmation:
            self._emit("durability", f"Waiting for {upload.content_id} to be confirmed")
            confirmed = self.transport.poll_durability(upload.content_id, timeout_s=durability_timeout_s)

        return PublishResult(
            name=manifest.name,
            version=manifest.version,
            content_id=upload.content_id,
            message_id=message_id,
            action=action,
            cost=upload.cost,
            free_tier=upload.free_tier,
            size=upload.size,
            file_count=bundle.file_count,
            exceeded_limit=bundle.exceeded_limit,
            receipt=receipt,
            confirmed=confirmed,
        )
