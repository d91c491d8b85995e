"""Publish workflow: replace the APKs of an edit, carrying device targeting over."""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, NamedTuple

import structlog

from amazon_appstore_mcp.auth import fetch_token
from amazon_appstore_mcp.client import AppstoreClient
from amazon_appstore_mcp.config import ClientSettings, PublishConfig
from amazon_appstore_mcp.errors import AppstoreError, CountMismatchError, PublishError
from amazon_appstore_mcp.models import (
    Apk,
    ApkTargeting,
    Device,
    Edit,
    PublishPhase,
    PublishResult,
    PublishStrategy,
    TargetingStatus,
)

if TYPE_CHECKING:
    from collections.abc import Iterator

    import httpx

logger = structlog.get_logger(__name__)


class TargetingSnapshot(NamedTuple):
    """An old APK and the targeting it had before the publish started."""

    apk: Apk
    targeting: ApkTargeting


def _disable_device(device: Device) -> Device:
    if device.status == TargetingStatus.TARGETING.value:
        return device.model_copy(update={"status": TargetingStatus.NOT_TARGETING.value})
    return device


def disable_targeting(targeting: ApkTargeting) -> ApkTargeting:
    """Return a copy of a rule set that targets no device.

    The catch-all becomes NOT_TARGETING and every TARGETING device is flipped
    to NOT_TARGETING; devices with any other status keep it. The ETag is kept.
    """
    return targeting.model_copy(
        update={
            "amazon_devices": [_disable_device(d) for d in targeting.amazon_devices],
            "non_amazon_devices": [_disable_device(d) for d in targeting.non_amazon_devices],
            "other_android_devices": TargetingStatus.NOT_TARGETING.value,
        }
    )


class AppstorePublisher:
    """Publishes APKs to the Amazon Appstore.

    A run authenticates, resolves the edit to work on, then either replaces
    the existing APKs in place or uploads new APKs, moves the old APKs'
    targeting onto them and deletes the old APKs. Every step is a barrier: the
    first failure aborts the run and nothing done before it is rolled back.
    """

    def __init__(
        self,
        config: PublishConfig,
        settings: ClientSettings | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._config = config
        self._settings = settings or ClientSettings()
        self._transport = transport
        self._logger = logger.bind(component="AppstorePublisher")

    def publish(self) -> PublishResult:
        """Run the publish.

        Returns:
            Result describing the edit and the APKs uploaded, replaced and deleted.

        Raises:
            ConfigurationError: If required inputs are missing, before any request.
            AuthenticationError: If no token could be obtained.
            PublishError: If any phase fails.
        """
        config = self._config
        security_profile, application_id = config.validate_inputs()

        self._logger.info("Authenticating", application_id=application_id)
        token = fetch_token(security_profile, self._settings, self._transport)

        with AppstoreClient(
            token, application_id, self._settings, self._transport
        ) as client:
            edit = self.resolve_edit(client)
            result = PublishResult(
                success=True,
                application_id=application_id,
                edit_id=edit.id,
                message="",
            )

            if config.replace_apks:
                replaced = self.replace_apks_in_place(client, edit, config.apk_paths)
                result.strategy = PublishStrategy.REPLACE_IN_PLACE
                result.replaced_apk_ids = replaced
            else:
                uploaded, deleted = self.upload_new_and_delete_old(client, edit, config.apk_paths)
                result.strategy = PublishStrategy.UPLOAD_NEW_DELETE_OLD
                result.uploaded_apks = uploaded
                result.deleted_apk_ids = deleted

        result.message = (
            f"Published {len(config.apk_paths)} APK(s) to edit {edit.id} "
            f"of {application_id}"
        )
        self._logger.info("New APK(s) published to the Amazon Appstore", edit_id=edit.id)
        return result

    # =========================================================================
    # Edit Resolution
    # =========================================================================

    def resolve_edit(self, client: AppstoreClient) -> Edit:
        """Find the edit to publish into, creating one when none is open.

        With ``replace_edit`` set, the active edit is deleted first so the run
        starts from a fresh edit.
        """
        phase = PublishPhase.RESOLVE_EDIT
        with _phase(phase, "Failed to resolve edit"):
            active = client.get_active_edit()
            if self._config.replace_edit and active is not None:
                self._logger.info("Deleting edit", edit_id=active.id)
                client.delete_edit(active)

            edit = client.get_active_edit()
            if edit is None:
                self._logger.info("Creating new edit")
                edit = client.create_edit()
        return edit

    # =========================================================================
    # Strategy A: Replace In Place
    # =========================================================================

    def replace_apks_in_place(
        self, client: AppstoreClient, edit: Edit, apk_paths: list[Path]
    ) -> list[str]:
        """Replace ``existing[i]`` with ``apk_paths[i]``, keeping IDs and targeting.

        Returns:
            IDs of the replaced APKs.
        """
        phase = PublishPhase.REPLACE_APKS
        with _phase(phase, "Failed to list existing APKs"):
            existing = client.list_apks(edit.id)
        if len(existing) != len(apk_paths):
            raise CountMismatchError(phase, len(existing), len(apk_paths))

        self._logger.info("Replacing APKs in existing edit", edit_id=edit.id, count=len(apk_paths))
        replaced: list[str] = []
        for apk, path in zip(existing, apk_paths):
            self._logger.info("Uploading", file=str(path), apk_id=apk.id)
            with _phase(phase, f"Failed to replace APK {apk.id}"):
                ok = client.replace_apk(edit.id, apk.id, path, path.name)
            if not ok:
                raise PublishError(phase, f"Failed to replace APK {apk.id} with {path.name}")
            replaced.append(apk.id)
        return replaced

    # =========================================================================
    # Strategy B: Upload New, Delete Old
    # =========================================================================

    def upload_new_and_delete_old(
        self, client: AppstoreClient, edit: Edit, apk_paths: list[Path]
    ) -> tuple[list[Apk], list[str]]:
        """Upload new APKs, move old targeting onto them, then delete the old APKs.

        Returns:
            Tuple of (uploaded APKs in input order, IDs of deleted APKs).
        """
        snapshots = self.snapshot_targeting(client, edit, apk_paths)
        new_apks = self.upload_apks(client, edit, apk_paths)
        self.disable_old_targeting(client, edit, snapshots)
        self.apply_targeting(client, edit, snapshots, new_apks)
        deleted = self.delete_old_apks(client, edit, snapshots)
        return new_apks, deleted

    def snapshot_targeting(
        self, client: AppstoreClient, edit: Edit, apk_paths: list[Path]
    ) -> list[TargetingSnapshot]:
        """Capture the targeting of every APK on the edit, in list order."""
        phase = PublishPhase.SNAPSHOT_TARGETING
        with _phase(phase, "Failed to list existing APKs"):
            old_apks = client.list_apks(edit.id)
        if len(old_apks) != len(apk_paths):
            raise CountMismatchError(phase, len(old_apks), len(apk_paths))

        self._logger.info("Getting targeting for old APK(s) in edit", count=len(old_apks))
        snapshots: list[TargetingSnapshot] = []
        for apk in old_apks:
            with _phase(phase, f"Failed to get targeting for APK {apk.id}"):
                targeting = client.get_apk_targeting(edit.id, apk.id)
            snapshots.append(TargetingSnapshot(apk, targeting))
        return snapshots

    def upload_apks(
        self, client: AppstoreClient, edit: Edit, apk_paths: list[Path]
    ) -> list[Apk]:
        """Upload every file in order. Already uploaded APKs stay on failure."""
        phase = PublishPhase.UPLOAD_APKS
        self._logger.info("Uploading new APK(s)", count=len(apk_paths))
        uploaded: list[Apk] = []
        for path in apk_paths:
            with _phase(phase, f"Failed to upload {path.name}"):
                apk = client.upload_apk(edit.id, path, path.name)
            if apk is None:
                raise PublishError(phase, f"Failed to upload new APK {path.name}")
            uploaded.append(apk)
        return uploaded

    def disable_old_targeting(
        self, client: AppstoreClient, edit: Edit, snapshots: list[TargetingSnapshot]
    ) -> None:
        """Stop the old APKs from targeting any device, using the snapshot ETags."""
        phase = PublishPhase.DISABLE_OLD_TARGETING
        self._logger.info("Removing targeting for old APK(s) in edit", count=len(snapshots))
        for snapshot in snapshots:
            with _phase(phase, f"Failed to disable targeting for APK {snapshot.apk.id}"):
                ok = client.set_apk_targeting(
                    edit.id, snapshot.apk.id, disable_targeting(snapshot.targeting)
                )
            if not ok:
                raise PublishError(
                    phase, f"Failed to delete targeting for old APK {snapshot.apk.id}"
                )

    def apply_targeting(
        self,
        client: AppstoreClient,
        edit: Edit,
        snapshots: list[TargetingSnapshot],
        new_apks: list[Apk],
    ) -> None:
        """Give ``new_apks[i]`` the targeting captured from old APK ``i``.

        The new APK's own targeting is fetched only for its ETag; the old rule
        set is sent bound to that ETag.
        """
        phase = PublishPhase.APPLY_TARGETING
        self._logger.info("Setting targeting for new APK(s) in edit", count=len(new_apks))
        for snapshot, apk in zip(snapshots, new_apks):
            with _phase(phase, f"Failed to get targeting on new APK {apk.id}"):
                current = client.get_apk_targeting(edit.id, apk.id)
            with _phase(phase, f"Failed to set targeting on new APK {apk.id}"):
                ok = client.set_apk_targeting(
                    edit.id, apk.id, snapshot.targeting.with_etag(current.etag)
                )
            if not ok:
                raise PublishError(phase, f"Failed to set targeting on new APK {apk.id}")
            self._logger.debug("Moved targeting", old_apk_id=snapshot.apk.id, new_apk_id=apk.id)

    def delete_old_apks(
        self, client: AppstoreClient, edit: Edit, snapshots: list[TargetingSnapshot]
    ) -> list[str]:
        """Delete the old APKs. Returns their IDs."""
        phase = PublishPhase.DELETE_OLD_APKS
        self._logger.info("Removing old APK(s) from edit", count=len(snapshots))
        deleted: list[str] = []
        for snapshot in snapshots:
            with _phase(phase, f"Failed to delete old APK {snapshot.apk.id}"):
                ok = client.delete_apk(edit.id, snapshot.apk.id)
            if not ok:
                raise PublishError(phase, f"Failed to delete old APK {snapshot.apk.id}")
            deleted.append(snapshot.apk.id)
        return deleted


@contextmanager
def _phase(phase: PublishPhase, message: str) -> Iterator[None]:
    """Re-raise client errors inside the block as a PublishError for ``phase``."""
    try:
        yield
    except PublishError:
        raise
    except AppstoreError as e:
        raise PublishError(phase, f"{message}: {e}") from e
