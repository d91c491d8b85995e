"""Amazon Appstore App Submission API client."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from amazon_appstore_mcp.config import ClientSettings
from amazon_appstore_mcp.errors import AttachFailure, NetworkOperationFailure
from amazon_appstore_mcp.models import Apk, ApkTargeting, Edit, Token

logger = structlog.get_logger(__name__)

APK_CONTENT_TYPE = "application/vnd.android.package-archive"


class AppstoreClient:
    """Client for the edits, APK and targeting resources of one application.

    Every mutating call carries an ``If-Match`` header taken from a read made
    immediately before it; ETags are never cached between calls.
    """

    def __init__(
        self,
        token: Token,
        application_id: str,
        settings: ClientSettings | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the Appstore client.

        Args:
            token: Access token from Login with Amazon.
            application_id: Amazon application ID all calls are scoped to.
            settings: Transport settings; defaults are used when omitted.
            transport: Optional httpx transport, used by tests.
        """
        self._settings = settings or ClientSettings()
        self._application_id = application_id
        self._logger = logger.bind(component="AppstoreClient", application_id=application_id)
        self._http = httpx.Client(
            base_url=self._settings.base_url,
            timeout=self._settings.timeout,
            headers={"Authorization": token.authorization, "Accept": "application/json"},
            transport=transport,
            event_hooks={"request": [self._log_request], "response": [self._log_response]},
        )

    def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        self._http.close()

    def __enter__(self) -> AppstoreClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # =========================================================================
    # Transport Helpers
    # =========================================================================

    def _log_request(self, request: httpx.Request) -> None:
        self._logger.debug("HTTP request", method=request.method, url=str(request.url))

    def _log_response(self, response: httpx.Response) -> None:
        self._logger.debug(
            "HTTP response",
            method=response.request.method,
            url=str(response.request.url),
            status=response.status_code,
            etag=response.headers.get("ETag"),
        )

    def _path(self, *segments: str) -> str:
        base = f"{self._settings.api_version}/applications/{self._application_id}"
        return "/".join([base, *segments])

    def _send(
        self,
        operation: str,
        method: str,
        path: str,
        error_cls: type[NetworkOperationFailure] = NetworkOperationFailure,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request, turning transport errors into ``error_cls``."""
        try:
            return self._http.request(method, path, **kwargs)
        except httpx.TransportError as e:
            self._logger.exception("Request failed", operation=operation, error=str(e))
            raise error_cls(operation, f"transport error: {e}") from e

    def _check(
        self,
        operation: str,
        response: httpx.Response,
        error_cls: type[NetworkOperationFailure] = NetworkOperationFailure,
    ) -> httpx.Response:
        if not response.is_success:
            self._logger.error(
                "Request unsuccessful",
                operation=operation,
                status=response.status_code,
                body=response.text,
            )
            raise error_cls(operation, "request was not successful", response.status_code)
        return response

    def _parse(self, operation: str, model: type[Any], response: httpx.Response) -> Any:
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise NetworkOperationFailure(operation, f"unexpected response body: {e}") from e

    # =========================================================================
    # Edits API
    # =========================================================================

    def get_active_edit(self) -> Edit | None:
        """Get the edit currently open for the application.

        Returns:
            The active edit, or None if there is none.
        """
        operation = "get active edit"
        response = self._send(operation, "GET", self._path("edits"))
        if response.status_code == 404:
            return None
        self._check(operation, response)

        if not response.content.strip():
            return None
        try:
            body = response.json()
        except ValueError as e:
            raise NetworkOperationFailure(operation, f"unexpected response body: {e}") from e
        if not isinstance(body, dict) or not body.get("id"):
            return None

        edit: Edit = self._parse(operation, Edit, response)
        return edit.model_copy(update={"etag": response.headers.get("ETag", "")})

    def get_edit(self, edit_id: str) -> Edit:
        """Fetch an edit together with its current ETag."""
        operation = "get edit"
        response = self._check(
            operation, self._send(operation, "GET", self._path("edits", edit_id))
        )
        edit: Edit = self._parse(operation, Edit, response)
        return edit.model_copy(update={"etag": response.headers.get("ETag", "")})

    def create_edit(self) -> Edit:
        """Create a new edit for the application."""
        operation = "create edit"
        response = self._check(operation, self._send(operation, "POST", self._path("edits")))
        edit: Edit = self._parse(operation, Edit, response)
        self._logger.info("Created edit", edit_id=edit.id)
        return edit.model_copy(update={"etag": response.headers.get("ETag", "")})

    def delete_edit(self, edit: Edit) -> None:
        """Delete an edit without committing it.

        Args:
            edit: Edit to delete. Its ETag is refreshed before the delete.

        Raises:
            NetworkOperationFailure: If the edit cannot be fetched or deleted.
        """
        operation = "delete edit"
        current = self.get_edit(edit.id)
        response = self._send(
            operation,
            "DELETE",
            self._path("edits", edit.id),
            headers={"If-Match": current.etag},
        )
        self._check(operation, response)
        self._logger.info("Deleted edit", edit_id=edit.id)

    # =========================================================================
    # APKs API
    # =========================================================================

    def list_apks(self, edit_id: str) -> list[Apk]:
        """List the APKs of an edit in server order.

        The list endpoint carries no per-APK ETag; use ``get_apk`` before mutating.
        """
        operation = "list apks"
        response = self._check(
            operation, self._send(operation, "GET", self._path("edits", edit_id, "apks"))
        )
        try:
            return [Apk.model_validate(item) for item in response.json()]
        except (TypeError, ValueError, ValidationError) as e:
            raise NetworkOperationFailure(operation, f"unexpected response body: {e}") from e

    def get_apk(self, edit_id: str, apk_id: str) -> Apk:
        """Fetch an APK together with its current ETag."""
        operation = "get apk"
        response = self._check(
            operation, self._send(operation, "GET", self._path("edits", edit_id, "apks", apk_id))
        )
        apk: Apk = self._parse(operation, Apk, response)
        return apk.model_copy(update={"etag": response.headers.get("ETag", "")})

    def upload_apk(
        self, edit_id: str, apk_path: str | Path, filename: str | None = None
    ) -> Apk | None:
        """Upload an APK to an edit.

        Files at or above ``large_upload_threshold`` go through the two-step
        large upload: the raw bytes are uploaded first, then the returned file
        reference is attached to the edit.

        Args:
            edit_id: Edit to upload to.
            apk_path: Path to the APK file.
            filename: File name sent to the store. Defaults to the file's name.

        Returns:
            The new APK, or None if the upload was rejected.

        Raises:
            AttachFailure: If a large upload succeeded but could not be attached.
        """
        path = Path(apk_path)
        filename = filename or path.name
        size = path.stat().st_size

        if size >= self._settings.large_upload_threshold:
            self._logger.info("Uploading large APK", edit_id=edit_id, filename=filename, size=size)
            return self._upload_large_apk(edit_id, path, filename)

        operation = "upload apk"
        self._logger.info("Uploading APK", edit_id=edit_id, filename=filename, size=size)
        with path.open("rb") as apk_file:
            response = self._send(
                operation,
                "POST",
                self._path("edits", edit_id, "apks", "upload"),
                headers={"Content-Type": APK_CONTENT_TYPE, "filename": filename},
                content=apk_file,
            )
        if not response.is_success:
            self._logger.error("Upload rejected", filename=filename, status=response.status_code)
            return None

        apk: Apk = self._parse(operation, Apk, response)
        return apk.model_copy(update={"etag": response.headers.get("ETag", "")})

    def _upload_large_apk(self, edit_id: str, path: Path, filename: str) -> Apk | None:
        operation = "upload large apk"
        with path.open("rb") as apk_file:
            response = self._send(
                operation,
                "POST",
                self._path("edits", edit_id, "apks", "large", "upload"),
                headers={"Content-Type": APK_CONTENT_TYPE, "fileName": filename},
                content=apk_file,
            )
        if not response.is_success:
            self._logger.error(
                "Large upload rejected", filename=filename, status=response.status_code
            )
            return None

        return self.attach_apk(edit_id, response.text)

    def attach_apk(self, edit_id: str, file_reference: str) -> Apk:
        """Attach a large-upload file reference to an edit.

        Args:
            edit_id: Edit to attach to.
            file_reference: Opaque JSON payload returned by the large upload.

        Returns:
            The attached APK.

        Raises:
            AttachFailure: If the attach call fails.
        """
        operation = "attach apk"
        response = self._send(
            operation,
            "POST",
            self._path("edits", edit_id, "apks", "attach"),
            error_cls=AttachFailure,
            headers={"Content-Type": "application/json"},
            content=file_reference,
        )
        self._check(operation, response, error_cls=AttachFailure)
        apk: Apk = self._parse(operation, Apk, response)
        self._logger.info("Attached APK", edit_id=edit_id, apk_id=apk.id)
        return apk.model_copy(update={"etag": response.headers.get("ETag", "")})

    def replace_apk(
        self,
        edit_id: str,
        apk_id: str,
        apk_path: str | Path,
        filename: str | None = None,
    ) -> bool:
        """Replace an APK's content, keeping its ID and targeting.

        Returns:
            True if the store accepted the replacement.
        """
        path = Path(apk_path)
        filename = filename or path.name
        current = self.get_apk(edit_id, apk_id)

        self._logger.info("Replacing APK", edit_id=edit_id, apk_id=apk_id, filename=filename)
        with path.open("rb") as apk_file:
            response = self._send(
                "replace apk",
                "PUT",
                self._path("edits", edit_id, "apks", apk_id, "replace"),
                headers={
                    "Content-Type": APK_CONTENT_TYPE,
                    "If-Match": current.etag,
                    "filename": filename,
                },
                content=apk_file,
            )
        if not response.is_success:
            self._logger.error("Replace rejected", apk_id=apk_id, status=response.status_code)
        return response.is_success

    def delete_apk(self, edit_id: str, apk_id: str) -> bool:
        """Remove an APK from an edit.

        Returns:
            True if the store accepted the delete.
        """
        current = self.get_apk(edit_id, apk_id)
        response = self._send(
            "delete apk",
            "DELETE",
            self._path("edits", edit_id, "apks", apk_id),
            headers={"If-Match": current.etag},
        )
        if not response.is_success:
            self._logger.error("Delete rejected", apk_id=apk_id, status=response.status_code)
        else:
            self._logger.info("Deleted APK", edit_id=edit_id, apk_id=apk_id)
        return response.is_success

    # =========================================================================
    # Targeting API
    # =========================================================================

    def get_apk_targeting(self, edit_id: str, apk_id: str) -> ApkTargeting:
        """Fetch an APK's device targeting bound to the ETag of this response."""
        operation = "get apk targeting"
        response = self._check(
            operation,
            self._send(operation, "GET", self._path("edits", edit_id, "apks", apk_id, "targeting")),
        )
        etag = response.headers.get("ETag")
        if not etag:
            raise NetworkOperationFailure(operation, "response carried no ETag header")

        targeting: ApkTargeting = self._parse(operation, ApkTargeting, response)
        return targeting.with_etag(etag)

    def set_apk_targeting(self, edit_id: str, apk_id: str, targeting: ApkTargeting) -> bool:
        """Replace an APK's device targeting, guarded by the targeting's ETag.

        Returns:
            True if the store accepted the targeting.
        """
        response = self._send(
            "set apk targeting",
            "PUT",
            self._path("edits", edit_id, "apks", apk_id, "targeting"),
            headers={"If-Match": targeting.etag},
            json=targeting.to_wire(),
        )
        if not response.is_success:
            self._logger.error(
                "Targeting rejected", apk_id=apk_id, status=response.status_code
            )
        return response.is_success
