"""Pytest configuration and fixtures."""

from __future__ import annotations

import itertools
import json
from typing import TYPE_CHECKING, Any

import httpx
import pytest
import structlog

from amazon_appstore_mcp.client import AppstoreClient
from amazon_appstore_mcp.config import ClientSettings
from amazon_appstore_mcp.models import Token

if TYPE_CHECKING:
    from collections.abc import Generator
    from pathlib import Path

APP_ID = "amzn1.devportal.mobileapp.test"
ACCESS_TOKEN = "token-123"
API_PREFIX = f"/api/appstore/v1/applications/{APP_ID}/"


def device(device_id: str, status: str, name: str | None = None) -> dict[str, Any]:
    """Build a device targeting entry in wire format."""
    return {"id": device_id, "name": name or device_id, "status": status, "reason": None}


def targeting(
    amazon: list[dict[str, Any]] | None = None,
    non_amazon: list[dict[str, Any]] | None = None,
    other: str | None = "ALL",
) -> dict[str, Any]:
    """Build a targeting rule set in wire format."""
    return {
        "amazonDevices": amazon or [],
        "nonAmazonDevices": non_amazon or [],
        "otherAndroidDevices": other,
    }


class FakeAppstore:
    """In-memory Amazon Appstore behind an httpx.MockTransport.

    Serves the Login with Amazon token endpoint and the App Submission API for
    one application. Every resource carries an ETag that changes on mutation;
    mutating calls with a stale If-Match get 412.
    """

    def __init__(self) -> None:
        self.edit: dict[str, Any] | None = None
        self.apks: list[dict[str, Any]] = []
        self.targetings: dict[str, dict[str, Any]] = {}
        self.versions: dict[str, int] = {}
        self.default_targeting = targeting([device("fire-tv", "TARGETING")], other="ALL")
        self.log: list[tuple[str, str | None]] = []
        self.if_match: list[tuple[str, str | None, str]] = []
        self.token_requests: list[dict[str, str]] = []
        self._failures: dict[str, tuple[int | None, int]] = {}
        self._counts: dict[str, int] = {}
        self._ids = itertools.count(1)
        self._pending_files: dict[str, dict[str, Any]] = {}

    # -- test helpers ---------------------------------------------------------

    def open_edit(self, edit_id: str = "edit-1") -> str:
        self.edit = {"id": edit_id, "status": "IN_PROGRESS"}
        self.versions[edit_id] = 1
        return edit_id

    def add_apk(
        self,
        version_code: int = 1,
        name: str | None = None,
        apk_targeting: dict[str, Any] | None = None,
    ) -> str:
        apk_id = f"apk-{next(self._ids)}"
        self.apks.append(
            {"versionCode": version_code, "id": apk_id, "name": name or f"{apk_id}.apk"}
        )
        self.versions[apk_id] = 1
        self.targetings[apk_id] = json.loads(
            json.dumps(apk_targeting if apk_targeting is not None else self.default_targeting)
        )
        self.versions[f"{apk_id}/targeting"] = 1
        return apk_id

    def fail(self, operation: str, nth: int | None = None, status: int = 500) -> None:
        """Make ``operation`` fail, on every call or only on the ``nth`` call."""
        self._failures[operation] = (nth, status)

    def apk_ids(self) -> list[str]:
        return [apk["id"] for apk in self.apks]

    def operations(self) -> list[str]:
        return [operation for operation, _ in self.log]

    def etag(self, key: str) -> str:
        return f'"{key}-v{self.versions[key]}"'

    # -- transport ------------------------------------------------------------

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "api.amazon.com":
            return self._token(request)

        assert request.headers["Authorization"] == f"Bearer {ACCESS_TOKEN}"
        path = request.url.path
        assert path.startswith(API_PREFIX), path
        return self._route(request, path[len(API_PREFIX) :].split("/"))

    def _record(self, operation: str, subject: str | None = None) -> httpx.Response | None:
        self.log.append((operation, subject))
        self._counts[operation] = self._counts.get(operation, 0) + 1
        failure = self._failures.get(operation)
        if failure is not None:
            nth, status = failure
            if nth is None or nth == self._counts[operation]:
                return httpx.Response(status, json={"message": f"{operation} failed"})
        return None

    def _precondition(
        self, request: httpx.Request, operation: str, key: str
    ) -> httpx.Response | None:
        sent = request.headers.get("If-Match")
        self.if_match.append((operation, sent, self.etag(key)))
        if sent != self.etag(key):
            return httpx.Response(412, json={"message": "ETag mismatch"})
        return None

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = dict(httpx.QueryParams(request.content.decode()))
        self.token_requests.append(form)
        if failed := self._record("token"):
            return failed
        return httpx.Response(
            200,
            json={
                "access_token": ACCESS_TOKEN,
                "token_type": "bearer",
                "expires_in": 3600,
                "scope": form.get("scope"),
            },
        )

    def _route(self, request: httpx.Request, parts: list[str]) -> httpx.Response:
        method = request.method
        if parts == ["edits"]:
            return self._active_edit() if method == "GET" else self._create_edit()

        edit_id = parts[1]
        if len(parts) == 2:
            return self._get_edit(edit_id) if method == "GET" else self._delete_edit(request)

        assert self.edit is not None and edit_id == self.edit["id"]
        rest = parts[3:]
        if not rest:
            return self._list_apks()
        if rest == ["upload"]:
            return self._upload(request, "upload")
        if rest == ["large", "upload"]:
            return self._upload_large(request)
        if rest == ["attach"]:
            return self._attach(request)

        apk_id = rest[0]
        if len(rest) == 1:
            return self._get_apk(apk_id) if method == "GET" else self._delete_apk(request, apk_id)
        if rest[1] == "replace":
            return self._replace(request, apk_id)
        if method == "GET":
            return self._get_targeting(apk_id)
        return self._set_targeting(request, apk_id)

    def _active_edit(self) -> httpx.Response:
        if failed := self._record("get_active_edit"):
            return failed
        if self.edit is None:
            return httpx.Response(404, json={"message": "No active edit"})
        return httpx.Response(
            200, json=self.edit, headers={"ETag": self.etag(self.edit["id"])}
        )

    def _create_edit(self) -> httpx.Response:
        if failed := self._record("create_edit"):
            return failed
        edit_id = self.open_edit(f"edit-{next(self._ids)}")
        return httpx.Response(200, json=self.edit, headers={"ETag": self.etag(edit_id)})

    def _get_edit(self, edit_id: str) -> httpx.Response:
        if failed := self._record("get_edit", edit_id):
            return failed
        assert self.edit is not None
        return httpx.Response(200, json=self.edit, headers={"ETag": self.etag(edit_id)})

    def _delete_edit(self, request: httpx.Request) -> httpx.Response:
        assert self.edit is not None
        edit_id = self.edit["id"]
        if failed := self._record("delete_edit", edit_id):
            return failed
        if mismatch := self._precondition(request, "delete_edit", edit_id):
            return mismatch
        self.edit = None
        self.apks = []
        return httpx.Response(204)

    def _list_apks(self) -> httpx.Response:
        if failed := self._record("list_apks"):
            return failed
        return httpx.Response(200, json=self.apks)

    def _find(self, apk_id: str) -> dict[str, Any]:
        return next(apk for apk in self.apks if apk["id"] == apk_id)

    def _get_apk(self, apk_id: str) -> httpx.Response:
        if failed := self._record("get_apk", apk_id):
            return failed
        return httpx.Response(200, json=self._find(apk_id), headers={"ETag": self.etag(apk_id)})

    def _upload(self, request: httpx.Request, operation: str) -> httpx.Response:
        filename = request.headers.get("filename")
        if failed := self._record(operation, filename):
            return failed
        assert request.headers["Content-Type"] == "application/vnd.android.package-archive"
        apk_id = self.add_apk(version_code=len(self.apks) + 100, name=filename)
        apk = self._find(apk_id)
        apk["content"] = request.content
        return httpx.Response(
            200,
            json={key: apk[key] for key in ("versionCode", "id", "name")},
            headers={"ETag": self.etag(apk_id)},
        )

    def _upload_large(self, request: httpx.Request) -> httpx.Response:
        filename = request.headers.get("fileName")
        if failed := self._record("upload_large", filename):
            return failed
        file_id = f"file-{next(self._ids)}"
        self._pending_files[file_id] = {"name": filename, "content": request.content}
        return httpx.Response(200, json={"fileId": file_id})

    def _attach(self, request: httpx.Request) -> httpx.Response:
        reference = json.loads(request.content)
        if failed := self._record("attach", reference.get("fileId")):
            return failed
        assert request.headers["Content-Type"] == "application/json"
        pending = self._pending_files.pop(reference["fileId"])
        apk_id = self.add_apk(version_code=len(self.apks) + 100, name=pending["name"])
        return httpx.Response(
            200,
            json={key: self._find(apk_id)[key] for key in ("versionCode", "id", "name")},
            headers={"ETag": self.etag(apk_id)},
        )

    def _replace(self, request: httpx.Request, apk_id: str) -> httpx.Response:
        if failed := self._record("replace", apk_id):
            return failed
        if mismatch := self._precondition(request, "replace", apk_id):
            return mismatch
        apk = self._find(apk_id)
        apk["content"] = request.content
        apk["name"] = request.headers.get("filename")
        self.versions[apk_id] += 1
        return httpx.Response(200, json={"status": "REPLACED"})

    def _delete_apk(self, request: httpx.Request, apk_id: str) -> httpx.Response:
        if failed := self._record("delete_apk", apk_id):
            return failed
        if mismatch := self._precondition(request, "delete_apk", apk_id):
            return mismatch
        self.apks = [apk for apk in self.apks if apk["id"] != apk_id]
        return httpx.Response(204)

    def _get_targeting(self, apk_id: str) -> httpx.Response:
        if failed := self._record("get_targeting", apk_id):
            return failed
        return httpx.Response(
            200,
            json=self.targetings[apk_id],
            headers={"ETag": self.etag(f"{apk_id}/targeting")},
        )

    def _set_targeting(self, request: httpx.Request, apk_id: str) -> httpx.Response:
        if failed := self._record("set_targeting", apk_id):
            return failed
        if mismatch := self._precondition(request, "set_targeting", f"{apk_id}/targeting"):
            return mismatch
        self.targetings[apk_id] = json.loads(request.content)
        self.versions[f"{apk_id}/targeting"] += 1
        return httpx.Response(200, json=self.targetings[apk_id])


@pytest.fixture(autouse=True)
def _reset_structlog() -> Generator[None, None, None]:
    """Drop logging configuration that may point at a closed capture stream."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def appstore() -> FakeAppstore:
    """In-memory Appstore with an open edit and no APKs."""
    store = FakeAppstore()
    store.open_edit()
    return store


@pytest.fixture
def transport(appstore: FakeAppstore) -> httpx.MockTransport:
    return httpx.MockTransport(appstore)


@pytest.fixture
def settings() -> ClientSettings:
    return ClientSettings()


@pytest.fixture
def token() -> Token:
    return Token(access_token=ACCESS_TOKEN, expires_in=3600)


@pytest.fixture
def client(
    token: Token, settings: ClientSettings, transport: httpx.MockTransport
) -> AppstoreClient:
    """Create an AppstoreClient talking to the fake Appstore."""
    return AppstoreClient(token, APP_ID, settings, transport)


@pytest.fixture
def security_profile(tmp_path: Path) -> Path:
    """Write an LWA security profile as downloaded from the developer console."""
    profile = tmp_path / "security-profile.json"
    profile.write_text(
        json.dumps(
            {
                "web": {
                    "client_id": "amzn1.application-oa2-client.test",
                    "client_secret": "secret",
                }
            }
        )
    )
    return profile


@pytest.fixture
def apk_files(tmp_path: Path) -> list[Path]:
    """Two small APK files."""
    files = []
    for name in ("app-arm.apk", "app-x86.apk"):
        apk = tmp_path / name
        apk.write_bytes(f"fake apk content {name}".encode())
        files.append(apk)
    return files
