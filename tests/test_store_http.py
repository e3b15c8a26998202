"""Tests for the HTTP artifact store.

Uses respx to mock the remote artifact service.
"""

import hashlib
import json
from pathlib import Path

import httpx
import pytest
import respx

from kata_static.errors import ArtifactNotFoundError, StoreError
from kata_static.store.http import HttpArtifactStore

BASE_URL = "http://artifacts.example"
PAYLOAD = b"kernel payload"
SHA256 = hashlib.sha256(PAYLOAD).hexdigest()


def _meta(name: str, sha256: str = SHA256) -> dict:
    return {
        "name": name,
        "filename": "kata-static-kernel.tar.xz",
        "size_bytes": len(PAYLOAD),
        "sha256": sha256,
        "expires_at": "2030-01-01T00:00:00+00:00",
    }


@pytest.fixture
def store():
    client = httpx.Client(base_url=BASE_URL)
    yield HttpArtifactStore(client)
    client.close()


class TestPut:
    """Tests for uploads."""

    @respx.mock
    def test_upload(self, store: HttpArtifactStore, tmp_path: Path) -> None:
        path = tmp_path / "kata-static-kernel.tar.xz"
        path.write_bytes(PAYLOAD)
        route = respx.put(f"{BASE_URL}/artifacts/kata-artifacts-amd64-kernel").mock(
            return_value=httpx.Response(200, json=_meta("kata-artifacts-amd64-kernel"))
        )

        stored = store.put("kata-artifacts-amd64-kernel", path, retention_days=15)

        assert stored.sha256 == SHA256
        assert stored.expires_at is not None
        request = route.calls.last.request
        assert request.url.params["filename"] == "kata-static-kernel.tar.xz"
        assert request.url.params["retention_days"] == "15"

    @respx.mock
    def test_upload_server_error(self, store: HttpArtifactStore, tmp_path: Path) -> None:
        path = tmp_path / "kata-static-kernel.tar.xz"
        path.write_bytes(PAYLOAD)
        respx.put(f"{BASE_URL}/artifacts/kernel").mock(return_value=httpx.Response(500))

        with pytest.raises(StoreError) as exc_info:
            store.put("kernel", path)
        assert exc_info.value.code == "http_error"

    def test_invalid_name_rejected_locally(self, store: HttpArtifactStore, tmp_path: Path) -> None:
        with pytest.raises(StoreError) as exc_info:
            store.put("../kernel", tmp_path / "x")
        assert exc_info.value.code == "invalid_name"


class TestGet:
    """Tests for downloads."""

    @respx.mock
    def test_download_verified(self, store: HttpArtifactStore, tmp_path: Path) -> None:
        respx.get(f"{BASE_URL}/artifacts/kernel").mock(
            return_value=httpx.Response(200, json=_meta("kernel"))
        )
        respx.get(f"{BASE_URL}/artifacts/kernel/content").mock(
            return_value=httpx.Response(200, content=PAYLOAD)
        )

        path = store.get("kernel", tmp_path / "dl")

        assert path == tmp_path / "dl" / "kata-static-kernel.tar.xz"
        assert path.read_bytes() == PAYLOAD

    @respx.mock
    def test_checksum_mismatch(self, store: HttpArtifactStore, tmp_path: Path) -> None:
        respx.get(f"{BASE_URL}/artifacts/kernel").mock(
            return_value=httpx.Response(200, json=_meta("kernel", sha256="0" * 64))
        )
        respx.get(f"{BASE_URL}/artifacts/kernel/content").mock(
            return_value=httpx.Response(200, content=PAYLOAD)
        )

        with pytest.raises(StoreError) as exc_info:
            store.get("kernel", tmp_path / "dl")

        assert exc_info.value.code == "checksum_mismatch"
        assert not (tmp_path / "dl" / "kata-static-kernel.tar.xz").exists()

    @respx.mock
    def test_not_found(self, store: HttpArtifactStore, tmp_path: Path) -> None:
        respx.get(f"{BASE_URL}/artifacts/kernel").mock(return_value=httpx.Response(404))

        with pytest.raises(ArtifactNotFoundError):
            store.get("kernel", tmp_path)

    @respx.mock
    def test_timeout(self, store: HttpArtifactStore, tmp_path: Path) -> None:
        respx.get(f"{BASE_URL}/artifacts/kernel").mock(
            side_effect=httpx.ReadTimeout("timed out")
        )

        with pytest.raises(StoreError) as exc_info:
            store.get("kernel", tmp_path)
        assert exc_info.value.code == "timeout"

    @respx.mock
    def test_network_error(self, store: HttpArtifactStore, tmp_path: Path) -> None:
        respx.get(f"{BASE_URL}/artifacts/kernel").mock(
            side_effect=httpx.ConnectError("refused")
        )

        with pytest.raises(StoreError) as exc_info:
            store.get("kernel", tmp_path)
        assert exc_info.value.code == "network_error"

    @respx.mock
    def test_invalid_json(self, store: HttpArtifactStore, tmp_path: Path) -> None:
        respx.get(f"{BASE_URL}/artifacts/kernel").mock(
            return_value=httpx.Response(200, content=b"<html>")
        )

        with pytest.raises(StoreError) as exc_info:
            store.get("kernel", tmp_path)
        assert exc_info.value.code == "invalid_metadata"


class TestListDelete:
    """Tests for listing and deleting."""

    @respx.mock
    def test_list(self, store: HttpArtifactStore) -> None:
        route = respx.get(f"{BASE_URL}/artifacts").mock(
            return_value=httpx.Response(200, json=[_meta("b"), _meta("a")])
        )

        listed = store.list("kata-artifacts-amd64-*")

        assert [a.name for a in listed] == ["a", "b"]
        assert route.calls.last.request.url.params["pattern"] == "kata-artifacts-amd64-*"

    @respx.mock
    def test_list_not_array(self, store: HttpArtifactStore) -> None:
        respx.get(f"{BASE_URL}/artifacts").mock(
            return_value=httpx.Response(200, content=json.dumps({"a": 1}).encode())
        )
        with pytest.raises(StoreError):
            store.list()

    @respx.mock
    def test_delete(self, store: HttpArtifactStore) -> None:
        respx.delete(f"{BASE_URL}/artifacts/a").mock(return_value=httpx.Response(204))
        respx.delete(f"{BASE_URL}/artifacts/b").mock(return_value=httpx.Response(404))

        assert store.delete("a") is True
        assert store.delete("b") is False
