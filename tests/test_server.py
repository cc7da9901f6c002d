"""HTTP-level tests for the content, save, data and media endpoints."""

from __future__ import annotations

from pathlib import Path

from conftest import build_zip
from fastapi.testclient import TestClient

import server
from elpx_backend.config import ACCESS_MARKER_FILENAME
from elpx_backend.media import MediaRepository


COURSE = {"index.html": "<html>A</html>", "css/s.css": "body{}"}


def _upload(client: TestClient, headers: dict[str, str], entries: dict, name: str = "course.elpx"):
    files = {"file": (name, build_zip(entries), "application/zip")}
    return client.post("/api/media", files=files, headers=headers)


class TestLifespan:
    def test_startup_prepares_content_root(self, client: TestClient, files_root: Path):
        assert (files_root / "exelearning" / ACCESS_MARKER_FILENAME).is_file()
        assert (files_root / "original").is_dir()


class TestCreateMedia:
    def test_upload_processes_package(self, client: TestClient, auth_headers):
        response = _upload(client, auth_headers, COURSE)
        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["hasPreview"] is True
        assert body["previewUrl"].startswith("/content/")
        assert body["previewUrl"].endswith("/index.html")

    def test_upload_without_preview(self, client: TestClient, auth_headers):
        body = _upload(client, auth_headers, {"content.xml": "<ode/>"}).json()
        assert body["hasPreview"] is False
        assert body["previewUrl"] is None

    def test_broken_package_is_kept_without_preview(self, client: TestClient, auth_headers):
        files = {"file": ("broken.elpx", b"not a zip", "application/zip")}
        response = client.post("/api/media", files=files, headers=auth_headers)
        assert response.status_code == 201
        assert response.json()["hasPreview"] is False

    def test_rejects_other_file_types(self, client: TestClient, auth_headers):
        response = _upload(client, auth_headers, COURSE, name="notes.pdf")
        assert response.status_code == 400
        assert response.json() == {"success": False, "message": "Unsupported file type"}

    def test_requires_credentials(self, client: TestClient):
        response = _upload(client, {}, COURSE)
        assert response.status_code == 401
        assert response.json()["success"] is False

    def test_wrong_credentials(self, client: TestClient):
        response = _upload(client, {"X-API-Key": "wrong"}, COURSE)
        assert response.status_code == 403

    def test_missing_file(self, client: TestClient, auth_headers):
        response = client.post("/api/media", headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["message"] == "No file uploaded"

    def test_rejects_type_before_reading_body(self, client: TestClient, auth_headers, monkeypatch):
        async def _unexpected_read(*args, **kwargs):
            raise AssertionError("upload body was read")

        monkeypatch.setattr(server, "_read_upload", _unexpected_read)
        response = _upload(client, auth_headers, COURSE, name="notes.pdf")
        assert response.status_code == 400
        assert response.json()["message"] == "Unsupported file type"

    def test_storage_failure(self, client: TestClient, auth_headers, monkeypatch):
        def _disk_full(self, source_name, content):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(MediaRepository, "create", _disk_full)
        response = _upload(client, auth_headers, COURSE)
        assert response.status_code == 500
        assert response.json() == {"success": False, "message": "Upload failed: could not store file"}


class TestContent:
    def test_serves_css_without_csp(self, client: TestClient, auth_headers):
        preview_url = _upload(client, auth_headers, COURSE).json()["previewUrl"]
        css_url = preview_url.replace("index.html", "css/s.css")

        response = client.get(css_url)
        assert response.status_code == 200
        assert response.headers["content-type"] == "text/css"
        assert response.headers["content-length"] == "6"
        assert "content-security-policy" not in response.headers
        assert response.content == b"body{}"

    def test_serves_html_with_csp(self, client: TestClient, auth_headers):
        preview_url = _upload(client, auth_headers, COURSE).json()["previewUrl"]
        response = client.get(preview_url)
        assert response.status_code == 200
        assert response.headers["content-type"] == "text/html"
        assert "default-src 'self'" in response.headers["content-security-policy"]
        assert response.headers["x-frame-options"] == "SAMEORIGIN"
        assert response.headers["cache-control"] == "public, max-age=3600"

    def test_bare_hash_serves_index(self, client: TestClient, auth_headers):
        preview_url = _upload(client, auth_headers, COURSE).json()["previewUrl"]
        bare = preview_url.rsplit("/", 1)[0]
        response = client.get(bare)
        assert response.status_code == 200
        assert response.content == b"<html>A</html>"

    def test_invalid_identifier(self, client: TestClient):
        response = client.get("/content/zzzz-notahash/index.html")
        assert response.status_code == 404
        assert response.text == "Invalid content identifier"
        assert response.headers["content-type"].startswith("text/plain")

    def test_encoded_traversal(self, client: TestClient, auth_headers):
        preview_url = _upload(client, auth_headers, COURSE).json()["previewUrl"]
        base = preview_url.rsplit("/", 1)[0]
        response = client.get(f"{base}/css/%252e%252e/index.html")
        assert response.status_code == 404

    def test_marker_is_not_reachable(self, client: TestClient):
        assert client.get("/content/.htaccess").status_code == 404


class TestSave:
    def test_replaces_package(self, client: TestClient, auth_headers):
        created = _upload(client, auth_headers, {"content.xml": "<ode/>"}).json()
        media_id = created["media_id"]

        files = {"file": ("edited.elpx", build_zip({"index.html": "<html>B</html>"}), "application/zip")}
        response = client.post(f"/api/save/{media_id}", files=files, headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "File saved successfully"
        assert body["media_id"] == media_id
        assert client.get(body["preview_url"]).content == b"<html>B</html>"

    def test_old_artifact_is_removed(self, client: TestClient, auth_headers):
        created = _upload(client, auth_headers, COURSE).json()
        old_url = created["previewUrl"]

        files = {"file": ("edited.elpx", build_zip(COURSE), "application/zip")}
        new_url = client.post(f"/api/save/{created['media_id']}", files=files, headers=auth_headers).json()["preview_url"]

        assert new_url != old_url
        assert client.get(old_url).status_code == 404
        assert client.get(new_url).status_code == 200

    def test_invalid_archive(self, client: TestClient, auth_headers, files_root: Path):
        created = _upload(client, auth_headers, COURSE).json()
        original = files_root / "original" / created["filename"]
        before = original.read_bytes()

        files = {"file": ("edited.elpx", build_zip({"readme.txt": "hi"}), "application/zip")}
        response = client.post(f"/api/save/{created['media_id']}", files=files, headers=auth_headers)

        assert response.status_code == 400
        assert response.json() == {"success": False, "message": "Invalid eXeLearning file"}
        assert original.read_bytes() == before
        assert client.get(created["previewUrl"]).status_code == 200

    def test_unknown_media(self, client: TestClient, auth_headers):
        files = {"file": ("edited.elpx", build_zip(COURSE), "application/zip")}
        response = client.post("/api/save/9999", files=files, headers=auth_headers)
        assert response.status_code == 404
        assert response.json()["message"] == "Media not found"

    def test_requires_credentials(self, client: TestClient, auth_headers):
        media_id = _upload(client, auth_headers, COURSE).json()["media_id"]
        files = {"file": ("edited.elpx", build_zip(COURSE), "application/zip")}
        assert client.post(f"/api/save/{media_id}", files=files).status_code == 401

    def test_no_file(self, client: TestClient, auth_headers):
        media_id = _upload(client, auth_headers, COURSE).json()["media_id"]
        response = client.post(f"/api/save/{media_id}", headers=auth_headers)
        assert response.status_code == 400

    def test_wrong_method(self, client: TestClient):
        response = client.get("/api/save/1")
        assert response.status_code == 405
        assert response.json()["success"] is False

    def test_non_numeric_id(self, client: TestClient, auth_headers):
        files = {"file": ("edited.elpx", build_zip(COURSE), "application/zip")}
        response = client.post("/api/save/abc", files=files, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_extraction_failure_hides_paths(self, client: TestClient, auth_headers, files_root: Path):
        created = _upload(client, auth_headers, COURSE).json()
        # 'a' is a file, so 'a/b' can't be written below it.
        broken = build_zip({"index.html": "<html>B</html>", "a": "file", "a/b": "nested"})
        files = {"file": ("edited.elpx", broken, "application/zip")}
        response = client.post(f"/api/save/{created['media_id']}", files=files, headers=auth_headers)

        assert response.status_code == 500
        message = response.json()["message"]
        assert message == "Save failed: Failed to extract file"
        assert str(files_root) not in message
        assert client.get(created["previewUrl"]).status_code == 200

    def test_unwritable_staging_dir(self, client: TestClient, auth_headers, files_root: Path):
        media_id = _upload(client, auth_headers, COURSE).json()["media_id"]
        (files_root / "tmp").write_text("in the way")
        files = {"file": ("edited.elpx", build_zip(COURSE), "application/zip")}
        response = client.post(f"/api/save/{media_id}", files=files, headers=auth_headers)

        assert response.status_code == 500
        assert response.json() == {"success": False, "message": "Save failed: could not store upload"}


class TestData:
    def test_reports_status(self, client: TestClient, auth_headers):
        created = _upload(client, auth_headers, COURSE, name="Unit 1.elpx").json()
        response = client.get(f"/api/data/{created['media_id']}")
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["id"] == created["media_id"]
        assert body["title"] == "Unit 1.elpx"
        assert body["filename"] == created["filename"]
        assert body["hasPreview"] is True
        assert body["previewUrl"] == created["previewUrl"]
        assert body["url"] == f"/files/original/{created['filename']}"

    def test_original_file_download(self, client: TestClient, auth_headers):
        created = _upload(client, auth_headers, COURSE).json()
        url = client.get(f"/api/data/{created['media_id']}").json()["url"]
        response = client.get(url)
        assert response.status_code == 200
        assert response.content[:2] == b"PK"
        assert response.headers["x-content-type-options"] == "nosniff"

    def test_original_file_rejects_unknown(self, client: TestClient):
        assert client.get("/files/original/missing.elpx").status_code == 404

    def test_unknown_media(self, client: TestClient):
        response = client.get("/api/data/12345")
        assert response.status_code == 404
        assert response.json() == {"success": False, "message": "Media not found"}


class TestDeleteMedia:
    def test_cleans_up(self, client: TestClient, auth_headers, files_root: Path):
        created = _upload(client, auth_headers, COURSE).json()
        media_id = created["media_id"]

        response = client.delete(f"/api/media/{media_id}", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert client.get(created["previewUrl"]).status_code == 404
        assert client.get(f"/api/data/{media_id}").status_code == 404
        assert not (files_root / "original" / created["filename"]).exists()

    def test_unknown(self, client: TestClient, auth_headers):
        assert client.delete("/api/media/777", headers=auth_headers).status_code == 404

    def test_requires_credentials(self, client: TestClient, auth_headers):
        media_id = _upload(client, auth_headers, COURSE).json()["media_id"]
        assert client.delete(f"/api/media/{media_id}").status_code == 401
