"""Unit tests for server-side copies and sharing."""

import logging

import pytest

import gupload
from conftest import API, FakeResponse


FOLDER = "folder123"
SOURCE = {
    "id": "src",
    "name": "doc.pdf",
    "mimeType": "application/pdf",
    "size": "10",
    "md5Checksum": "abc123",
}


def copied(file_id="copy1"):
    return FakeResponse(200, {"id": file_id, "name": "doc.pdf", "size": "10"})


@pytest.fixture
def engine(client):
    return gupload.CloneEngine(client)


@pytest.fixture
def source(http):
    http.add("GET", f"{API}/files/src", FakeResponse(200, SOURCE))


class TestClone:
    """Test copying a file into a folder."""

    def test_plain_copy(self, engine, http, source):
        http.add("POST", f"{API}/files/src/copy", copied())

        result = engine.clone("src", FOLDER)

        assert result.status == "cloned"
        assert result.file.id == "copy1"
        assert result.bytes_sent == 0
        copy = http.calls_to("POST", f"{API}/files/src/copy")[0]
        assert copy["json"] == {"parents": [FOLDER]}
        assert copy["params"]["supportsAllDrives"] == "true"

    def test_description(self, client, http, source):
        settings = gupload.deep_merge(gupload.DEFAULT_SETTINGS, {"upload": {"description": "%f (%s)"}})
        engine = gupload.CloneEngine(client, settings)
        http.add("POST", f"{API}/files/src/copy", copied())

        engine.clone("src", FOLDER)

        copy = http.calls_to("POST", f"{API}/files/src/copy")[0]
        assert copy["json"]["description"] == "doc.pdf (10)"

    def test_unknown_source(self, engine, http):
        http.add("GET", f"{API}/files/missing", FakeResponse(404, {"error": {"code": 404}}))

        with pytest.raises(gupload.MetadataError):
            engine.clone("missing", FOLDER)

    def test_copy_failure(self, engine, http, source):
        http.add("POST", f"{API}/files/src/copy", FakeResponse(403, "storage quota exceeded"))

        with pytest.raises(gupload.TransferError) as exc_info:
            engine.clone("src", FOLDER)

        assert exc_info.value.status == 403
        assert "quota" in exc_info.value.body


class TestCloneUpdate:
    """Test clone with overwrite and duplicate checks."""

    def _existing(self, http, file_id="old", **extra):
        http.add(
            "GET",
            f"{API}/files",
            FakeResponse(200, {"files": [{"id": file_id, "name": "doc.pdf", **extra}]}),
        )

    def test_overwrite_copies_then_deletes(self, engine, http, source):
        """The stale copy is removed only after the new copy exists."""
        self._existing(http)
        http.add(
            "GET",
            f"{API}/files/old",
            FakeResponse(200, {"parents": [FOLDER], "writersCanShare": False}),
        )
        http.add("POST", f"{API}/files/src/copy", copied())
        http.add("DELETE", f"{API}/files/old", FakeResponse(204))

        result = engine.clone("src", FOLDER, job="update")

        assert result.status == "updated"
        assert result.file.id == "copy1"
        methods = [c["method"] for c in http.calls]
        assert methods.index("POST") < methods.index("DELETE")
        copy = http.calls_to("POST", f"{API}/files/src/copy")[0]
        assert copy["json"] == {"parents": [FOLDER], "writersCanShare": False}

    def test_existing_is_source(self, engine, http, source):
        """Copying a file onto itself keeps the original."""
        self._existing(http, file_id="src")
        http.add("POST", f"{API}/files/src/copy", copied())

        result = engine.clone("src", FOLDER, job="update")

        assert result.status == "cloned"
        assert not any(c["method"] == "DELETE" for c in http.calls)

    def test_delete_failure_only_warns(self, engine, http, source, caplog):
        self._existing(http)
        http.add("GET", f"{API}/files/old", FakeResponse(200, {"parents": [FOLDER]}))
        http.add("POST", f"{API}/files/src/copy", copied())
        http.add("DELETE", f"{API}/files/old", FakeResponse(403, "forbidden"))

        with caplog.at_level(logging.WARNING, logger="gupload"):
            result = engine.clone("src", FOLDER, job="update")

        assert result.file.id == "copy1"
        assert "Could not delete" in caplog.text

    def test_failed_copy_keeps_existing(self, engine, http, source):
        self._existing(http)
        http.add("GET", f"{API}/files/old", FakeResponse(200, {"parents": [FOLDER]}))
        http.add("POST", f"{API}/files/src/copy", FakeResponse(500, "error"))

        with pytest.raises(gupload.TransferError):
            engine.clone("src", FOLDER, job="update")

        assert not any(c["method"] == "DELETE" for c in http.calls)

    def test_skip_duplicate(self, client, http, source):
        engine = gupload.CloneEngine(client, skip_duplicates=True)
        self._existing(http)

        result = engine.clone("src", FOLDER, job="update")

        assert result.status == "skipped"
        assert result.file.id == "old"
        assert http.calls_to("POST", f"{API}/files/src/copy") == []

    def test_md5_check_uses_source_checksum(self, client, http, source):
        engine = gupload.CloneEngine(client, skip_duplicates=True, check_mode="md5")
        self._existing(http, md5Checksum="abc123")

        assert engine.clone("src", FOLDER, job="update").status == "skipped"
        assert "md5Checksum" in http.calls_to("GET", f"{API}/files")[0]["params"]["fields"]

    def test_md5_mismatch_copies(self, client, http, source):
        engine = gupload.CloneEngine(client, skip_duplicates=True, check_mode="md5")
        self._existing(http, md5Checksum="different")
        http.add("POST", f"{API}/files/src/copy", copied())

        assert engine.clone("src", FOLDER, job="update").status == "cloned"


class TestShare:
    """Test granting permissions."""

    def test_share_with_anyone(self, client, http):
        http.add("POST", f"{API}/files/f1/permissions", FakeResponse(200, {"id": "perm1"}))

        assert gupload.ShareManager(client).share("f1") == "perm1"

        call = http.calls[0]
        assert call["json"] == {"role": "reader", "type": "anyone"}
        assert call["params"]["supportsAllDrives"] == "true"

    def test_share_with_user(self, client, http):
        http.add("POST", f"{API}/files/f1/permissions", FakeResponse(200, {"id": "perm2"}))

        gupload.ShareManager(client).share("f1", role="writer", email="someone@example.com")

        assert http.calls[0]["json"] == {
            "role": "writer",
            "type": "user",
            "emailAddress": "someone@example.com",
        }

    def test_share_failure(self, client, http, capsys):
        http.add("POST", f"{API}/files/f1/permissions", FakeResponse(403, "insufficientPermissions"))

        with pytest.raises(gupload.ShareError) as exc_info:
            gupload.ShareManager(client).share("f1")

        assert "insufficientPermissions" in exc_info.value.body
        err = capsys.readouterr().err
        assert "Cannot Share" in err
        assert "insufficientPermissions" in err
