import pytest
import requests
from urllib3.exceptions import MaxRetryError

from esign import pipeline
from esign.errors import RenderError, StorageError
from esign.renderer import HttpRenderer
from esign.storage import LocalStorage, MinioStorage
from conftest import RecordingSleep


class UnreachableMinio:
    """Stands in for a Minio client whose connection pool has given up."""

    def __init__(self):
        self.calls = 0

    def _refuse(self, *args, **kwargs):
        self.calls += 1
        raise MaxRetryError(None, "/signing", reason="connection refused")

    bucket_exists = put_object = get_object = _refuse


class BrokenHttp:
    def __init__(self, exc):
        self.exc = exc

    def post(self, url, **kwargs):
        raise self.exc


def test_local_storage_round_trip(tmp_path):
    storage = LocalStorage(str(tmp_path))
    url = storage.upload(b"%PDF-1.4 body", "documents/1/final.pdf")
    assert url.startswith("file://")
    assert storage.download("documents/1/final.pdf") == b"%PDF-1.4 body"
    assert storage.presign("documents/1/final.pdf", 60).endswith("documents/1/final.pdf")


def test_local_storage_refuses_paths_outside_its_root(tmp_path):
    storage = LocalStorage(str(tmp_path / "root"))
    with pytest.raises(StorageError):
        storage.upload(b"x", "../escape.pdf")
    with pytest.raises(StorageError):
        storage.download("documents/missing.pdf")


def test_unreachable_minio_surfaces_as_storage_error():
    storage = MinioStorage(client=UnreachableMinio(), bucket="signing")
    with pytest.raises(StorageError, match="MaxRetryError"):
        storage.upload(b"%PDF", "documents/1/final.pdf")
    with pytest.raises(StorageError):
        storage.download("documents/1/final.pdf")


def test_unreachable_minio_gets_the_full_upload_backoff(settings):
    client = UnreachableMinio()
    sleep = RecordingSleep()
    with pytest.raises(pipeline.PipelineFailure, match="after 4 attempts"):
        pipeline.upload_with_backoff(MinioStorage(client=client), b"%PDF", "documents/1/final.pdf", settings, sleep)
    assert client.calls == 4
    assert sleep.delays == [2, 4, 8]


@pytest.mark.parametrize(
    "exc",
    [
        requests.exceptions.ChunkedEncodingError("connection broken mid-body"),
        requests.exceptions.TooManyRedirects("redirect loop"),
        requests.Timeout("read timed out"),
    ],
)
def test_renderer_transport_failures_are_retryable(exc):
    renderer = HttpRenderer("http://renderer.test/render", session=BrokenHttp(exc))
    with pytest.raises(RenderError) as excinfo:
        renderer.render("<p>x</p>", 1.0)
    assert excinfo.value.retryable is True
