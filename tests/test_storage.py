# tests/test_storage.py
import io
import pytest
from unittest.mock import MagicMock
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError
from dotformer.errors import NotFound, TransientStoreError
from dotformer.storage import (
    MemoryBlobStore,
    S3BlobStore,
    calculate_delay,
    is_transient,
    with_retries,
)


def client_error(code, status, operation="HeadObject"):
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


class TestMemoryBlobStore:
    def test_put_get_exists(self):
        store = MemoryBlobStore("memory://bucket")
        assert not store.exists("a/b.png")
        url = store.put("a/b.png", b"data", "image/png", "public")
        assert url == "memory://bucket/a/b.png"
        assert store.exists("a/b.png")
        assert store.get("a/b.png") == b"data"
        assert store.objects["a/b.png"] == (b"data", "image/png", "public")
        assert store.metadata["a/b.png"] == {}

    def test_get_missing_raises_not_found(self):
        with pytest.raises(NotFound):
            MemoryBlobStore().get("nope")


class TestS3BlobStore:
    def test_url_without_cdn(self):
        store = S3BlobStore("bucket", region="eu-west-1", client=MagicMock())
        assert store.url_for("transformed/x.png") == "https://bucket.s3.eu-west-1.amazonaws.com/transformed/x.png"

    def test_url_with_cdn(self):
        store = S3BlobStore("bucket", region="eu-west-1", cdn_domain="cdn.example.com", client=MagicMock())
        assert store.url_for("k.png") == "https://cdn.example.com/k.png"

    def test_exists_true(self):
        client = MagicMock()
        store = S3BlobStore("bucket", region="us-east-1", client=client)
        assert store.exists("k") is True
        client.head_object.assert_called_once_with(Bucket="bucket", Key="k")

    def test_exists_false_on_404(self):
        client = MagicMock()
        client.head_object.side_effect = client_error("404", 404)
        store = S3BlobStore("bucket", region="us-east-1", client=client)
        assert store.exists("k") is False

    def test_get_missing_raises_not_found(self):
        client = MagicMock()
        client.get_object.side_effect = client_error("NoSuchKey", 404, "GetObject")
        store = S3BlobStore("bucket", region="us-east-1", client=client)
        with pytest.raises(NotFound):
            store.get("missing.png")

    def test_get_reads_body(self):
        client = MagicMock()
        client.get_object.return_value = {"Body": io.BytesIO(b"bytes")}
        store = S3BlobStore("bucket", region="us-east-1", client=client)
        assert store.get("k") == b"bytes"

    def test_put_sets_headers(self):
        client = MagicMock()
        store = S3BlobStore("bucket", region="us-east-1", client=client)
        url = store.put("k.webp", b"img", "image/webp", "public, max-age=31536000, immutable")
        client.put_object.assert_called_once_with(
            Bucket="bucket",
            Key="k.webp",
            Body=b"img",
            ContentType="image/webp",
            CacheControl="public, max-age=31536000, immutable",
        )
        assert url.endswith("/k.webp")

    def test_put_passes_metadata(self):
        client = MagicMock()
        store = S3BlobStore("bucket", region="us-east-1", client=client)
        store.put("acc/abc.png", b"img", "image/png", metadata={"original-filename": "cat.png"})
        assert client.put_object.call_args.kwargs["Metadata"] == {"original-filename": "cat.png"}

    def test_put_retries_transient_errors(self, mocker):
        mocker.patch("dotformer.storage.time.sleep")
        client = MagicMock()
        client.put_object.side_effect = [client_error("SlowDown", 503, "PutObject"), {}]
        store = S3BlobStore("bucket", region="us-east-1", client=client)
        store.put("k", b"x", "image/png")
        assert client.put_object.call_count == 2

    def test_put_gives_up_after_attempts(self, mocker):
        mocker.patch("dotformer.storage.time.sleep")
        client = MagicMock()
        client.put_object.side_effect = client_error("InternalError", 500, "PutObject")
        store = S3BlobStore("bucket", region="us-east-1", retry_attempts=3, client=client)
        with pytest.raises(TransientStoreError):
            store.put("k", b"x", "image/png")
        assert client.put_object.call_count == 3


class TestRetries:
    def test_transient_classification(self):
        assert is_transient(client_error("SlowDown", 503))
        assert is_transient(client_error("Throttling", 400))
        assert is_transient(EndpointConnectionError(endpoint_url="https://s3"))
        assert not is_transient(client_error("AccessDenied", 403))
        assert not is_transient(NoCredentialsError())

    def test_non_transient_propagates_immediately(self):
        calls = []

        def operation():
            calls.append(1)
            raise client_error("AccessDenied", 403)

        with pytest.raises(ClientError):
            with_retries(operation, description="op", attempts=3, sleep=lambda _: None)
        assert len(calls) == 1

    def test_backoff_grows_and_caps(self):
        assert 0.16 <= calculate_delay(0) <= 0.24
        assert 0.32 <= calculate_delay(1) <= 0.48
        assert calculate_delay(20) <= 6.0
