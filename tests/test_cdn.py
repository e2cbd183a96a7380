"""Tests for the CDN client and URL classifiers."""

from unittest.mock import MagicMock

import boto3
import pytest
import requests
from botocore.stub import ANY, Stubber

from conftest import FakeCodec
from config.settings import ConfigurationError
from processors.image import CompressionStatus, ImageReencoder
from storage.cdn import (
    CdnClient,
    CdnError,
    build_key,
    filename_from_url,
    is_legacy_storage_url,
    is_own_cdn_url,
    publish_product_image,
)

LEGACY_URL = ("https://firebasestorage.googleapis.com/v0/b/shop.appspot.com/o/"
              "products%2Fring.png?alt=media&token=abc123")


@pytest.fixture
def s3():
    client = boto3.client(
        "s3",
        region_name="us-west-2",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )
    with Stubber(client) as stubber:
        yield client, stubber
        stubber.assert_no_pending_responses()


def _response(status=200, content=b"image-bytes", content_type="image/png"):
    response = MagicMock()
    response.status_code = status
    response.content = content
    response.headers = {"Content-Type": content_type} if content_type else {}
    return response


class TestUrlClassifiers:
    """Tests for is_own_cdn_url and is_legacy_storage_url."""

    def test_own_cdn_url(self):
        assert is_own_cdn_url("https://cdn.example.net/products/a.jpg", "cdn.example.net")
        assert is_own_cdn_url("https://CDN.EXAMPLE.NET/products/a.jpg", "cdn.example.net")
        assert not is_own_cdn_url("https://other.example.com/a.jpg", "cdn.example.net")

    def test_own_cdn_url_empty(self):
        assert not is_own_cdn_url("", "cdn.example.net")
        assert not is_own_cdn_url(None, "cdn.example.net")
        assert not is_own_cdn_url("https://cdn.example.net/a.jpg", "")

    def test_legacy_storage_url(self):
        assert is_legacy_storage_url(LEGACY_URL)
        assert is_legacy_storage_url("https://shop.firebaseapp.com/img.jpg")
        assert not is_legacy_storage_url("https://cdn.example.net/products/a.jpg")
        assert not is_legacy_storage_url(None)

    def test_legacy_storage_custom_hosts(self):
        assert is_legacy_storage_url("https://old-bucket.example.org/a.jpg", hosts=["old-bucket"])
        assert not is_legacy_storage_url(LEGACY_URL, hosts=["old-bucket"])


class TestKeys:
    """Tests for filename_from_url and build_key."""

    def test_filename_from_legacy_url(self):
        assert filename_from_url(LEGACY_URL) == "ring.png"

    def test_filename_default(self):
        assert filename_from_url("https://example.com/") == "image.jpg"

    def test_build_key_is_content_addressed(self):
        key = build_key("products", "Gold Ring.JPG", b"abc")

        assert key == "products/Gold-Ring_900150983cd2.jpg"
        assert build_key("products", "Gold Ring.JPG", b"abcd") != key

    def test_build_key_without_folder(self):
        assert build_key("", "a.png", b"abc") == "a_900150983cd2.png"


class TestCdnClient:
    """Tests for CdnClient against a stubbed S3 client."""

    def test_upload(self, s3):
        client, stubber = s3
        data = b"jpeg-bytes"
        key = build_key("products", "ring.jpg", data)
        stubber.add_response("put_object", {"ETag": '"etag"'}, {
            "Bucket": "catalog-images",
            "Key": key,
            "Body": ANY,
            "ContentType": "image/jpeg",
            "CacheControl": "max-age=31536000",
        })
        cdn = CdnClient(client, "catalog-images", "cdn.example.net")

        url = cdn.upload(data, folder="products", filename="ring.jpg")

        assert url == f"https://cdn.example.net/{key}"
        assert cdn.owns(url)
        assert cdn.key_from_url(url) == key

    def test_upload_empty_rejected(self, s3):
        client, _ = s3
        with pytest.raises(CdnError):
            CdnClient(client, "catalog-images", "cdn.example.net").upload(b"")

    def test_upload_error(self, s3):
        client, stubber = s3
        stubber.add_client_error("put_object", service_error_code="AccessDenied",
                                 service_message="Access Denied", http_status_code=403)

        with pytest.raises(CdnError, match="Access Denied"):
            CdnClient(client, "catalog-images", "cdn.example.net").upload(b"x", filename="a.jpg")

    def test_domain_with_scheme(self, s3):
        client, _ = s3
        cdn = CdnClient(client, "catalog-images", "https://cdn.example.net/")

        assert cdn.domain == "cdn.example.net"

    def test_delete(self, s3):
        client, stubber = s3
        stubber.add_response("delete_object", {}, {
            "Bucket": "catalog-images",
            "Key": "products/ring_0123456789ab.jpg",
        })
        cdn = CdnClient(client, "catalog-images", "cdn.example.net")

        cdn.delete("https://cdn.example.net/products/ring_0123456789ab.jpg")

    def test_delete_foreign_url_is_skipped(self, s3, caplog):
        client, _ = s3
        cdn = CdnClient(client, "catalog-images", "cdn.example.net")

        cdn.delete(LEGACY_URL)

        assert any(getattr(r, "event", None) == "cdn.delete_skipped" for r in caplog.records)

    def test_delete_error(self, s3):
        client, stubber = s3
        stubber.add_client_error("delete_object", service_error_code="AccessDenied",
                                 service_message="Access Denied", http_status_code=403)
        cdn = CdnClient(client, "catalog-images", "cdn.example.net")

        with pytest.raises(CdnError):
            cdn.delete("https://cdn.example.net/products/a.jpg")

    def test_check_bucket_missing(self, s3):
        client, stubber = s3
        stubber.add_client_error("head_bucket", service_error_code="404", http_status_code=404)

        with pytest.raises(CdnError, match="not found"):
            CdnClient(client, "catalog-images", "cdn.example.net").check_bucket()

    def test_check_bucket_forbidden(self, s3):
        client, stubber = s3
        stubber.add_client_error("head_bucket", service_error_code="403", http_status_code=403)

        with pytest.raises(CdnError, match="access denied"):
            CdnClient(client, "catalog-images", "cdn.example.net").check_bucket()

    def test_upload_from_url(self, s3):
        client, stubber = s3
        http = MagicMock()
        http.get.return_value = _response(content=b"png-bytes", content_type="image/png; charset=binary")
        key = build_key("products", "ring.png", b"png-bytes")
        stubber.add_response("put_object", {}, {
            "Bucket": "catalog-images",
            "Key": key,
            "Body": ANY,
            "ContentType": "image/png",
            "CacheControl": "max-age=31536000",
        })
        cdn = CdnClient(client, "catalog-images", "cdn.example.net", http=http, timeout=5)

        url = cdn.upload_from_url(LEGACY_URL)

        assert url == f"https://cdn.example.net/{key}"
        http.get.assert_called_once()
        args, kwargs = http.get.call_args
        assert args == (LEGACY_URL,)
        assert kwargs["timeout"] == 5
        assert "User-Agent" in kwargs["headers"]

    @pytest.mark.parametrize("response", [
        _response(status=404),
        _response(content=b""),
    ])
    def test_download_bad_response(self, s3, response):
        client, _ = s3
        http = MagicMock()
        http.get.return_value = response
        cdn = CdnClient(client, "catalog-images", "cdn.example.net", http=http)

        with pytest.raises(CdnError):
            cdn.upload_from_url(LEGACY_URL)

    def test_download_network_error(self, s3):
        client, _ = s3
        http = MagicMock()
        http.get.side_effect = requests.ConnectionError("connection refused")
        cdn = CdnClient(client, "catalog-images", "cdn.example.net", http=http)

        with pytest.raises(CdnError, match="connection refused"):
            cdn.download(LEGACY_URL)

    def test_from_settings_requires_bucket(self, settings):
        session = MagicMock()

        with pytest.raises(ConfigurationError, match="CATALOG_CDN_BUCKET"):
            CdnClient.from_settings(settings.with_overrides(cdn_bucket=""), session)


class TestPublishProductImage:
    """Tests for publish_product_image."""

    def test_uploads_compressed_jpeg(self):
        cdn = MagicMock()
        cdn.upload.return_value = "https://cdn.example.net/products/ring.jpg"
        reencoder = ImageReencoder(codec=FakeCodec(size=(800, 600), bytes_per_pixel=0.1))

        url, result = publish_product_image(cdn, b"\xff" * 1000, "ring.png", reencoder=reencoder)

        assert url == "https://cdn.example.net/products/ring.jpg"
        assert result.status == CompressionStatus.COMPRESSED
        cdn.upload.assert_called_once_with(result.data, folder="products", filename="ring.jpg",
                                           content_type="image/jpeg")

    def test_uploads_original_when_encoding_fails(self):
        cdn = MagicMock()
        reencoder = ImageReencoder(codec=FakeCodec(size=(800, 600), fail_encode=True))
        data = b"\xff" * 1000

        _, result = publish_product_image(cdn, data, "ring.png", folder="rings", reencoder=reencoder)

        assert result.status == CompressionStatus.ORIGINAL
        cdn.upload.assert_called_once_with(data, folder="rings", filename="ring.png")
