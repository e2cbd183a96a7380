"""Image CDN client: S3 bucket served through CloudFront.

Objects are addressed by their S3 key, which is also the path of the public
CloudFront URL (``https://{domain}/{key}``).
"""
import hashlib
import logging
import mimetypes
import os
from typing import Iterable, Optional, Tuple
from urllib.parse import quote, unquote, urlparse

import requests
from botocore.exceptions import BotoCoreError, ClientError

from config.settings import DEFAULT_LEGACY_STORAGE_HOSTS
from processors.image import CompressionResult, CompressionStatus, prepare_for_upload
from utils.events import emit

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:133.0) Gecko/20100101 Firefox/133.0"
DEFAULT_FOLDER = "products"


class CdnError(Exception):
    """Raised when an upload, download or delete against the CDN fails."""
    pass


def is_own_cdn_url(url: Optional[str], cdn_domain: str) -> bool:
    """Check if ``url`` points at our CloudFront domain."""
    if not url or not cdn_domain:
        return False
    return cdn_domain.lower() in url.lower()


def is_legacy_storage_url(url: Optional[str],
                          hosts: Iterable[str] = DEFAULT_LEGACY_STORAGE_HOSTS) -> bool:
    """Check if ``url`` is hosted on the previous storage provider."""
    if not url:
        return False
    lowered = url.lower()
    return any(host.lower() in lowered for host in hosts if host)


def filename_from_url(url: str, default: str = "image.jpg") -> str:
    """Last path segment of ``url``, percent-decoded.

    Legacy storage URLs encode the object path (``/o/products%2Fring.jpg``), so
    decoding happens before taking the basename.
    """
    path = unquote(urlparse(url).path)
    name = os.path.basename(path.rstrip("/"))
    return name or default


def build_key(folder: str, filename: str, data: bytes) -> str:
    """Content-addressed object key: ``{folder}/{stem}_{md5[:12]}{ext}``."""
    stem, ext = os.path.splitext(os.path.basename(filename or "image"))
    stem = "".join(c if c.isalnum() or c in "-_" else "-" for c in stem).strip("-") or "image"
    digest = hashlib.md5(data).hexdigest()[:12]
    folder = folder.strip("/")
    key = f"{stem}_{digest}{ext.lower()}"
    return f"{folder}/{key}" if folder else key


class CdnClient:
    """Upload, fetch and delete product images on the CDN."""

    def __init__(self, s3_client, bucket: str, domain: str,
                 cache_control: str = "max-age=31536000", http=None, timeout: int = 30):
        self.s3_client = s3_client
        self.bucket = bucket
        self.domain = domain.rstrip("/")
        if self.domain.startswith(("http://", "https://")):
            self.domain = urlparse(self.domain).netloc
        self.cache_control = cache_control
        self.http = http or requests.Session()
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings, session) -> "CdnClient":
        settings.require("cdn_bucket", "cdn_domain")
        return cls(
            session.client("s3"),
            bucket=settings.cdn_bucket,
            domain=settings.cdn_domain,
            cache_control=settings.cdn_cache_control,
            timeout=settings.download_timeout_seconds,
        )

    def owns(self, url: Optional[str]) -> bool:
        return is_own_cdn_url(url, self.domain)

    def public_url(self, key: str) -> str:
        return f"https://{self.domain}/{quote(key)}"

    def key_from_url(self, url: str) -> Optional[str]:
        """S3 key behind a CDN URL, or None for foreign URLs."""
        if not self.owns(url):
            return None
        key = unquote(urlparse(url).path).lstrip("/")
        return key or None

    def check_bucket(self) -> None:
        """Verify the bucket exists and is reachable.

        Raises:
            CdnError: With a readable reason for 403/404 and other failures.
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket)
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code == "404":
                raise CdnError(f"S3 bucket not found: {self.bucket}") from e
            if error_code == "403":
                raise CdnError(f"S3 access denied to bucket: {self.bucket} (check IAM role permissions)") from e
            raise CdnError(f"S3 error: {e}") from e
        except BotoCoreError as e:
            raise CdnError(f"S3 error: {e}") from e
        emit(logger, logging.DEBUG, "cdn.bucket_ok", bucket=self.bucket)

    def upload(self, data: bytes, folder: str = DEFAULT_FOLDER, filename: Optional[str] = None,
               content_type: Optional[str] = None) -> str:
        """Upload image bytes and return their public CDN URL.

        Args:
            data: Encoded image.
            folder: Key prefix within the bucket.
            filename: Used for the key stem and extension; ``image.jpg`` if omitted.
            content_type: Stored MIME type; guessed from ``filename`` if omitted.

        Raises:
            CdnError: If ``data`` is empty or S3 rejects the upload.
        """
        if not data:
            raise CdnError("Refusing to upload an empty file")
        filename = filename or "image.jpg"
        content_type = content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"
        key = build_key(folder, filename, data)

        emit(logger, logging.INFO, "cdn.upload", "Uploading to CDN",
             key=key, size=len(data), content_type=content_type)
        try:
            self.s3_client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                CacheControl=self.cache_control,
            )
        except ClientError as e:
            error_message = e.response.get("Error", {}).get("Message", str(e))
            raise CdnError(f"Upload failed for {filename}: {error_message}") from e
        except BotoCoreError as e:
            raise CdnError(f"Upload failed for {filename}: {e}") from e

        url = self.public_url(key)
        emit(logger, logging.INFO, "cdn.uploaded", "Image uploaded", url=url)
        return url

    def download(self, url: str) -> Tuple[bytes, Optional[str]]:
        """Fetch ``url`` and return ``(content, content_type)``.

        Raises:
            CdnError: On network errors, non-200 responses or empty bodies.
        """
        try:
            response = self.http.get(url, timeout=self.timeout, headers={"User-Agent": USER_AGENT})
        except requests.RequestException as e:
            raise CdnError(f"Failed to download {url}: {e}") from e
        if response.status_code != 200:
            raise CdnError(f"Failed to download {url}: HTTP {response.status_code}")
        if not response.content:
            raise CdnError(f"Downloaded empty file from {url}")
        content_type = response.headers.get("Content-Type")
        if content_type:
            content_type = content_type.split(";")[0].strip()
        return response.content, content_type

    def upload_from_url(self, url: str, folder: str = DEFAULT_FOLDER) -> str:
        """Copy the image at ``url`` onto the CDN and return the new URL."""
        emit(logger, logging.INFO, "cdn.fetch", "Uploading image from URL", source=url)
        content, content_type = self.download(url)
        return self.upload(content, folder=folder, filename=filename_from_url(url),
                           content_type=content_type)

    def delete(self, url: str) -> None:
        """Delete the object behind a CDN URL.

        URLs that are not on this CDN are skipped with a warning.

        Raises:
            CdnError: If S3 rejects the delete.
        """
        key = self.key_from_url(url)
        if not key:
            emit(logger, logging.WARNING, "cdn.delete_skipped",
                 "Could not extract object key from URL", url=url)
            return
        emit(logger, logging.INFO, "cdn.delete", "Deleting from CDN", key=key)
        try:
            self.s3_client.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            error_message = e.response.get("Error", {}).get("Message", str(e))
            raise CdnError(f"Failed to delete {key}: {error_message}") from e
        except BotoCoreError as e:
            raise CdnError(f"Failed to delete {key}: {e}") from e


def publish_product_image(cdn: CdnClient, data: bytes, filename: str,
                          folder: str = DEFAULT_FOLDER, reencoder=None,
                          options=None) -> Tuple[str, CompressionResult]:
    """Compress an image for the catalog and upload it.

    Returns:
        The CDN URL and the compression result. When compression fell back to
        the original bytes, they are uploaded under their own name and type.
    """
    result = prepare_for_upload(data, reencoder=reencoder, options=options)
    if result.status == CompressionStatus.ORIGINAL:
        url = cdn.upload(result.data, folder=folder, filename=filename)
    else:
        stem = os.path.splitext(os.path.basename(filename))[0] or "image"
        ext = ".jpg" if result.format == "jpeg" else f".{result.format}"
        url = cdn.upload(result.data, folder=folder, filename=stem + ext,
                         content_type=result.content_type)
    return url, result
