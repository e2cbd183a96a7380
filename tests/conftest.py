import io

import pytest
from PIL import Image

from config.settings import Settings
from processors.image import EncodingFailure


class FakeImage:
    def __init__(self, size):
        self.size = size


class FakeCodec:
    """Codec whose output size is ``width * height * bytes_per_pixel * quality``."""

    def __init__(self, size=(1000, 1000), bytes_per_pixel=1.0, fail_first=0,
                 fail_encode=False, lossy=True):
        self.size = size
        self.bytes_per_pixel = bytes_per_pixel
        self.fail_first = fail_first
        self.fail_encode = fail_encode
        self.lossy = lossy
        self.encode_calls = []
        self.resize_calls = []

    def decode(self, data):
        return FakeImage(self.size)

    def resize(self, image, size):
        self.resize_calls.append(size)
        return FakeImage(size)

    def is_lossy(self, fmt):
        return self.lossy

    def encode(self, image, fmt, quality):
        self.encode_calls.append(quality)
        if self.fail_encode or len(self.encode_calls) <= self.fail_first:
            raise EncodingFailure("encoder returned no data")
        width, height = image.size
        return b"\x00" * round(width * height * self.bytes_per_pixel * quality)


def encode_image(img, fmt="PNG", **params):
    buf = io.BytesIO()
    img.save(buf, format=fmt, **params)
    return buf.getvalue()


@pytest.fixture
def settings():
    return Settings(
        cdn_bucket="catalog-images",
        cdn_domain="cdn.example.net",
        products_table="Products",
        cognito_user_pool_id="us-west-2_pool",
        cognito_client_id="client-id",
        cognito_identity_pool_id="us-west-2:identity-pool",
        migration_delay_seconds=2.0,
    )


@pytest.fixture
def gradient_jpeg():
    """A 400x300 JPEG with some detail to compress."""
    img = Image.linear_gradient("L").resize((400, 300)).convert("RGB")
    return encode_image(img, "JPEG", quality=90)
