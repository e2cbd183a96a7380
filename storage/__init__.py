"""
Storage module for the catalog admin tool.

Provides the image CDN client and the product record store.
"""

from storage.cdn import (
    CdnClient,
    CdnError,
    is_legacy_storage_url,
    is_own_cdn_url,
    publish_product_image,
)
from storage.products import (
    CATEGORIES,
    FUNCTION_TYPES,
    Product,
    ProductNotFoundError,
    ProductStore,
    StoreError,
)

__all__ = [
    'CATEGORIES',
    'CdnClient',
    'CdnError',
    'FUNCTION_TYPES',
    'Product',
    'ProductNotFoundError',
    'ProductStore',
    'StoreError',
    'is_legacy_storage_url',
    'is_own_cdn_url',
    'publish_product_image',
]
