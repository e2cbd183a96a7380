"""
Processors module for the catalog admin tool.

Provides image decoding, downscaling and size-bounded re-encoding.
"""

from processors.image import (
    CompressionOptions,
    CompressionResult,
    CompressionStatus,
    DecodeFailure,
    EncodingFailure,
    ImageReencoder,
    PillowCodec,
    fit_within,
    needs_compression,
    prepare_for_upload,
    recommended_options,
    smart_compress,
)

__all__ = [
    'CompressionOptions',
    'CompressionResult',
    'CompressionStatus',
    'DecodeFailure',
    'EncodingFailure',
    'ImageReencoder',
    'PillowCodec',
    'fit_within',
    'needs_compression',
    'prepare_for_upload',
    'recommended_options',
    'smart_compress',
]
