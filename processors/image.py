"""Image Processing Module for the catalog admin tool.

This module handles:
- Decoding uploaded product images with Pillow
- Downscaling to fit 1920x1080 while keeping the aspect ratio
- Re-encoding at decreasing quality until a byte ceiling is met
- Picking compression settings from the input file size
"""
import io
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from utils.events import emit

logger = logging.getLogger(__name__)

MAX_DIMENSIONS = (1920, 1080)
INITIAL_QUALITY = 0.9
QUALITY_STEP = 0.7
MIN_QUALITY = 0.1
SIZE_TOLERANCE = 0.1
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_TARGET_SIZE_KB = 500

# Pillow format names and MIME types for the supported output formats
FORMATS = {
    'jpeg': ('JPEG', 'image/jpeg'),
    'webp': ('WEBP', 'image/webp'),
    'png': ('PNG', 'image/png'),
}
LOSSY_FORMATS = ('jpeg', 'webp')


class DecodeFailure(Exception):
    """Raised when the source bytes are not a readable image."""
    pass


class EncodingFailure(Exception):
    """Raised when the encoder produced no output."""

    def __init__(self, message: str, size: Optional[Tuple[int, int]] = None,
                 attempts: int = 0):
        super().__init__(message)
        self.size = size
        self.attempts = attempts


class CompressionStatus(Enum):
    COMPRESSED = 'compressed'
    CEILING_UNREACHABLE = 'ceiling_unreachable'
    ORIGINAL = 'original'


@dataclass
class CompressionOptions:
    """Re-encode settings; quality is a factor in (0, 1]."""
    max_width: int = MAX_DIMENSIONS[0]
    max_height: int = MAX_DIMENSIONS[1]
    quality: float = INITIAL_QUALITY
    format: str = 'jpeg'
    max_size_kb: int = DEFAULT_TARGET_SIZE_KB


@dataclass
class CompressionResult:
    """Outcome of a re-encode.

    ``status`` tells a met ceiling apart from a best-effort result and from the
    untouched input handed back by ``prepare_for_upload``, whose ``quality``
    is None.
    """
    data: bytes
    original_size: int
    compressed_size: int
    width: int
    height: int
    quality: Optional[float]
    attempts: int
    format: str
    status: CompressionStatus

    @property
    def compression_ratio(self) -> float:
        """Percentage of the original size saved."""
        if not self.original_size:
            return 0.0
        return (1 - self.compressed_size / self.original_size) * 100

    @property
    def content_type(self) -> str:
        return FORMATS.get(self.format, (None, 'application/octet-stream'))[1]

    @property
    def within_ceiling(self) -> bool:
        return self.status == CompressionStatus.COMPRESSED


def _normalize_format(fmt: str) -> str:
    fmt = (fmt or '').lower()
    if fmt == 'jpg':
        fmt = 'jpeg'
    if fmt not in FORMATS:
        raise ValueError(f"Unsupported output format: {fmt!r}")
    return fmt


def fit_within(size: Tuple[int, int], max_size: Tuple[int, int]) -> Tuple[int, int]:
    """Scale ``size`` down so both sides fit ``max_size``, keeping the aspect ratio.

    Sizes that already fit are returned unchanged; nothing is scaled up.
    """
    width, height = size
    max_w, max_h = max_size
    if width <= max_w and height <= max_h:
        return width, height
    scale = min(max_w / width, max_h / height)
    new_w = min(max_w, max(1, round(width * scale)))
    new_h = min(max_h, max(1, round(height * scale)))
    return new_w, new_h


class PillowCodec:
    """Decode/resize/encode primitive backed by Pillow."""

    def decode(self, data: bytes) -> Image.Image:
        """Open and fully load ``data``, applying the EXIF orientation.

        Raises:
            DecodeFailure: If the bytes are not a readable image.
        """
        try:
            img = Image.open(io.BytesIO(data))
            img.load()
            source_format = img.format
            img = ImageOps.exif_transpose(img)
            img.format = source_format
            return img
        except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
            raise DecodeFailure(f"Failed to load image: {e}") from e

    def resize(self, img: Image.Image, size: Tuple[int, int]) -> Image.Image:
        resized = img.resize(size, Image.Resampling.LANCZOS)
        resized.format = img.format
        return resized

    def is_lossy(self, fmt: str) -> bool:
        return fmt in LOSSY_FORMATS

    def encode(self, img: Image.Image, fmt: str, quality: float) -> bytes:
        """Encode ``img`` as ``fmt`` at ``quality`` in (0, 1].

        Raises:
            EncodingFailure: If Pillow fails or writes nothing.
        """
        pil_format, _ = FORMATS[fmt]
        params = {'optimize': True}
        if fmt == 'jpeg':
            img = self._flatten(img)
            params['quality'] = max(1, min(95, round(quality * 100)))
        elif fmt == 'webp':
            if img.mode not in ('RGB', 'RGBA'):
                img = img.convert('RGBA' if self._has_alpha(img) else 'RGB')
            params['quality'] = max(1, min(100, round(quality * 100)))
        try:
            buf = io.BytesIO()
            img.save(buf, format=pil_format, **params)
        except (OSError, ValueError) as e:
            raise EncodingFailure(f"Failed to encode image as {fmt}: {e}", size=img.size) from e
        data = buf.getvalue()
        if not data:
            raise EncodingFailure(f"Encoder returned no data for {fmt}", size=img.size)
        return data

    @staticmethod
    def _has_alpha(img: Image.Image) -> bool:
        return img.mode in ('RGBA', 'LA') or (img.mode == 'P' and 'transparency' in img.info)

    def _flatten(self, img: Image.Image) -> Image.Image:
        """Composite transparency onto white and convert to RGB for JPEG output."""
        if img.mode == 'RGB':
            return img
        if not self._has_alpha(img):
            return img.convert('RGB')
        rgba = img.convert('RGBA')
        canvas = Image.new('RGBA', rgba.size, (255, 255, 255, 255))
        canvas.paste(rgba, (0, 0), rgba)
        return canvas.convert('RGB')


class ImageReencoder:
    """Re-encode images at decreasing quality until they fit a byte ceiling.

    Each call is independent: the input is decoded once, resized once to fit
    ``max_width`` x ``max_height``, then encoded at ``initial_quality``,
    ``initial_quality * quality_step`` and so on (never below ``min_quality``)
    until the output is within ``tolerance`` of the ceiling or the attempt
    budget runs out.
    """

    def __init__(self, codec=None, max_width: int = MAX_DIMENSIONS[0],
                 max_height: int = MAX_DIMENSIONS[1], initial_quality: float = INITIAL_QUALITY,
                 quality_step: float = QUALITY_STEP, min_quality: float = MIN_QUALITY,
                 tolerance: float = SIZE_TOLERANCE, output_format: str = 'jpeg'):
        if not 0 < initial_quality <= 1:
            raise ValueError("initial_quality must be in (0, 1]")
        if not 0 < quality_step < 1:
            raise ValueError("quality_step must be in (0, 1)")
        self.codec = codec or PillowCodec()
        self.max_width = max_width
        self.max_height = max_height
        self.initial_quality = initial_quality
        self.quality_step = quality_step
        self.min_quality = min(min_quality, initial_quality)
        self.tolerance = tolerance
        self.output_format = _normalize_format(output_format)

    @classmethod
    def from_settings(cls, settings, codec=None) -> 'ImageReencoder':
        return cls(
            codec=codec,
            max_width=settings.image_max_width,
            max_height=settings.image_max_height,
            initial_quality=settings.image_initial_quality,
            quality_step=settings.image_quality_step,
            min_quality=settings.image_min_quality,
            tolerance=settings.image_size_tolerance,
            output_format=settings.image_format,
        )

    def with_options(self, options: CompressionOptions) -> 'ImageReencoder':
        """Copy of this reencoder using the bounds, quality and format of ``options``."""
        return ImageReencoder(
            codec=self.codec,
            max_width=options.max_width,
            max_height=options.max_height,
            initial_quality=options.quality,
            quality_step=self.quality_step,
            min_quality=self.min_quality,
            tolerance=self.tolerance,
            output_format=options.format,
        )

    def allowed_size(self, target_bytes: int) -> float:
        return target_bytes * (1 + self.tolerance)

    def reencode(self, data: bytes, target_bytes: int,
                 max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> CompressionResult:
        """Re-encode ``data`` so it fits ``target_bytes``.

        Args:
            data: Encoded source image.
            target_bytes: Byte ceiling; outputs up to ``tolerance`` above it count.
            max_attempts: Encode budget, at least 1.

        Returns:
            CompressionResult with status COMPRESSED, or CEILING_UNREACHABLE
            carrying the smallest output when the budget ran out.

        Raises:
            DecodeFailure: The source could not be decoded. Nothing is encoded.
            EncodingFailure: No attempt produced any output.
        """
        if target_bytes <= 0:
            raise ValueError("target_bytes must be positive")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        original_size = len(data)
        img = self.codec.decode(data)
        source_size = tuple(img.size)
        source_format = (getattr(img, 'format', None) or '').lower()

        size = fit_within(source_size, (self.max_width, self.max_height))
        resized = size != source_size
        if resized:
            img = self.codec.resize(img, size)
        width, height = size

        emit(logger, logging.DEBUG, "reencode.start",
             original_size=original_size, source=f"{source_size[0]}x{source_size[1]}",
             target=f"{width}x{height}", ceiling=target_bytes, max_attempts=max_attempts)

        allowed = self.allowed_size(target_bytes)
        # Inputs already in the output format, inside the bounds and under the
        # ceiling are handed back as-is after the first attempt
        keep_source = (not resized and source_format == self.output_format
                       and original_size <= allowed)
        quality = self.initial_quality
        best: Optional[Tuple[bytes, float]] = None
        attempts = 0

        while attempts < max_attempts:
            attempts += 1
            try:
                encoded = self.codec.encode(img, self.output_format, quality)
            except EncodingFailure as e:
                emit(logger, logging.WARNING, "reencode.attempt_failed",
                     f"Compression attempt {attempts} failed", quality=quality, error=str(e))
                encoded = None

            if keep_source:
                return self._result(data, original_size, width, height, quality,
                                    attempts, CompressionStatus.COMPRESSED)

            if encoded is not None:
                emit(logger, logging.DEBUG, "reencode.attempt",
                     attempt=attempts, quality=quality, size=len(encoded))
                if best is None or len(encoded) < len(best[0]):
                    best = (encoded, quality)
                if len(encoded) <= allowed:
                    return self._result(encoded, original_size, width, height, quality,
                                        attempts, CompressionStatus.COMPRESSED)
                if not self.codec.is_lossy(self.output_format):
                    break

            next_quality = max(self.min_quality, quality * self.quality_step)
            if encoded is not None and next_quality >= quality:
                # Quality floor reached; re-encoding would give the same bytes
                break
            quality = next_quality

        if best is None:
            emit(logger, logging.ERROR, "reencode.failed",
                 "All compression attempts failed", attempts=attempts)
            raise EncodingFailure(f"All {attempts} compression attempts failed",
                                  size=size, attempts=attempts)

        output, best_quality = best
        emit(logger, logging.WARNING, "reencode.ceiling_unreachable",
             "Target size not reached, returning smallest result",
             attempts=attempts, size=len(output), ceiling=target_bytes)
        return self._result(output, original_size, width, height, best_quality,
                            attempts, CompressionStatus.CEILING_UNREACHABLE)

    def _result(self, output: bytes, original_size: int, width: int, height: int,
                quality: float, attempts: int, status: CompressionStatus) -> CompressionResult:
        result = CompressionResult(
            data=output,
            original_size=original_size,
            compressed_size=len(output),
            width=width,
            height=height,
            quality=quality,
            attempts=attempts,
            format=self.output_format,
            status=status,
        )
        emit(logger, logging.INFO, "reencode.done", "Compression completed",
             status=status.value, original_size=original_size, compressed_size=len(output),
             ratio=result.compression_ratio, dimensions=f"{width}x{height}", attempts=attempts)
        return result


def smart_compress(data: bytes, target_size_kb: int = DEFAULT_TARGET_SIZE_KB,
                   max_attempts: int = DEFAULT_MAX_ATTEMPTS,
                   reencoder: Optional[ImageReencoder] = None) -> CompressionResult:
    """Compress ``data`` to roughly ``target_size_kb`` with the default 1920x1080 JPEG settings."""
    reencoder = reencoder or ImageReencoder()
    return reencoder.reencode(data, target_size_kb * 1024, max_attempts=max_attempts)


def needs_compression(size_bytes: int, max_size_kb: int = DEFAULT_TARGET_SIZE_KB) -> bool:
    """Check if a file of ``size_bytes`` is over ``max_size_kb``."""
    return size_bytes / 1024 > max_size_kb


def recommended_options(size_bytes: int) -> CompressionOptions:
    """Pick compression options from the input file size.

    Larger inputs get a lower starting quality and a tighter ceiling.
    """
    size_mb = size_bytes / (1024 * 1024)
    if size_mb > 5:
        return CompressionOptions(quality=0.6, max_size_kb=300)
    if size_mb > 2:
        return CompressionOptions(quality=0.7, max_size_kb=400)
    if size_mb > 1:
        return CompressionOptions(quality=0.8, max_size_kb=500)
    return CompressionOptions(quality=0.9, max_size_kb=600)


def prepare_for_upload(data: bytes, reencoder: Optional[ImageReencoder] = None,
                       options: Optional[CompressionOptions] = None,
                       max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> CompressionResult:
    """Compress ``data`` before upload.

    Options default to ``recommended_options`` for the input size. Inputs under
    the ceiling still go through a single re-encode so that the CDN always
    receives bounded dimensions. If every encode fails the input is
    handed back with status ORIGINAL. Decode failures propagate.
    """
    reencoder = reencoder or ImageReencoder()
    options = options or recommended_options(len(data))
    tuned = reencoder.with_options(options)
    try:
        return tuned.reencode(data, options.max_size_kb * 1024, max_attempts=max_attempts)
    except EncodingFailure as e:
        emit(logger, logging.WARNING, "reencode.original_returned",
             "All compression attempts failed, returning original file", error=str(e))
        width, height = e.size or (0, 0)
        return CompressionResult(
            data=data,
            original_size=len(data),
            compressed_size=len(data),
            width=width,
            height=height,
            quality=None,
            attempts=e.attempts,
            format='',
            status=CompressionStatus.ORIGINAL,
        )
