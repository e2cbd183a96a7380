# config/settings.py
"""Environment-driven settings for the catalog admin tool.

Values are read once into a ``Settings`` object that is passed explicitly to
the clients that need it. Nothing in here talks to AWS.
"""

import os
from dataclasses import dataclass, field, replace
from typing import List, Optional, Tuple


class ConfigurationError(Exception):
    """Raised when a required setting is missing or invalid."""
    pass


def _str_env(name: str, default: str = "") -> str:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _list_env(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Hostname fragments that identify images still on the previous storage provider
DEFAULT_LEGACY_STORAGE_HOSTS = ("firebasestorage.googleapis.com", "firebase")


@dataclass(frozen=True)
class Settings:
    """Runtime configuration.

    Attributes:
        aws_region: Region for S3, DynamoDB and Cognito.
        cdn_bucket: S3 bucket holding product images.
        cdn_domain: CloudFront domain serving ``cdn_bucket``.
        cdn_folder: Default key prefix for uploads.
        products_table: DynamoDB table with product records.
        cognito_*: Optional Cognito user/identity pool used for sign-in.
        image_*: Re-encoder parameters (quality factors are in (0, 1]).
        target_size_kb: Default byte ceiling for compression, in KB.
        migration_delay_seconds: Pause between items in a batch migration.
    """

    # AWS Configuration
    aws_region: str = "us-west-2"
    products_table: str = "Products"

    # Image CDN (S3 + CloudFront)
    cdn_bucket: str = ""
    cdn_domain: str = ""
    cdn_folder: str = "products"
    cdn_cache_control: str = "max-age=31536000"

    # AWS Cognito Configuration
    cognito_user_pool_id: str = ""
    cognito_client_id: str = ""
    cognito_identity_pool_id: str = ""
    cognito_region: str = "us-west-2"
    keyring_service_name: str = "CatalogAdmin"
    username: str = ""

    # Image compression
    image_max_width: int = 1920
    image_max_height: int = 1080
    image_initial_quality: float = 0.9
    image_quality_step: float = 0.7
    image_min_quality: float = 0.1
    image_size_tolerance: float = 0.1
    image_format: str = "jpeg"
    image_max_attempts: int = 5
    target_size_kb: int = 500

    # Legacy storage migration
    legacy_storage_hosts: Tuple[str, ...] = field(default=DEFAULT_LEGACY_STORAGE_HOSTS)
    migration_delay_seconds: float = 2.0
    download_timeout_seconds: int = 30

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from ``CATALOG_*`` environment variables."""
        defaults = cls()
        region = _str_env("CATALOG_AWS_REGION", defaults.aws_region)
        return cls(
            aws_region=region,
            products_table=_str_env("CATALOG_PRODUCTS_TABLE", defaults.products_table),
            cdn_bucket=_str_env("CATALOG_CDN_BUCKET"),
            cdn_domain=_str_env("CATALOG_CDN_DOMAIN"),
            cdn_folder=_str_env("CATALOG_CDN_FOLDER", defaults.cdn_folder),
            cdn_cache_control=_str_env("CATALOG_CDN_CACHE_CONTROL", defaults.cdn_cache_control),
            cognito_user_pool_id=_str_env("CATALOG_COGNITO_USER_POOL_ID"),
            cognito_client_id=_str_env("CATALOG_COGNITO_CLIENT_ID"),
            cognito_identity_pool_id=_str_env("CATALOG_COGNITO_IDENTITY_POOL_ID"),
            cognito_region=_str_env("CATALOG_COGNITO_REGION", region),
            keyring_service_name=_str_env("CATALOG_KEYRING_SERVICE", defaults.keyring_service_name),
            username=_str_env("CATALOG_USERNAME"),
            image_max_width=_int_env("CATALOG_IMAGE_MAX_WIDTH", defaults.image_max_width),
            image_max_height=_int_env("CATALOG_IMAGE_MAX_HEIGHT", defaults.image_max_height),
            image_initial_quality=_float_env("CATALOG_IMAGE_QUALITY", defaults.image_initial_quality),
            image_quality_step=_float_env("CATALOG_IMAGE_QUALITY_STEP", defaults.image_quality_step),
            image_min_quality=_float_env("CATALOG_IMAGE_MIN_QUALITY", defaults.image_min_quality),
            image_size_tolerance=_float_env("CATALOG_IMAGE_SIZE_TOLERANCE", defaults.image_size_tolerance),
            image_format=_str_env("CATALOG_IMAGE_FORMAT", defaults.image_format).lower(),
            image_max_attempts=_int_env("CATALOG_IMAGE_MAX_ATTEMPTS", defaults.image_max_attempts),
            target_size_kb=_int_env("CATALOG_TARGET_SIZE_KB", defaults.target_size_kb),
            legacy_storage_hosts=_list_env("CATALOG_LEGACY_STORAGE_HOSTS", defaults.legacy_storage_hosts),
            migration_delay_seconds=_float_env("CATALOG_MIGRATION_DELAY", defaults.migration_delay_seconds),
            download_timeout_seconds=_int_env("CATALOG_DOWNLOAD_TIMEOUT", defaults.download_timeout_seconds),
            log_level=_str_env("CATALOG_LOG_LEVEL", defaults.log_level).upper(),
        )

    def with_overrides(self, **changes) -> "Settings":
        """Return a copy with the given fields replaced (``None`` values are ignored)."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    @property
    def cognito_configured(self) -> bool:
        return bool(self.cognito_user_pool_id and self.cognito_client_id)

    def missing(self, *names: str) -> List[str]:
        """Names of the given settings that are empty."""
        return [name for name in names if not getattr(self, name)]

    def require(self, *names: str) -> None:
        """Raise ``ConfigurationError`` if any of the named settings is empty."""
        missing = self.missing(*names)
        if missing:
            env_names = ", ".join(f"CATALOG_{name.upper()}" for name in missing)
            raise ConfigurationError(f"Missing configuration: {env_names}")

    def validate(self) -> None:
        """Check value ranges that would otherwise fail deep inside the re-encoder."""
        if not 0 < self.image_initial_quality <= 1:
            raise ConfigurationError("Image quality must be in (0, 1]")
        if not 0 < self.image_min_quality <= self.image_initial_quality:
            raise ConfigurationError("Minimum image quality must be in (0, initial quality]")
        if not 0 < self.image_quality_step < 1:
            raise ConfigurationError("Image quality step must be in (0, 1)")
        if self.image_max_attempts < 1:
            raise ConfigurationError("Image max attempts must be at least 1")
        if self.image_max_width < 1 or self.image_max_height < 1:
            raise ConfigurationError("Image bounds must be positive")
        if self.target_size_kb <= 0:
            raise ConfigurationError("Target size must be positive")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigurationError(f"Unknown log level: {self.log_level} (use one of {', '.join(LOG_LEVELS)})")


def load_settings(overrides: Optional[dict] = None) -> Settings:
    """Read settings from the environment and apply CLI overrides."""
    settings = Settings.from_env()
    if overrides:
        settings = settings.with_overrides(**overrides)
    settings.validate()
    return settings
