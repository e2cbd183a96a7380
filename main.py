"""Main entry point for the product catalog admin tool."""
import argparse
import getpass
import logging
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from auth.service import AuthenticationError, CognitoAuthService, build_session
from config.settings import ConfigurationError, load_settings
from migration.legacy import LegacyImageMigrator
from processors.image import (
    CompressionStatus,
    DecodeFailure,
    EncodingFailure,
    ImageReencoder,
)
from storage.cdn import CdnClient, CdnError, publish_product_image
from storage.products import CATEGORIES, FUNCTION_TYPES, ProductStore, StoreError
from utils.events import configure_logging

logger = logging.getLogger(__name__)

EXPECTED_ERRORS = (
    AuthenticationError,
    CdnError,
    ConfigurationError,
    DecodeFailure,
    EncodingFailure,
    StoreError,
)


class AppContext:
    """Builds the service clients for one CLI invocation."""

    def __init__(self, settings):
        self.settings = settings
        self._auth = None
        self._session = None
        self._cdn = None
        self._store = None

    @property
    def auth(self) -> Optional[CognitoAuthService]:
        if self._auth is None and self.settings.cognito_configured:
            self._auth = CognitoAuthService(self.settings)
            if self.settings.username:
                self._auth.try_restore_session(self.settings.username)
        return self._auth

    @property
    def session(self):
        if self._session is None:
            self._session = build_session(self.settings, self.auth)
        return self._session

    @property
    def cdn(self) -> CdnClient:
        if self._cdn is None:
            self._cdn = CdnClient.from_settings(self.settings, self.session)
        return self._cdn

    @property
    def cdn_configured(self) -> bool:
        return not self.settings.missing("cdn_bucket", "cdn_domain")

    @property
    def store(self) -> ProductStore:
        if self._store is None:
            # Reads work without the CDN; image cleanup on delete needs it
            cdn = self.cdn if self.cdn_configured else None
            self._store = ProductStore.from_settings(self.settings, self.session,
                                                     cdn=cdn, auth=self.auth)
        return self._store

    @property
    def reencoder(self) -> ImageReencoder:
        return ImageReencoder.from_settings(self.settings)

    def migrator(self) -> LegacyImageMigrator:
        return LegacyImageMigrator.from_settings(self.settings, self.store, self.cdn)


def _format_size(size: int) -> str:
    if size >= 1024 * 1024:
        return f"{size / 1024 / 1024:.2f} MB"
    return f"{size / 1024:.1f} KB"


def _print_result(result) -> None:
    print(f"Status:      {result.status.value}")
    print(f"Size:        {_format_size(result.original_size)} -> {_format_size(result.compressed_size)}"
          f" ({result.compression_ratio:.1f}% saved)")
    print(f"Dimensions:  {result.width}x{result.height}")
    if result.quality is None:
        print(f"Quality:     original file kept after {result.attempts} failed attempt(s)")
    else:
        print(f"Quality:     {result.quality * 100:.1f}% after {result.attempts} attempt(s)")


def cmd_compress(ctx: AppContext, args) -> int:
    source = Path(args.input)
    data = source.read_bytes()
    reencoder = ctx.reencoder
    if args.format:
        reencoder = ImageReencoder.from_settings(ctx.settings.with_overrides(image_format=args.format))
    target_kb = args.target_kb or ctx.settings.target_size_kb
    max_attempts = args.max_attempts or ctx.settings.image_max_attempts
    result = reencoder.reencode(data, target_kb * 1024, max_attempts=max_attempts)
    ext = ".jpg" if result.format == "jpeg" else f".{result.format}"
    output = Path(args.output) if args.output else source.with_name(f"{source.stem}_compressed{ext}")
    output.write_bytes(result.data)
    _print_result(result)
    print(f"Saved to:    {output}")
    return 0 if result.status == CompressionStatus.COMPRESSED else 2


def cmd_upload(ctx: AppContext, args) -> int:
    source = Path(args.input)
    data = source.read_bytes()
    folder = args.folder or ctx.settings.cdn_folder
    if args.no_compress:
        url = ctx.cdn.upload(data, folder=folder, filename=source.name)
    else:
        url, result = publish_product_image(ctx.cdn, data, source.name, folder=folder,
                                            reencoder=ctx.reencoder)
        _print_result(result)
    print(url)
    return 0


def cmd_login(ctx: AppContext, args) -> int:
    auth = ctx.auth
    if auth is None:
        raise ConfigurationError("Cognito is not configured (CATALOG_COGNITO_USER_POOL_ID, CATALOG_COGNITO_CLIENT_ID)")
    username = args.username or ctx.settings.username or input("Username: ")
    password = getpass.getpass("Password: ")
    auth.authenticate(username, password)
    print(f"Signed in as {username}. Set CATALOG_USERNAME={username} to reuse this session.")
    return 0


def cmd_signup(ctx: AppContext, args) -> int:
    auth = ctx.auth
    if auth is None:
        raise ConfigurationError("Cognito is not configured (CATALOG_COGNITO_USER_POOL_ID, CATALOG_COGNITO_CLIENT_ID)")
    username = args.username or input("Username: ")
    password = getpass.getpass("Password: ")
    if getpass.getpass("Confirm password: ") != password:
        print("Passwords do not match.", file=sys.stderr)
        return 1
    result = auth.sign_up(username, password, email=args.email)
    if result["UserConfirmed"]:
        print(f"Account {username} created. Run `catalog-admin login` to sign in.")
    else:
        print(f"Account {username} created. Check your email to confirm it before signing in.")
    return 0


def cmd_logout(ctx: AppContext, args) -> int:
    auth = ctx.auth
    if auth is not None:
        auth.logout()
    print("Signed out.")
    return 0


def cmd_products_list(ctx: AppContext, args) -> int:
    products = ctx.store.list_products(category=args.category, search=args.search,
                                       rent_only=args.rent_only)
    for product in products:
        sale = "sale" if product.is_for_sale else "rent"
        print(f"{product.id}  {product.name:<30}  {product.category:<18}  {sale:<4}  "
              f"{product.price:>10}  {product.image_url}")
    print(f"{len(products)} product(s)")
    return 0


def cmd_products_counts(ctx: AppContext, args) -> int:
    counts = ctx.store.product_counts()
    for key, value in counts.items():
        print(f"{key}: {value}")
    return 0


def _product_fields(args) -> dict:
    values = {
        'name': args.name,
        'description': args.description,
        'price': args.price,
        'category': args.category,
        'function_type': args.function_type,
    }
    if args.for_sale is not None:
        values['is_for_sale'] = args.for_sale
    return {k: v for k, v in values.items() if v is not None}


def cmd_products_add(ctx: AppContext, args) -> int:
    values = _product_fields(args)
    values.setdefault('is_for_sale', True)
    if args.image:
        image = Path(args.image)
        values['image_url'], _ = publish_product_image(
            ctx.cdn, image.read_bytes(), image.name, folder=ctx.settings.cdn_folder,
            reencoder=ctx.reencoder)
    product = ctx.store.add_product(values)
    print(f"Added {product.id} ({product.name})")
    return 0


def cmd_products_update(ctx: AppContext, args) -> int:
    values = _product_fields(args)
    if args.image:
        image = Path(args.image)
        values['image_url'], _ = publish_product_image(
            ctx.cdn, image.read_bytes(), image.name, folder=ctx.settings.cdn_folder,
            reencoder=ctx.reencoder)
    if not values:
        print("Nothing to update.")
        return 1
    product = ctx.store.update_product(args.id, values)
    print(f"Updated {product.id} ({product.name})")
    return 0


def cmd_products_delete(ctx: AppContext, args) -> int:
    ctx.settings.require("cdn_bucket", "cdn_domain")
    ctx.store.delete_product(args.id)
    print(f"Deleted {args.id}")
    return 0


def cmd_migrate_run(ctx: AppContext, args) -> int:
    summary = ctx.migrator().migrate_all()
    print("=" * 60)
    print("MIGRATION SUMMARY")
    print("=" * 60)
    print(f"Total products:          {summary.total}")
    print(f"Successfully migrated:   {summary.migrated}")
    print(f"Skipped:                 {summary.skipped}")
    print(f"Failed:                  {summary.failed}")
    print("=" * 60)
    for error in summary.errors:
        print(f"  - {error.product}: {error.error}")
    return 1 if summary.failed else 0


def cmd_migrate_test(ctx: AppContext, args) -> int:
    url = ctx.migrator().migrate_first()
    print(f"Test migration successful: {url}" if url else "No legacy images found to test")
    return 0


def cmd_migrate_status(ctx: AppContext, args) -> int:
    status = ctx.migrator().check_status()
    print(f"Total products:      {status.total}")
    print(f"CDN images:          {status.cdn}")
    print(f"Legacy images:       {status.legacy}")
    print(f"Other/External URLs: {status.other}")
    if status.complete:
        print("All products migrated.")
    else:
        print(f"{status.legacy} product(s) still need migration")
    return 0


def cmd_check(ctx: AppContext, args) -> int:
    ctx.cdn.check_bucket()
    print(f"CDN bucket OK: {ctx.settings.cdn_bucket}")
    if not ctx.store.check_connection():
        print(f"Product table unreachable: {ctx.settings.products_table}")
        return 1
    print(f"Product table OK: {ctx.settings.products_table}")
    return 0


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {value!r}") from None
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1: {number}")
    return number


def _add_product_arguments(parser, required: bool):
    parser.add_argument("--name", required=required)
    parser.add_argument("--description", default=None)
    parser.add_argument("--price", type=float, required=required)
    parser.add_argument("--category", choices=CATEGORIES, required=required)
    parser.add_argument("--function-type", choices=FUNCTION_TYPES, default=None)
    sale = parser.add_mutually_exclusive_group()
    sale.add_argument("--for-sale", dest="for_sale", action="store_true", default=None)
    sale.add_argument("--for-rent", dest="for_sale", action="store_false", default=None)
    parser.add_argument("--image", help="Local image to compress and upload")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="catalog-admin",
                                     description="Product catalog admin: images, products and migration.")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--env-file", default=None, help="Load settings from this .env file")
    commands = parser.add_subparsers(dest="command", required=True)

    compress = commands.add_parser("compress", help="Re-encode an image under a size ceiling")
    compress.add_argument("input")
    compress.add_argument("-o", "--output")
    compress.add_argument("-t", "--target-kb", type=_positive_int, default=None,
                          help="Size ceiling in KB (defaults to CATALOG_TARGET_SIZE_KB)")
    compress.add_argument("--max-attempts", type=_positive_int, default=None)
    compress.add_argument("--format", choices=["jpeg", "webp", "png"])
    compress.set_defaults(func=cmd_compress)

    upload = commands.add_parser("upload", help="Compress and upload an image to the CDN")
    upload.add_argument("input")
    upload.add_argument("--folder", default=None, help="CDN folder (defaults to CATALOG_CDN_FOLDER)")
    upload.add_argument("--no-compress", action="store_true")
    upload.set_defaults(func=cmd_upload)

    login = commands.add_parser("login", help="Sign in and remember the session")
    login.add_argument("--username")
    login.set_defaults(func=cmd_login)

    signup = commands.add_parser("signup", help="Create an account in the user pool")
    signup.add_argument("--username")
    signup.add_argument("--email", help="Defaults to the username")
    signup.set_defaults(func=cmd_signup)

    logout = commands.add_parser("logout", help="Forget the stored session")
    logout.set_defaults(func=cmd_logout)

    products = commands.add_parser("products", help="Manage product records")
    product_commands = products.add_subparsers(dest="products_command", required=True)

    listing = product_commands.add_parser("list")
    listing.add_argument("--category", default=None)
    listing.add_argument("--search", default=None)
    listing.add_argument("--rent-only", action="store_true")
    listing.set_defaults(func=cmd_products_list)

    counts = product_commands.add_parser("counts")
    counts.set_defaults(func=cmd_products_counts)

    add = product_commands.add_parser("add")
    _add_product_arguments(add, required=True)
    add.set_defaults(func=cmd_products_add)

    update = product_commands.add_parser("update")
    update.add_argument("id")
    _add_product_arguments(update, required=False)
    update.set_defaults(func=cmd_products_update)

    delete = product_commands.add_parser("delete")
    delete.add_argument("id")
    delete.set_defaults(func=cmd_products_delete)

    migrate = commands.add_parser("migrate", help="Move legacy storage images to the CDN")
    migrate_commands = migrate.add_subparsers(dest="migrate_command", required=True)
    migrate_commands.add_parser("run").set_defaults(func=cmd_migrate_run)
    migrate_commands.add_parser("test").set_defaults(func=cmd_migrate_test)
    migrate_commands.add_parser("status").set_defaults(func=cmd_migrate_status)

    check = commands.add_parser("check", help="Check CDN bucket and product table access")
    check.set_defaults(func=cmd_check)
    return parser


def main(argv=None) -> int:
    """Run the CLI and return its exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)
    load_dotenv(args.env_file)

    try:
        settings = load_settings({'log_level': args.log_level.upper() if args.log_level else None})
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    configure_logging(settings.log_level)

    ctx = AppContext(settings)
    try:
        return args.func(ctx, args)
    except EXPECTED_ERRORS as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
