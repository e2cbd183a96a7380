"""Product records in DynamoDB.

Each product is one item keyed by ``id``. The table has no server-side
timestamps, so the store stamps ``created_at`` and ``updated_at`` itself on
every write.
"""
import logging
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from auth.service import AuthenticationError
from storage.cdn import CdnError
from utils.events import emit

logger = logging.getLogger(__name__)

CATEGORIES = [
    'bridal collection',
    'necklace',
    'aharam',
    'earings',
    'bangles',
    'other accessories',
]

FUNCTION_TYPES = [
    'birthday party',
    'kovil',
    'preshoot',
    'postshoot',
    'bridetobe',
    'mehindi',
]

# Fields the store owns; callers cannot set them
READ_ONLY_FIELDS = ('id', 'created_at')

MIN_SEARCH_LENGTH = 3


class StoreError(Exception):
    """Raised when the product table cannot be read or written."""
    pass


class ProductNotFoundError(StoreError):
    """Raised when a product id does not exist."""
    pass


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _from_dynamodb(value: Any) -> Any:
    """Turn DynamoDB Decimals back into ints/floats."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, list):
        return [_from_dynamodb(v) for v in value]
    if isinstance(value, dict):
        return {k: _from_dynamodb(v) for k, v in value.items()}
    return value


def _to_dynamodb(value: Any) -> Any:
    """DynamoDB rejects floats; store them as Decimal."""
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, list):
        return [_to_dynamodb(v) for v in value]
    if isinstance(value, dict):
        return {k: _to_dynamodb(v) for k, v in value.items()}
    return value


@dataclass
class Product:
    id: str
    name: str = ''
    description: str = ''
    price: float = 0.0
    category: str = ''
    function_type: Optional[str] = None
    image_url: str = ''
    is_for_sale: bool = True
    created_at: str = ''
    updated_at: str = ''
    legacy_image_url: Optional[str] = None
    migrated_to_cdn_at: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'Product':
        item = _from_dynamodb(item)
        known = {f.name for f in fields(cls)} - {'extra'}
        values = {k: v for k, v in item.items() if k in known}
        values['function_type'] = values.get('function_type') or None
        extra = {k: v for k, v in item.items() if k not in known}
        return cls(extra=extra, **values)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.update(data.pop('extra'))
        return data


class ProductStore:
    """CRUD access to the products table.

    Args:
        table: boto3 DynamoDB ``Table`` resource.
        cdn: Optional CDN client used to remove a product's image on delete.
        auth: Optional auth service; when given, writes need a signed-in user.
    """

    def __init__(self, table, cdn=None, auth=None):
        self.table = table
        self.cdn = cdn
        self.auth = auth

    @classmethod
    def from_settings(cls, settings, session, cdn=None, auth=None) -> 'ProductStore':
        settings.require('products_table')
        table = session.resource('dynamodb').Table(settings.products_table)
        return cls(table, cdn=cdn, auth=auth)

    def _require_auth(self, action: str):
        if self.auth is not None and not self.auth.is_authenticated():
            emit(logger, logging.ERROR, "store.auth_required", action=action)
            raise AuthenticationError(f"You must be logged in to {action} products")

    def _call(self, action: str, fn, **kwargs):
        try:
            return fn(**kwargs)
        except ClientError as e:
            error = e.response.get('Error', {})
            if error.get('Code') == 'ConditionalCheckFailedException':
                key = kwargs.get('Key', {}).get('id')
                raise ProductNotFoundError(f"Product not found: {key}") from e
            raise StoreError(f"Failed to {action}: {error.get('Message', str(e))}") from e
        except BotoCoreError as e:
            raise StoreError(f"Failed to {action}: {e}") from e

    def check_connection(self) -> bool:
        """Try to read one item; True if the table answered."""
        try:
            self._call('read products', self.table.scan, Limit=1)
        except StoreError as e:
            emit(logger, logging.ERROR, "store.connection_failed", error=str(e))
            return False
        emit(logger, logging.INFO, "store.connected", table=self.table.name)
        return True

    def list_records(self) -> List[Dict[str, Any]]:
        """Every item in the table as plain dicts (follows scan pagination)."""
        records = []
        kwargs = {}
        while True:
            response = self._call('fetch products', self.table.scan, **kwargs)
            records.extend(_from_dynamodb(item) for item in response.get('Items', []))
            last_key = response.get('LastEvaluatedKey')
            if not last_key:
                break
            kwargs['ExclusiveStartKey'] = last_key
        emit(logger, logging.DEBUG, "store.scanned", count=len(records))
        return records

    def list_products(self, category: Optional[str] = None, search: Optional[str] = None,
                      rent_only: bool = False) -> List[Product]:
        """Products newest first, optionally filtered.

        Args:
            category: Exact category; ``None`` or ``"all"`` disables the filter.
            search: Case-insensitive match on name or description, ignored
                below three characters.
            rent_only: Only products that are not for sale.
        """
        products = [Product.from_item(item) for item in self.list_records()]
        if rent_only:
            products = [p for p in products if not p.is_for_sale]
        if category and category != 'all':
            products = [p for p in products if p.category == category]
        if search and len(search.strip()) >= MIN_SEARCH_LENGTH:
            needle = search.strip().lower()
            products = [p for p in products
                        if needle in (p.name or '').lower() or needle in (p.description or '').lower()]
        products.sort(key=lambda p: p.created_at or '', reverse=True)
        emit(logger, logging.INFO, "store.listed", count=len(products),
             category=category or 'all', search=search or '', rent_only=rent_only)
        return products

    def get_product(self, product_id: str) -> Product:
        response = self._call('fetch product', self.table.get_item, Key={'id': product_id})
        item = response.get('Item')
        if not item:
            raise ProductNotFoundError(f"Product not found: {product_id}")
        return Product.from_item(item)

    def product_counts(self) -> Dict[str, int]:
        products = [Product.from_item(item) for item in self.list_records()]
        return {
            'total': len(products),
            'for_sale': sum(1 for p in products if p.is_for_sale),
            'for_rent': sum(1 for p in products if not p.is_for_sale),
            'categories': len({p.category for p in products}),
        }

    def add_product(self, values: Dict[str, Any]) -> Product:
        """Create a product with a new id and fresh timestamps."""
        self._require_auth('add')
        now = utc_now()
        item = {k: v for k, v in values.items() if k not in READ_ONLY_FIELDS and v is not None}
        item.update(id=uuid.uuid4().hex, created_at=now, updated_at=now)
        self._call('add product', self.table.put_item, Item=_to_dynamodb(item))
        emit(logger, logging.INFO, "store.added", id=item['id'], name=item.get('name', ''))
        return Product.from_item(item)

    def update_product(self, product_id: str, updates: Dict[str, Any]) -> Product:
        """Set the given fields on an existing product and bump ``updated_at``.

        Raises:
            ProductNotFoundError: If ``product_id`` does not exist.
        """
        self._require_auth('update')
        changes = {k: v for k, v in updates.items() if k not in READ_ONLY_FIELDS}
        changes['updated_at'] = utc_now()

        names = {}
        values = {}
        assignments = []
        for i, (name, value) in enumerate(changes.items()):
            names[f'#f{i}'] = name
            values[f':v{i}'] = _to_dynamodb(value)
            assignments.append(f'#f{i} = :v{i}')

        response = self._call(
            'update product', self.table.update_item,
            Key={'id': product_id},
            UpdateExpression='SET ' + ', '.join(assignments),
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
            ConditionExpression='attribute_exists(id)',
            ReturnValues='ALL_NEW',
        )
        emit(logger, logging.INFO, "store.updated", id=product_id,
             changed=','.join(k for k in changes if k != 'updated_at'))
        return Product.from_item(response.get('Attributes', {'id': product_id, **changes}))

    def delete_product(self, product_id: str) -> None:
        """Delete a product and, best effort, its CDN image."""
        self._require_auth('delete')
        product = self.get_product(product_id)
        if product.image_url and self.cdn is not None:
            if self.cdn.owns(product.image_url):
                try:
                    self.cdn.delete(product.image_url)
                except CdnError as e:
                    # A stale image must not block removing the record
                    emit(logger, logging.WARNING, "store.image_delete_failed",
                         "Error deleting image from storage", id=product_id, error=str(e))
            else:
                emit(logger, logging.INFO, "store.image_delete_skipped",
                     "Image not on the CDN, skipping deletion", id=product_id)
        self._call('delete product', self.table.delete_item, Key={'id': product_id})
        emit(logger, logging.INFO, "store.deleted", id=product_id)
