from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import bleach
from sqlalchemy.orm import Session
from werkzeug.datastructures import FileStorage

from storefront.config import str_to_bool
from storefront.database import transaction
from storefront.errors import AlreadyProcessedError, NotFoundError, ValidationError
from storefront.models import OrderItem, Product
from storefront.services.auth_service import AuthService
from storefront.services.storage_service import LocalObjectStorage

_EDITABLE_FIELDS = ("name", "description", "category", "price", "original_price", "in_stock", "badge")


class ProductService:
    """Admin catalog maintenance."""

    def __init__(
        self,
        db_session: Session,
        auth_service: Optional[AuthService] = None,
        storage: Optional[LocalObjectStorage] = None,
    ) -> None:
        self.db = db_session
        self.auth = auth_service or AuthService(db_session)
        self.storage = storage or LocalObjectStorage()
        self.logger = logging.getLogger(__name__)

    def list_products(self, category: Optional[str] = None) -> List[Product]:
        query = self.db.query(Product)
        if category:
            query = query.filter(Product.category == category)
        return query.order_by(Product.productID.desc()).all()

    def get_product(self, product_id: int) -> Product:
        product = self.db.query(Product).filter_by(productID=product_id).first()
        if product is None:
            raise NotFoundError(f"Product {product_id} not found")
        return product

    def create_product(self, admin_id: int, data: Dict[str, Any]) -> Product:
        self.auth.require_admin(admin_id)
        fields = self._validated(data, partial=False)
        product = Product(created_by=admin_id, **fields)
        with transaction(self.db):
            self.db.add(product)
        self.logger.info("Product %s created", product.productID, extra={"admin_id": admin_id})
        return product

    def update_product(self, admin_id: int, product_id: int, data: Dict[str, Any]) -> Product:
        self.auth.require_admin(admin_id)
        product = self.get_product(product_id)
        fields = self._validated(data, partial=True, current=product)
        with transaction(self.db):
            for key, value in fields.items():
                setattr(product, key, value)
        self.logger.info("Product %s updated", product_id, extra={"fields": sorted(fields)})
        return product

    def delete_product(self, admin_id: int, product_id: int) -> None:
        """Products already sold stay in the catalog so order history keeps its references."""
        self.auth.require_admin(admin_id)
        product = self.get_product(product_id)
        referenced = self.db.query(OrderItem).filter_by(productID=product_id).first()
        if referenced is not None:
            raise AlreadyProcessedError("Product is referenced by orders; mark it out of stock instead")
        with transaction(self.db):
            self.db.delete(product)
        self.logger.info("Product %s deleted", product_id)

    def attach_image(self, admin_id: int, product_id: int, upload: FileStorage) -> Product:
        self.auth.require_admin(admin_id)
        product = self.get_product(product_id)
        url = self.storage.save(upload)
        with transaction(self.db):
            product.image_url = url
        return product

    @staticmethod
    def _validated(data: Dict[str, Any], partial: bool, current: Optional[Product] = None) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        for key in _EDITABLE_FIELDS:
            if key in data:
                fields[key] = data[key]

        for key in ("name", "description", "category", "badge"):
            if key in fields and fields[key] is not None:
                fields[key] = bleach.clean(str(fields[key]), tags=[], strip=True).strip()

        if not partial:
            if not fields.get("name"):
                raise ValidationError("Product name is required")
            if "price" not in fields:
                raise ValidationError("Product price is required")
        elif "name" in fields and not fields["name"]:
            raise ValidationError("Product name is required")

        try:
            if "price" in fields:
                fields["price"] = int(fields["price"])
            if fields.get("original_price") is not None:
                fields["original_price"] = int(fields["original_price"])
        except (TypeError, ValueError) as exc:
            raise ValidationError("Prices must be whole amounts") from exc

        price = fields.get("price", current.price if current else None)
        original_price = fields.get("original_price", current.original_price if current else None)
        if price is None or price <= 0:
            raise ValidationError("Price must be positive")
        if original_price is not None and original_price < price:
            raise ValidationError("Original price cannot be below the selling price")

        if "in_stock" in fields:
            fields["in_stock"] = str_to_bool(fields["in_stock"])
        return fields
