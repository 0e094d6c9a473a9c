import io

import pytest
from werkzeug.datastructures import FileStorage

from storefront.errors import AccessDeniedError, AlreadyProcessedError, NotFoundError, ValidationError
from storefront.models import Product
from storefront.services.product_service import ProductService
from storefront.services.storage_service import LocalObjectStorage


@pytest.fixture
def storage(tmp_path):
    return LocalObjectStorage(
        upload_dir=tmp_path / "uploads",
        public_prefix="https://cdn.example.com/static/uploads/products",
        allowed_extensions=("png", "jpg"),
    )


def _upload(filename: str) -> FileStorage:
    return FileStorage(stream=io.BytesIO(b"\x89PNG fake"), filename=filename, content_type="image/png")


def test_create_and_update_product(db_session, admin_user):
    service = ProductService(db_session)

    product = service.create_product(
        admin_user.userID,
        {"name": " <b>Maasai Shuka</b> ", "price": "2500", "original_price": 3000, "category": "textiles"},
    )
    assert product.name == "Maasai Shuka"
    assert product.price == 2_500
    assert product.discount_percentage == 17

    updated = service.update_product(admin_user.userID, product.productID, {"price": 2_800, "in_stock": 0})
    assert updated.price == 2_800
    assert updated.in_stock is False

    restocked = service.update_product(admin_user.userID, product.productID, {"in_stock": "true"})
    assert restocked.in_stock is True
    for value in ("false", "0", "no"):
        assert service.update_product(admin_user.userID, product.productID, {"in_stock": value}).in_stock is False


def test_price_rules(db_session, admin_user, product):
    service = ProductService(db_session)

    with pytest.raises(ValidationError):
        service.create_product(admin_user.userID, {"name": "Free", "price": 0})
    with pytest.raises(ValidationError):
        service.create_product(admin_user.userID, {"name": "Odd", "price": 500, "original_price": 400})
    with pytest.raises(ValidationError):
        service.create_product(admin_user.userID, {"price": 500})
    with pytest.raises(ValidationError):
        service.update_product(admin_user.userID, product.productID, {"price": "cheap"})


def test_only_admins_manage_catalog(db_session, customer, product):
    with pytest.raises(AccessDeniedError):
        ProductService(db_session).update_product(customer.userID, product.productID, {"price": 1})


def test_delete_blocked_once_ordered(db_session, admin_user, customer, product, make_product, place_order):
    service = ProductService(db_session)
    place_order(customer, product)

    with pytest.raises(AlreadyProcessedError):
        service.delete_product(admin_user.userID, product.productID)

    unused = make_product(name="Unused")
    service.delete_product(admin_user.userID, unused.productID)
    assert db_session.get(Product, unused.productID) is None
    with pytest.raises(NotFoundError):
        service.get_product(unused.productID)


def test_attach_image_stores_file_and_sets_url(db_session, admin_user, product, storage):
    service = ProductService(db_session, storage=storage)

    updated = service.attach_image(admin_user.userID, product.productID, _upload("../../kikoy photo.png"))

    assert updated.image_url.startswith("https://cdn.example.com/static/uploads/products/")
    assert updated.image_url.endswith("_kikoy_photo.png")
    stored = list(storage.upload_dir.iterdir())
    assert len(stored) == 1
    assert stored[0].read_bytes() == b"\x89PNG fake"


def test_storage_rejects_disallowed_files(storage):
    with pytest.raises(ValidationError):
        storage.save(_upload("payload.exe"))
    with pytest.raises(ValidationError):
        storage.save(_upload(""))
