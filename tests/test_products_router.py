"""Tests for /products endpoints (app/routers/products.py)"""
import pytest
from datetime import datetime, timezone
from unittest.mock import Mock, patch

from main import app
from app.dependencies import get_connector_factory
from app.integrations.connector import ConnectorError
from app.integrations.kiwify import KiwifyParticipant
from app.models.product import Platform, Product, ProductStatus


def make_product(platform=Platform.KIWIFY):
    product = Mock(spec=Product)
    product.id = 3
    product.platform = platform
    product.kiwify_id = "prod-1" if platform == Platform.KIWIFY else None
    product.hotmart_id = "4321" if platform == Platform.HOTMART else None
    product.name = "Curso Python"
    product.description = None
    product.price = 197.0
    product.status = ProductStatus.ACTIVE
    product.image_url = None
    product.last_sync_at = None
    product.created_at = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return product


@pytest.fixture
def connector():
    connector = Mock()
    app.dependency_overrides[get_connector_factory] = lambda: (lambda platform: connector)
    return connector


class TestListProducts:
    def test_list(self, client_with_owner):
        client, mock_db, _ = client_with_owner
        mock_db.order_by.return_value.all.return_value = [make_product()]

        response = client.get("/products")

        assert response.status_code == 200
        assert response.json()[0]["kiwify_id"] == "prod-1"

    def test_get_not_found(self, client_with_owner):
        client, mock_db, _ = client_with_owner
        response = client.get("/products/99")
        assert response.status_code == 404


class TestSyncCatalog:
    def test_sync_returns_summary(self, client_with_owner, connector):
        client, _, mock_owner = client_with_owner
        summary = {"total": 3, "created": 1, "updated": 2, "errors": []}
        with patch("app.routers.products.sync_products", return_value=summary) as mock_sync:
            response = client.post("/products/sync", params={"platform": "hotmart"})

        assert response.status_code == 200
        assert response.json() == {"platform": "hotmart", "total": 3, "created": 1, "updated": 2, "errors": []}
        assert mock_sync.call_args.args[1] is connector
        assert mock_sync.call_args.args[2] is mock_owner

    def test_upstream_error_returns_502(self, client_with_owner, connector):
        client, mock_db, _ = client_with_owner
        with patch("app.routers.products.sync_products", side_effect=ConnectorError("kiwify", 500, "boom")):
            response = client.post("/products/sync", params={"platform": "kiwify"})

        assert response.status_code == 502
        mock_db.rollback.assert_called_once()


class TestParticipants:
    def test_lists_kiwify_participants(self, client_with_owner, connector):
        client, mock_db, _ = client_with_owner
        mock_db.first.return_value = make_product()
        connector.fetch_participants.return_value = [
            KiwifyParticipant(id="u1", name="Ana", email="ana@test.com", checkin_at="2024-03-02T10:00:00Z"),
        ]

        response = client.get("/products/3/participants")

        assert response.status_code == 200
        assert response.json()[0]["checked_in"] is True
        connector.fetch_participants.assert_called_once_with("prod-1")

    def test_hotmart_product_rejected(self, client_with_owner, connector):
        client, mock_db, _ = client_with_owner
        mock_db.first.return_value = make_product(Platform.HOTMART)

        response = client.get("/products/3/participants")

        assert response.status_code == 400
        connector.fetch_participants.assert_not_called()
